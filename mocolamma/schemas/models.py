"""
Ollama model management schemas.

Response shapes of /api/tags, /api/pull, /api/show, /api/version and /api/ps.
"""

import re
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")

BYTE_UNITS = ("bytes", "KB", "MB", "GB", "TB", "PB")


def format_byte_count(size: int) -> str:
    """Human-readable size using decimal (file) units, e.g. 4.7 GB."""
    if size < 1000:
        return "Zero KB" if size == 0 else f"{size} bytes"
    value = float(size)
    unit = 0
    while value >= 1000 and unit < len(BYTE_UNITS) - 1:
        value /= 1000
        unit += 1
    if unit == 1:
        return f"{round(value):d} KB"
    return f"{value:.1f} {BYTE_UNITS[unit]}"


def parse_iso8601(value: str) -> datetime | None:
    """Parse an ISO-8601 timestamp (fractional seconds and Z allowed)."""
    try:
        # Ollama reports nanoseconds; datetime keeps microseconds
        parsed = datetime.fromisoformat(_FRACTION_RE.sub(r"\1", value))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class OllamaModelDetails(BaseModel):
    """Model details block shared by /api/tags and /api/show."""

    model_config = ConfigDict(extra="ignore")

    parent_model: str | None = None
    format: str | None = None
    family: str | None = None
    families: list[str] | None = None
    parameter_size: str | None = None
    quantization_level: str | None = None
    context_length: int | None = None


class OllamaModel(BaseModel):
    """A locally installed model as listed by /api/tags."""

    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    name: str = Field(description="Model name")
    model: str = Field(description="Model identifier (same as name)")
    modified_at: str = Field(description="ISO-8601 modification time")
    size: int = Field(description="Size in bytes")
    digest: str = Field(description="Model digest")
    details: OllamaModelDetails | None = None
    capabilities: list[str] | None = None

    # Position in the server response, assigned by the client
    original_index: int = Field(default=0, exclude=True)

    @property
    def id(self) -> str:
        return self.digest

    @property
    def comparable_modified_date(self) -> datetime:
        return parse_iso8601(self.modified_at) or datetime.min.replace(tzinfo=timezone.utc)

    @property
    def formatted_size(self) -> str:
        return format_byte_count(self.size)


class ModelsResponse(BaseModel):
    """Response of /api/tags."""

    models: list[OllamaModel] = Field(description="Installed models")


class ModelPullProgress(BaseModel):
    """Progress update during model pull."""

    status: str = Field(description="Status message")
    digest: str | None = Field(default=None, description="Layer digest")
    total: int | None = Field(default=None, description="Total bytes")
    completed: int | None = Field(default=None, description="Completed bytes")


class ShowResponse(BaseModel):
    """Response of /api/show."""

    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    license: str | None = None
    modelfile: str | None = None
    parameters: str | None = None
    template: str | None = None
    details: OllamaModelDetails | None = None
    model_info: dict[str, Any] | None = None
    capabilities: list[str] | None = None


class VersionResponse(BaseModel):
    """Response of /api/version."""

    version: str


class RunningModel(BaseModel):
    """A model currently loaded in memory, from /api/ps."""

    name: str
    expires_at: datetime | None = None
    size_vram: int | None = None

    @field_validator("expires_at", mode="before")
    @classmethod
    def parse_expires_at(cls, v: Any) -> datetime | None:
        """Unparseable timestamps become None instead of failing the response."""
        if isinstance(v, datetime):
            return v
        if isinstance(v, str):
            return parse_iso8601(v)
        return None

    @field_validator("size_vram", mode="before")
    @classmethod
    def parse_size_vram(cls, v: Any) -> int | None:
        if isinstance(v, bool):
            return None
        if isinstance(v, int):
            return v
        return None

    @property
    def formatted_vram_size(self) -> str | None:
        if self.size_vram is None:
            return None
        return format_byte_count(self.size_vram)


class PsResponse(BaseModel):
    """Response of /api/ps."""

    models: list[RunningModel]
