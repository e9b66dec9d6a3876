"""
Server connection schemas.
"""

from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

DEFAULT_SERVER_NAME = "Local"
DEFAULT_SERVER_HOST = "localhost:11434"


class ServerInfo(BaseModel):
    """Connection details of an Ollama server."""

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(description="Display name")
    host: str = Field(description='Host, e.g. "localhost:11434" or "https://example.com"')
    is_demo: bool = Field(default=False)


class ConnectionState(str, Enum):
    """Outcome classes of a connectivity probe."""

    CHECKING = "checking"
    CONNECTED = "connected"
    ERROR = "error"
    TIMED_OUT = "timed_out"
    UNKNOWN_HOST = "unknown_host"


class ServerConnectionStatus(BaseModel):
    """Result of a connectivity probe."""

    state: ConnectionState
    status_code: int | None = Field(default=None, description="HTTP status for ERROR")
    error_message: str | None = Field(default=None, description="Server-reported error text")

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @classmethod
    def connected(cls) -> "ServerConnectionStatus":
        return cls(state=ConnectionState.CONNECTED)

    @classmethod
    def unknown_host(cls) -> "ServerConnectionStatus":
        return cls(state=ConnectionState.UNKNOWN_HOST)

    @classmethod
    def timed_out(cls) -> "ServerConnectionStatus":
        return cls(state=ConnectionState.TIMED_OUT)

    @classmethod
    def error_with_message(
        cls, status_code: int, error_message: str | None = None
    ) -> "ServerConnectionStatus":
        return cls(state=ConnectionState.ERROR, status_code=status_code, error_message=error_message)
