"""
Structured logging configuration for Mocolamma.

Provides JSON or plain text logging with context tracking for stream tasks
and the model they operate on.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from mocolamma.core.config import settings

# =============================================================================
# Context Variables for Stream Tracking
# =============================================================================

stream_id_var: ContextVar[str | None] = ContextVar("stream_id", default=None)
model_var: ContextVar[str | None] = ContextVar("model", default=None)


def _stream_context() -> dict[str, str]:
    """Stream id and model of the task currently logging, if any."""
    context = {}
    stream_id = stream_id_var.get()
    if stream_id:
        context["stream_id"] = stream_id
    model = model_var.get()
    if model:
        context["model"] = model
    return context


# =============================================================================
# Formatters
# =============================================================================


class JSONFormatter(logging.Formatter):
    """One JSON object per record, carrying the stream context."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_stream_context(),
        }

        # Fields passed through log_with_context
        context = getattr(record, "context", None)
        if isinstance(context, dict):
            log_data.update(context)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Single-line text with a short stream id, e.g. `[stream=1a2b3c4d, model=llama3]`."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).strftime(
            "%Y-%m-%d %H:%M:%S"
        )
        parts = []
        context = _stream_context()
        if "stream_id" in context:
            parts.append(f"stream={context['stream_id'][:8]}")
        if "model" in context:
            parts.append(f"model={context['model']}")
        context_str = f" [{', '.join(parts)}]" if parts else ""

        message = f"{timestamp} {record.levelname:8s} {record.name}{context_str}: {record.getMessage()}"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


# =============================================================================
# Logger Configuration
# =============================================================================


def configure_logging() -> None:
    """
    Configure logging based on settings.

    Sets up formatters, handlers, and log levels for the mocolamma logger tree.
    """
    package_logger = logging.getLogger("mocolamma")
    package_logger.setLevel(getattr(logging, settings.log_level))

    package_logger.handlers.clear()

    if settings.log_format == "json":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = TextFormatter()

    if settings.log_output in ("stdout", "both"):
        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(getattr(logging, settings.log_level))
        stdout_handler.setFormatter(formatter)
        package_logger.addHandler(stdout_handler)

    if settings.log_output in ("file", "both"):
        log_file_path = Path(settings.log_file)
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(settings.log_file)
        file_handler.setLevel(getattr(logging, settings.log_level))
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    # Quiet the transport library
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# =============================================================================
# Logger Helper Functions
# =============================================================================


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Args:
        name: The logger name (typically __name__)

    Returns:
        logging.Logger: A configured logger instance
    """
    return logging.getLogger(name)


def log_with_context(logger: logging.Logger, level: int, message: str, **extra: Any) -> None:
    """
    Log a message with additional context fields.

    Args:
        logger: The logger instance
        level: The log level (e.g., logging.INFO)
        message: The log message
        **extra: Additional context fields to include
    """
    logger.log(level, message, extra={"context": extra})


def clear_context() -> None:
    """Clear all context variables."""
    stream_id_var.set(None)
    model_var.set(None)


# =============================================================================
# Context Manager for Stream Logging
# =============================================================================


class StreamLogContext:
    """
    Context manager for stream task logging.

    Sets the stream id and model in the logging context and restores the
    previous values on exit.

    Example:
        with StreamLogContext(stream_id=task.id, model="llama3"):
            logger.info("Receiving chat stream")
    """

    def __init__(self, stream_id: str | None = None, model: str | None = None):
        self.stream_id = stream_id
        self.model = model
        self._stream_token = None
        self._model_token = None

    def __enter__(self) -> "StreamLogContext":
        if self.stream_id:
            self._stream_token = stream_id_var.set(self.stream_id)
        if self.model:
            self._model_token = model_var.set(self.model)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._stream_token is not None:
            stream_id_var.reset(self._stream_token)
            self._stream_token = None
        if self._model_token is not None:
            model_var.reset(self._model_token)
            self._model_token = None


# =============================================================================
# Initialize Logging on Module Import
# =============================================================================

configure_logging()
