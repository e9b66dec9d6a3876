"""
Client configuration using pydantic-settings.

Loads and validates environment variables from .env file or system environment,
and holds the observable API timeout option used to build HTTP sessions.
"""

from collections.abc import Callable
from enum import Enum
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# API Timeout Options
# =============================================================================


class APITimeoutOption(str, Enum):
    """Selectable time-to-first-byte timeouts for API requests."""

    SECONDS_30 = "seconds30"
    MINUTES_1 = "minutes1"
    MINUTES_5 = "minutes5"
    UNLIMITED = "unlimited"

    @property
    def request_timeout_until_first_byte(self) -> float | None:
        """Seconds to wait for the server to start answering (None = no limit)."""
        return {
            APITimeoutOption.SECONDS_30: 30.0,
            APITimeoutOption.MINUTES_1: 60.0,
            APITimeoutOption.MINUTES_5: 300.0,
            APITimeoutOption.UNLIMITED: None,
        }[self]

    @property
    def overall_resource_timeout(self) -> float | None:
        """Long-running streams are never killed by an overall timer."""
        return None


class Settings(BaseSettings):
    """Client settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MOCOLAMMA_",
        case_sensitive=False,
        extra="ignore",
    )

    # =============================================================================
    # Ollama Configuration
    # =============================================================================
    ollama_host: str = Field(
        default="localhost:11434",
        description="Default Ollama host, with or without http(s):// prefix",
    )
    api_timeout_option: APITimeoutOption = Field(default=APITimeoutOption.SECONDS_30)
    pull_timeout: int = Field(default=3600, description="Idle timeout for model pulls in seconds")

    # =============================================================================
    # Progress Reporting
    # =============================================================================
    pull_status_update_interval: float = Field(default=0.5, gt=0.0)
    speed_sample_interval: float = Field(default=0.5, gt=0.0)

    # =============================================================================
    # Logging Configuration
    # =============================================================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="text")
    log_output: Literal["stdout", "file", "both"] = Field(default="stdout")
    log_file: str = Field(default="logs/mocolamma.log")


# =============================================================================
# Singleton Settings Instance
# =============================================================================
settings = Settings()


def get_settings() -> Settings:
    """
    Get the global settings instance.

    Returns:
        Settings: The global settings instance
    """
    return settings


# =============================================================================
# Observable Timeout Setting
# =============================================================================


class TimeoutSettings:
    """
    Holds the current API timeout option and notifies subscribers on change.

    The client subscribes to rebuild its HTTP session whenever the option changes.
    """

    def __init__(self, option: APITimeoutOption | None = None):
        """
        Initialize timeout settings.

        Args:
            option: Initial option (defaults to settings.api_timeout_option)
        """
        self._option = option or settings.api_timeout_option
        self._subscribers: list[Callable[[APITimeoutOption], None]] = []

    @property
    def current_option(self) -> APITimeoutOption:
        return self._option

    def set(self, option: APITimeoutOption) -> None:
        """Change the option; subscribers are only notified on a real change."""
        if option == self._option:
            return
        self._option = option
        for callback in list(self._subscribers):
            callback(option)

    def subscribe(self, callback: Callable[[APITimeoutOption], None]) -> Callable[[], None]:
        """
        Register a change callback.

        Returns:
            Callable: Function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe
