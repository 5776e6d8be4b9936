"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files.
Validates required fields and provides typed access to settings.
"""

from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Literal
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from passthru.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings:
        RESOLVER_ENDPOINT: URL of the extraction service that resolves source URLs
        STORAGE_DIR: Directory holding cached artifacts
        RETENTION_MINUTES: Maximum artifact age before eviction
        SWEEP_INTERVAL_SECONDS: Period between eviction sweeps
        FETCH_TIMEOUT_SECONDS: Budget for one resolve/download/store sequence
        RESOLVER_TIMEOUT_SECONDS: Per-request timeout for the resolver call
        VIDEO_QUALITY: Quality hint sent to the resolver
        DISABLE_METADATA: Metadata flag sent to the resolver
        HOST / PORT: Listen address for the proxy
        METRICS_PORT: Port for the Prometheus endpoint (0 disables it)
        LOG_LEVEL / LOG_FILE: Logging
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Resolver service
    RESOLVER_ENDPOINT: str = Field(
        default="http://external-service-endpoint",
        description="Endpoint of the extraction service (http or https URL)",
    )

    # Storage and expiry
    STORAGE_DIR: Path = Field(default=Path("storage"), description="Artifact directory")
    RETENTION_MINUTES: float = Field(
        default=720.0, gt=0.0, description="Maximum artifact age in minutes"
    )
    SWEEP_INTERVAL_SECONDS: float = Field(
        default=600.0, gt=0.0, description="Seconds between eviction sweeps"
    )

    # Upstream behaviour
    FETCH_TIMEOUT_SECONDS: float = Field(
        default=300.0, gt=0.0, description="Budget for one resolve+download+store"
    )
    RESOLVER_TIMEOUT_SECONDS: float = Field(
        default=30.0, gt=0.0, description="Timeout for the resolver request"
    )
    VIDEO_QUALITY: str = Field(default="max", description="videoQuality sent to resolver")
    DISABLE_METADATA: bool = Field(
        default=True, description="disableMetadata sent to resolver"
    )

    # Server
    HOST: str = Field(default="0.0.0.0", description="Listen host")
    PORT: int = Field(default=8080, ge=1, le=65535, description="Listen port")
    METRICS_PORT: int = Field(
        default=8081, ge=0, le=65535, description="Prometheus port (0 disables)"
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON log file")

    @field_validator("RESOLVER_ENDPOINT")
    @classmethod
    def validate_resolver_endpoint(cls, v: str) -> str:
        """Validate that RESOLVER_ENDPOINT is an absolute http(s) URL."""
        parsed = urlparse(v.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(
                "RESOLVER_ENDPOINT must be an absolute http:// or https:// URL"
            )
        return v.strip()

    @property
    def retention(self) -> timedelta:
        """Retention window as a timedelta."""
        return timedelta(minutes=self.RETENTION_MINUTES)

    @property
    def sweep_interval(self) -> timedelta:
        """Sweep period as a timedelta."""
        return timedelta(seconds=self.SWEEP_INTERVAL_SECONDS)

    def ensure_directories(self) -> None:
        """Create the storage directory if it doesn't exist.

        Raises:
            ConfigurationError: If STORAGE_DIR cannot be created.
        """
        try:
            self.STORAGE_DIR.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                "Failed to create storage directory",
                context={
                    "storage_dir": str(self.STORAGE_DIR),
                    "error": e.strerror or str(e),
                },
            ) from e

    def redacted_display(self) -> dict[str, str | int | float | bool | None]:
        """Return settings for display, with credentials in the endpoint redacted."""
        parsed = urlparse(self.RESOLVER_ENDPOINT)
        endpoint = self.RESOLVER_ENDPOINT
        if parsed.password:
            endpoint = endpoint.replace(parsed.password, "***", 1)

        return {
            "RESOLVER_ENDPOINT": endpoint,
            "STORAGE_DIR": str(self.STORAGE_DIR),
            "RETENTION_MINUTES": self.RETENTION_MINUTES,
            "SWEEP_INTERVAL_SECONDS": self.SWEEP_INTERVAL_SECONDS,
            "FETCH_TIMEOUT_SECONDS": self.FETCH_TIMEOUT_SECONDS,
            "RESOLVER_TIMEOUT_SECONDS": self.RESOLVER_TIMEOUT_SECONDS,
            "VIDEO_QUALITY": self.VIDEO_QUALITY,
            "DISABLE_METADATA": self.DISABLE_METADATA,
            "HOST": self.HOST,
            "PORT": self.PORT,
            "METRICS_PORT": self.METRICS_PORT,
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
