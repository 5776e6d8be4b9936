"""
Custom exception hierarchy for the passthrough proxy.

All exceptions inherit from PassthruError, which provides optional context
for structured error handling and logging.
"""

from __future__ import annotations

from typing import Any


class PassthruError(Exception):
    """Base exception for all proxy errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(PassthruError):
    """Raised when configuration is invalid or missing.

    Examples:
        - STORAGE_DIR that cannot be created (serve)
    """

    pass


class InvalidRequestError(PassthruError):
    """Raised when an inbound request is missing its source URL.

    Surfaced to the caller as a client error.
    """

    pass


class ResolverError(PassthruError):
    """Raised when the resolver service fails or returns something unusable.

    Context should include:
        - endpoint: The resolver endpoint
        - status_code: HTTP status code if applicable
    """

    pass


class DownloadError(PassthruError):
    """Raised when fetching the resolved resource fails.

    Context should include:
        - url: The resolved resource URL
        - status_code: HTTP status code if applicable
    """

    pass


class StorageError(PassthruError):
    """Raised when an artifact cannot be written to or removed from disk.

    A StorageError never leaves a previously complete artifact corrupted.
    """

    pass


class ArtifactNotFoundError(PassthruError):
    """Raised when a read targets a key with no complete artifact.

    Internal signal only; callers never see it as a distinct status.
    """

    pass


class FetchTimeoutError(PassthruError):
    """Raised when a leader's resolve/download/store sequence exceeds its budget.

    Context should include:
        - key: The cache key
        - timeout_seconds: The configured budget
    """

    pass
