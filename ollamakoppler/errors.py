"""Error types raised by the adapter."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Request cannot be expressed for the backend; raised before any backend call."""


class OllamaError(Exception):
    """Backend call failed or returned data the adapter cannot use."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"{self.message} (status={self.status_code})"


class AbortError(Exception):
    """Generation was cancelled through the caller's abort signal."""

    def __init__(self, message: str = "generation aborted") -> None:
        super().__init__(message)
