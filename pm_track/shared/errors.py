from __future__ import annotations

from typing import Any


class PMTrackError(RuntimeError):
    """
    Base error for pm-track components. Carries metadata for structured logging.
    """

    category: str = "runtime"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        metadata: dict[str, Any] | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.metadata = metadata or {}
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": str(self),
            "category": self.category,
            "retryable": self.retryable,
            "metadata": self.metadata,
        }


class NotFoundError(PMTrackError, LookupError):
    """Raised by write paths that require an existing aggregate or projection."""

    category = "not_found"


class ValidationError(PMTrackError, ValueError):
    """Raised when command input is malformed; nothing has been appended yet."""

    category = "validation"


class StorageError(PMTrackError):
    """Raised when the durable medium rejects a write; the transaction was rolled back."""

    category = "storage"


class ConflictError(PMTrackError):
    """Raised on request when a sync pass detected divergent local and remote state."""

    category = "conflict"


class ExternalServiceError(PMTrackError):
    """Raised when the issue tracker is unreachable, unauthenticated, or rejects a call."""

    category = "external"
    retryable = True
