"""Custom exceptions for the homeflow transaction coordinator.

Business-rule errors carry a stable ``code`` and a ``message`` that can be
shown to the participant as-is.
"""
from __future__ import annotations

from typing import Any, List, Optional, Sequence


class TransactionCoordinatorError(Exception):
    """Base exception for all application errors."""

    code = "application_error"

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(TransactionCoordinatorError):
    """Raised when required configuration is missing or invalid."""

    code = "configuration_error"


# =============================================================================
# Database Errors
# =============================================================================


class DatabaseError(TransactionCoordinatorError):
    """Base exception for database-related errors."""

    code = "database_error"


# =============================================================================
# Workflow Errors
# =============================================================================


class NotFoundError(TransactionCoordinatorError):
    """Raised when a listing, checklist item, or defect id does not exist."""

    code = "not_found"


class ConflictError(TransactionCoordinatorError):
    """Raised when a purchase precondition on the listing is violated."""

    code = "conflict"


class ConcurrentModificationError(ConflictError):
    """Raised when the listing changed between the precondition read and the write."""

    code = "concurrent_modification"


class PermissionDeniedError(TransactionCoordinatorError):
    """Raised when the caller is not the participant allowed to act."""

    code = "permission_denied"


class ValidationError(TransactionCoordinatorError):
    """Raised when a required document or required field is missing."""

    code = "validation_error"


class InvalidTransitionError(TransactionCoordinatorError):
    """Raised when a status change is not permitted from the current state."""

    code = "invalid_transition"


class PartialWriteError(TransactionCoordinatorError):
    """
    Raised when the canonical write succeeded but projection writes failed.

    ``succeeded`` and ``failed`` hold the projection targets so the caller can
    retry only the unfinished ones.
    """

    code = "partial_write"

    def __init__(
        self,
        message: str = "",
        succeeded: Optional[Sequence[Any]] = None,
        failed: Optional[Sequence[Any]] = None,
        **details: Any,
    ) -> None:
        super().__init__(message, **details)
        self.succeeded: List[Any] = list(succeeded or [])
        self.failed: List[Any] = list(failed or [])


# =============================================================================
# External Service Errors
# =============================================================================


class ExternalServiceError(TransactionCoordinatorError):
    """Base exception for all external collaborator errors."""

    code = "external_service_error"


class ServiceUnavailableError(ExternalServiceError):
    """Raised when a collaborator is not configured or is down."""

    code = "service_unavailable"


class StorageError(ExternalServiceError):
    """Raised when an attachment upload or delete fails."""

    code = "storage_error"


class DirectoryError(ExternalServiceError):
    """Raised when the participant directory lookup fails."""

    code = "directory_error"


class MessagingError(ExternalServiceError):
    """Raised when notification delivery fails."""

    code = "messaging_error"


__all__ = [
    # Base
    "TransactionCoordinatorError",
    # Configuration
    "ConfigurationError",
    # Database
    "DatabaseError",
    # Workflow
    "NotFoundError",
    "ConflictError",
    "ConcurrentModificationError",
    "PermissionDeniedError",
    "ValidationError",
    "InvalidTransitionError",
    "PartialWriteError",
    # External Services
    "ExternalServiceError",
    "ServiceUnavailableError",
    "StorageError",
    "DirectoryError",
    "MessagingError",
]
