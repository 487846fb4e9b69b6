"""Core module exports."""
from __future__ import annotations

from core.config import Settings, get_settings, reload_settings
from core.db import Base, SessionLocal, get_session, get_readonly_session
from core.exceptions import (
    # Base
    TransactionCoordinatorError,
    # Configuration / Database
    ConfigurationError,
    DatabaseError,
    # Workflow
    NotFoundError,
    ConflictError,
    ConcurrentModificationError,
    PermissionDeniedError,
    ValidationError,
    InvalidTransitionError,
    PartialWriteError,
    # External Services
    ExternalServiceError,
    ServiceUnavailableError,
    StorageError,
    DirectoryError,
    MessagingError,
)
from core.logging_config import (
    setup_logging,
    get_logger,
    get_context_logger,
    log_external_call,
    JSONFormatter,
    ContextLogger,
)
from core.models import (
    Listing,
    SellerListingProjection,
    BuyerPropertyProjection,
    InspectionChecklistItem,
    DefectIssue,
    DefectPhoto,
    InspectionNotification,
    ProjectionOutbox,
    ListingEvent,
    PurchaseState,
    ParticipantRole,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "reload_settings",
    # Database
    "Base",
    "SessionLocal",
    "get_session",
    "get_readonly_session",
    # Models
    "Listing",
    "SellerListingProjection",
    "BuyerPropertyProjection",
    "InspectionChecklistItem",
    "DefectIssue",
    "DefectPhoto",
    "InspectionNotification",
    "ProjectionOutbox",
    "ListingEvent",
    "PurchaseState",
    "ParticipantRole",
    # Exceptions
    "TransactionCoordinatorError",
    "ConfigurationError",
    "DatabaseError",
    "NotFoundError",
    "ConflictError",
    "ConcurrentModificationError",
    "PermissionDeniedError",
    "ValidationError",
    "InvalidTransitionError",
    "PartialWriteError",
    "ExternalServiceError",
    "ServiceUnavailableError",
    "StorageError",
    "DirectoryError",
    "MessagingError",
    # Logging
    "setup_logging",
    "get_logger",
    "get_context_logger",
    "log_external_call",
    "JSONFormatter",
    "ContextLogger",
]
