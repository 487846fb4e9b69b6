"""Infrastructure services for the transaction coordinator.

This module provides:
- Participant projection writer, reader and reconciliation
- Projection retry policy and outbox
- Inspection notification feed and outbound messaging
- Attachment storage and participant directory clients
- Listing timeline and in-process change feed

External collaborators have:
- Configuration checks (unset URL means disabled)
- Caching (TTLCache for directory lookups)
- Retry logic (with exponential backoff)
- Structured logging
"""
from __future__ import annotations

# Cache utilities
from .cache import TTLCache, CacheEntry, get_participant_cache

# Retry utilities
from .retry import with_retry, ProjectionRetryPolicy

# Projections
from .projection import (
    ProjectionTarget,
    ProjectionDelta,
    FanOutOutcome,
    ProjectionWriter,
    ProjectionReader,
    seller_target,
    buyer_target,
)
from .reconciliation import ReconciliationService, ReconciliationResult, OutboxDrainResult

# Notifications
from .notification import NotificationService, get_notification_service
from .messaging import MessagingClient, get_messaging_client

# Collaborators
from .storage import StorageClient, get_storage_client
from .directory import ParticipantDirectory, ParticipantInfo, get_participant_directory

# Audit trail and change feed
from .timeline import TimelineService, TimelineEventType
from .change_feed import ChangeEvent, ChangeFeed, get_change_feed

__all__ = [
    # Cache
    "TTLCache",
    "CacheEntry",
    "get_participant_cache",
    # Retry
    "with_retry",
    "ProjectionRetryPolicy",
    # Projections
    "ProjectionTarget",
    "ProjectionDelta",
    "FanOutOutcome",
    "ProjectionWriter",
    "ProjectionReader",
    "seller_target",
    "buyer_target",
    "ReconciliationService",
    "ReconciliationResult",
    "OutboxDrainResult",
    # Notifications
    "NotificationService",
    "get_notification_service",
    "MessagingClient",
    "get_messaging_client",
    # Collaborators
    "StorageClient",
    "get_storage_client",
    "ParticipantDirectory",
    "ParticipantInfo",
    "get_participant_directory",
    # Timeline / change feed
    "TimelineService",
    "TimelineEventType",
    "ChangeEvent",
    "ChangeFeed",
    "get_change_feed",
]
