"""Timeline service for the listing audit trail."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from core.logging_config import get_logger
from core.models import ListingEvent
from core.utils import isoformat, utcnow

LOGGER = get_logger(__name__)


class TimelineEventType:
    """Constants for listing timeline event types."""
    LISTING_CREATED = "listing_created"
    LISTING_UPDATED = "listing_updated"
    BUYER_PROPOSED = "buyer_proposed"
    BUYER_CONFIRMED = "buyer_confirmed"
    DOCUMENTS_CONFIRMED = "documents_confirmed"
    HANDOVER_SCHEDULED = "handover_scheduled"
    HANDOVER_COMPLETED = "handover_completed"
    PURCHASE_CANCELLED = "purchase_cancelled"
    CHECKLIST_ITEM_ADDED = "checklist_item_added"
    CHECKLIST_STATUS_CHANGED = "checklist_status_changed"
    DEFECT_REPORTED = "defect_reported"
    DEFECT_STATUS_CHANGED = "defect_status_changed"
    DEFECT_PHOTOS_ADDED = "defect_photos_added"
    PROJECTIONS_DEGRADED = "projections_degraded"
    PROJECTIONS_REPAIRED = "projections_repaired"


class TimelineService:
    """Service for managing listing timeline events."""

    def __init__(self, session: Session):
        self.session = session

    def add_event(
        self,
        listing_id: int,
        event_type: str,
        title: str,
        description: Optional[str] = None,
        actor_id: Optional[str] = None,
        operation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ListingEvent:
        """
        Add a timeline event for a listing.

        Args:
            listing_id: ID of the listing.
            event_type: Type of event (use TimelineEventType constants).
            title: Short title for the event.
            description: Optional longer description.
            actor_id: Participant who caused the event, if any.
            operation_id: Transition operation id, if any.
            metadata: Optional JSON metadata.
        """
        event = ListingEvent(
            listing_id=listing_id,
            event_type=event_type,
            title=title,
            description=description,
            actor_id=actor_id,
            operation_id=operation_id,
            event_metadata=metadata or {},
            created_at=utcnow(),
        )
        self.session.add(event)
        self.session.flush()

        LOGGER.debug(f"Added timeline event: {event_type} for listing {listing_id}")
        return event

    def get_listing_timeline(
        self,
        listing_id: int,
        limit: int = 50,
        event_type: Optional[str] = None,
    ) -> List[ListingEvent]:
        """Get timeline events for a listing, newest first."""
        query = self.session.query(ListingEvent).filter(ListingEvent.listing_id == listing_id)
        if event_type:
            query = query.filter(ListingEvent.event_type == event_type)
        return query.order_by(ListingEvent.created_at.desc(), ListingEvent.id.desc()).limit(limit).all()


def event_to_dict(event: ListingEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "listing_id": event.listing_id,
        "event_type": event.event_type,
        "title": event.title,
        "description": event.description,
        "actor_id": event.actor_id,
        "operation_id": event.operation_id,
        "metadata": event.event_metadata or {},
        "created_at": isoformat(event.created_at),
    }


__all__ = [
    "TimelineService",
    "TimelineEventType",
    "event_to_dict",
]
