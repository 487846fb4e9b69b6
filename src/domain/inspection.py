"""Shared inspection checklist for a listing under purchase."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from core.logging_config import get_logger
from core.models import (
    ChecklistStatus,
    InspectionChecklistItem,
    Listing,
    NotificationCategory,
    ParticipantRole,
)
from core.utils import isoformat, utcnow
from domain.listings import ListingStore, counterpart, resolve_role
from services.change_feed import ChangeEvent, ChangeFeed, get_change_feed
from services.notification import NotificationService
from services.timeline import TimelineEventType, TimelineService

LOGGER = get_logger(__name__)

# pending is the only non-terminal status
ALLOWED_TRANSITIONS = {
    ChecklistStatus.PENDING: {ChecklistStatus.PASSED, ChecklistStatus.ISSUE},
    ChecklistStatus.PASSED: set(),
    ChecklistStatus.ISSUE: set(),
}


def parse_checklist_status(value: Any) -> ChecklistStatus:
    try:
        return ChecklistStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in ChecklistStatus)
        raise ValidationError(f"Unknown checklist status '{value}' (expected one of {allowed})")


class InspectionChecklistEngine:
    """
    Checklist items both parties can add to and sign off.

    Items belong to the purchase round they were created in; a cancelled
    purchase's items stay in the database but drop out of the default view.
    """

    def __init__(
        self,
        session: Session,
        notifications: Optional[NotificationService] = None,
        timeline: Optional[TimelineService] = None,
        feed: Optional[ChangeFeed] = None,
    ):
        self.session = session
        self.store = ListingStore(session)
        self.notifications = notifications or NotificationService(session)
        self.timeline = timeline or TimelineService(session)
        self.feed = feed or get_change_feed()

    def get_item(self, item_id: int) -> InspectionChecklistItem:
        item = self.session.get(InspectionChecklistItem, item_id)
        if item is None:
            raise NotFoundError(f"Checklist item {item_id} not found", item_id=item_id)
        return item

    def add_item(
        self,
        listing_id: int,
        caller_id: str,
        title: str,
        description: Optional[str] = None,
    ) -> InspectionChecklistItem:
        """
        Add a pending checklist item.

        Raises:
            ValidationError: If the title is blank.
            PermissionDeniedError: If the caller is not a party to the purchase.
            ConflictError: If the buyer has not confirmed the purchase.
        """
        title = (title or "").strip()
        if not title:
            raise ValidationError("A checklist item needs a title")

        listing = self.store.get(listing_id)
        role = resolve_role(listing, caller_id)
        if not listing.buyer_confirmed:
            raise ConflictError(
                "The inspection opens once the buyer has confirmed the purchase",
                listing_id=listing_id,
            )

        now = utcnow()
        item = InspectionChecklistItem(
            listing_id=listing.id,
            purchase_id=listing.purchase_id,
            title=title,
            description=description,
            created_by=role.value,
            created_by_id=caller_id,
            status=ChecklistStatus.PENDING.value,
            last_updated_by=role.value,
            created_at=now,
            last_updated_at=now,
        )
        self.session.add(item)
        self.session.flush()

        self._record(
            listing, item, role, caller_id,
            event_type=TimelineEventType.CHECKLIST_ITEM_ADDED,
            headline="New checklist item",
            message=f"The {role.value} added \"{item.title}\" to the inspection checklist.",
        )
        return item

    def set_status(self, item_id: int, status: Any, caller_id: str) -> InspectionChecklistItem:
        """
        Mark an item passed or flagged.

        Setting the status an item already has is a no-op.

        Raises:
            ValidationError: If ``status`` is not a checklist status.
            InvalidTransitionError: If the item is already passed or flagged.
            ConflictError: If the item belongs to a cancelled purchase.
        """
        new_status = parse_checklist_status(status)
        item = self.get_item(item_id)
        listing = self.store.get(item.listing_id)
        role = resolve_role(listing, caller_id)
        self._require_current(listing, item)

        current = ChecklistStatus(item.status)
        if current == new_status:
            return item
        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Checklist item is already '{current.value}' and cannot become '{new_status.value}'",
                item_id=item_id,
            )

        item.status = new_status.value
        item.last_updated_by = role.value
        item.last_updated_at = utcnow()
        self.session.flush()

        verdict = "passed" if new_status == ChecklistStatus.PASSED else "flagged an issue on"
        self._record(
            listing, item, role, caller_id,
            event_type=TimelineEventType.CHECKLIST_STATUS_CHANGED,
            headline="Checklist updated",
            message=f"The {role.value} {verdict} \"{item.title}\".",
            metadata={"status": new_status.value},
        )
        return item

    def update_item_details(
        self,
        item_id: int,
        caller_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> InspectionChecklistItem:
        """Edit an item's title or description without touching its status."""
        item = self.get_item(item_id)
        listing = self.store.get(item.listing_id)
        role = resolve_role(listing, caller_id)
        self._require_current(listing, item)

        if title is not None:
            title = title.strip()
            if not title:
                raise ValidationError("A checklist item needs a title")
            item.title = title
        if description is not None:
            item.description = description
        item.last_updated_by = role.value
        item.last_updated_at = utcnow()
        self.session.flush()
        return item

    def list_checklist(self, listing_id: int, include_history: bool = False) -> List[InspectionChecklistItem]:
        """Checklist items for the listing's current purchase, newest activity first."""
        listing = self.store.get(listing_id)
        query = self.session.query(InspectionChecklistItem).filter(
            InspectionChecklistItem.listing_id == listing.id
        )
        if not include_history:
            query = query.filter(InspectionChecklistItem.purchase_id == listing.purchase_id)
        return query.order_by(
            InspectionChecklistItem.last_updated_at.desc(), InspectionChecklistItem.id.desc()
        ).all()

    @staticmethod
    def _require_current(listing: Listing, item: InspectionChecklistItem) -> None:
        if item.purchase_id != listing.purchase_id:
            raise ConflictError(
                "This checklist item belongs to a cancelled purchase",
                item_id=item.id,
                listing_id=listing.id,
            )

    def _record(
        self,
        listing: Listing,
        item: InspectionChecklistItem,
        role: ParticipantRole,
        caller_id: str,
        event_type: str,
        headline: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.notifications.notify(
            listing,
            title=headline,
            message=message,
            category=NotificationCategory.CHECKLIST,
            audience=counterpart(role),
            triggered_by=role,
            triggered_by_id=caller_id,
            related_id=item.id,
        )
        self.timeline.add_event(
            listing.id,
            event_type,
            title=headline,
            description=message,
            actor_id=caller_id,
            metadata={"item_id": item.id, **(metadata or {})},
        )
        self.feed.publish_after_commit(
            self.session,
            ChangeEvent(listing.id, event_type, payload={"item_id": item.id}),
        )
        LOGGER.info(f"{event_type}: checklist item {item.id} on listing {listing.id}")


def checklist_item_to_dict(item: InspectionChecklistItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "listing_id": item.listing_id,
        "title": item.title,
        "description": item.description,
        "status": item.status,
        "created_by": item.created_by,
        "created_by_id": item.created_by_id,
        "last_updated_by": item.last_updated_by,
        "created_at": isoformat(item.created_at),
        "last_updated_at": isoformat(item.last_updated_at),
    }


__all__ = [
    "InspectionChecklistEngine",
    "checklist_item_to_dict",
    "parse_checklist_status",
]
