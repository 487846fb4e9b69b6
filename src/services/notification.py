"""Notification emitter: inspection feed plus outbound delivery."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session

from core.config import get_settings
from core.logging_config import get_logger
from core.models import (
    InspectionNotification,
    Listing,
    NotificationAudience,
    NotificationCategory,
    ParticipantRole,
)
from core.utils import isoformat, utcnow
from services.messaging import MessagingClient, get_messaging_client

LOGGER = get_logger(__name__)
SETTINGS = get_settings()

_OUTBOUND_KEY = "pending_outbound_notifications"


class NotificationService:
    """
    Writes the per-listing inspection feed and forwards each entry to the
    messaging collaborator.

    The feed row is part of the caller's transaction. Messages are held on
    the session and sent only once it commits; a rollback drops them.
    Delivery is best effort and its failure never affects the transition.
    """

    def __init__(self, session: Session, messaging: Optional[MessagingClient] = None):
        self.session = session
        self.messaging = messaging or get_messaging_client()

    def notify(
        self,
        listing: Listing,
        title: str,
        message: str,
        category: NotificationCategory = NotificationCategory.GENERAL,
        audience: NotificationAudience = NotificationAudience.ALL,
        triggered_by: Optional[ParticipantRole] = None,
        triggered_by_id: Optional[str] = None,
        related_id: Optional[Any] = None,
        buyer_id: Optional[str] = None,
    ) -> InspectionNotification:
        """
        Record a feed entry and queue it for its recipients.

        Args:
            listing: Listing the notification belongs to.
            title: Short headline.
            message: Body text.
            category: Feed category.
            audience: Buyer, seller, or both.
            triggered_by: Role of the participant who caused it; their side
                starts out read.
            triggered_by_id: Participant who caused it; never messaged.
            related_id: Checklist item / defect id the entry refers to.
            buyer_id: Buyer to address when the listing no longer names one
                (cancellation clears ``confirmed_buyer_id`` first).

        Returns:
            The created InspectionNotification.
        """
        entry = InspectionNotification(
            listing_id=listing.id,
            purchase_id=listing.purchase_id,
            title=title,
            message=message,
            category=category.value,
            audience=audience.value,
            triggered_by=triggered_by.value if triggered_by else None,
            triggered_by_id=triggered_by_id,
            related_id=str(related_id) if related_id is not None else None,
            read_by_buyer=triggered_by == ParticipantRole.BUYER,
            read_by_seller=triggered_by == ParticipantRole.SELLER,
            created_at=utcnow(),
        )
        self.session.add(entry)
        self.session.flush()

        buyer = buyer_id or listing.confirmed_buyer_id
        outbound = self.session.info.setdefault(_OUTBOUND_KEY, [])
        for role, participant_id in self._recipients(listing.owner_id, buyer, audience):
            if participant_id == triggered_by_id:
                continue
            outbound.append((
                self.messaging,
                participant_id,
                {
                    "listing_id": listing.id,
                    "notification_id": entry.id,
                    "title": title,
                    "message": message,
                    "category": category.value,
                    "link": f"{SETTINGS.app_base_url}/inspection/{role.value}/{listing.id}",
                },
            ))

        LOGGER.debug(f"Notification '{title}' recorded for listing {listing.id} ({audience.value})")
        return entry

    @staticmethod
    def _recipients(
        seller_id: str,
        buyer_id: Optional[str],
        audience: NotificationAudience,
    ) -> List[tuple]:
        recipients = []
        if audience in (NotificationAudience.SELLER, NotificationAudience.ALL):
            recipients.append((ParticipantRole.SELLER, seller_id))
        if buyer_id and audience in (NotificationAudience.BUYER, NotificationAudience.ALL):
            recipients.append((ParticipantRole.BUYER, buyer_id))
        return recipients

    def list_notifications(
        self,
        listing: Listing,
        role: Optional[ParticipantRole] = None,
        include_history: bool = False,
        limit: int = 100,
    ) -> List[InspectionNotification]:
        """
        Feed entries for the listing, newest first.

        Only the current purchase is shown unless ``include_history``.
        """
        query = self.session.query(InspectionNotification).filter(
            InspectionNotification.listing_id == listing.id
        )
        if not include_history:
            if listing.purchase_id:
                query = query.filter(InspectionNotification.purchase_id == listing.purchase_id)
            else:
                query = query.filter(InspectionNotification.purchase_id.is_(None))
        if role is not None:
            query = query.filter(
                InspectionNotification.audience.in_([role.value, NotificationAudience.ALL.value])
            )
        return query.order_by(
            InspectionNotification.created_at.desc(), InspectionNotification.id.desc()
        ).limit(limit).all()

    def mark_read(
        self,
        listing_id: int,
        notification_ids: Iterable[int],
        role: ParticipantRole,
    ) -> int:
        """Mark entries read for one side. Returns how many were updated."""
        ids = list(notification_ids)
        if not ids:
            return 0
        column = "read_by_buyer" if role == ParticipantRole.BUYER else "read_by_seller"
        updated = 0
        for entry in self.session.query(InspectionNotification).filter(
            InspectionNotification.listing_id == listing_id,
            InspectionNotification.id.in_(ids),
        ):
            if not getattr(entry, column):
                setattr(entry, column, True)
                updated += 1
        self.session.flush()
        return updated


@event.listens_for(Session, "after_commit")
def _send_outbound(session: Session) -> None:
    # Releasing a SAVEPOINT also fires after_commit
    if session.in_nested_transaction():
        return
    for messaging, participant_id, payload in session.info.pop(_OUTBOUND_KEY, []):
        messaging.emit_notification(participant_id, payload)


@event.listens_for(Session, "after_rollback")
def _drop_outbound(session: Session) -> None:
    if session.in_nested_transaction():
        return
    dropped = session.info.pop(_OUTBOUND_KEY, [])
    if dropped:
        LOGGER.info(f"Dropped {len(dropped)} undelivered notifications after rollback")


def notification_to_dict(entry: InspectionNotification) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "listing_id": entry.listing_id,
        "title": entry.title,
        "message": entry.message,
        "category": entry.category,
        "audience": entry.audience,
        "triggered_by": entry.triggered_by,
        "related_id": entry.related_id,
        "read_by_buyer": entry.read_by_buyer,
        "read_by_seller": entry.read_by_seller,
        "created_at": isoformat(entry.created_at),
    }


def get_notification_service(session: Session) -> NotificationService:
    """Get a NotificationService instance."""
    return NotificationService(session)


__all__ = [
    "NotificationService",
    "notification_to_dict",
    "get_notification_service",
]
