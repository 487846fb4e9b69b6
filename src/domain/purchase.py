"""Purchase workflow state machine.

The canonical listing flags are changed first; projection fan-out and
notifications follow in the same unit of work. A fan-out that exhausts
its retries leaves the canonical change in place and reports the
transition as degraded.
"""
from __future__ import annotations

from datetime import date
from typing import Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from core.logging_config import get_context_logger, get_logger
from core.models import (
    Listing,
    NotificationAudience,
    NotificationCategory,
    ParticipantRole,
    ProjectionAction,
    PurchaseState,
)
from core.utils import generate_unique_key, utcnow
from domain.listings import ListingStore, ListingSummary, TransitionResult, purchase_state
from services.change_feed import ChangeEvent, ChangeFeed, get_change_feed
from services.directory import ParticipantDirectory, get_participant_directory
from services.notification import NotificationService
from services.projection import (
    FanOutOutcome,
    ProjectionDelta,
    ProjectionTarget,
    ProjectionWriter,
    buyer_target,
    seller_target,
)
from services.retry import ProjectionRetryPolicy
from services.timeline import TimelineEventType, TimelineService

LOGGER = get_logger(__name__)

REQUIRED_DOCUMENTS = (
    "purchase-agreement",
    "ownership-proof",
    "seller-id-card",
    "tax-documents",
)
OPTIONAL_DOCUMENTS = (
    "power-of-attorney",
    "additional-attachments",
)
KNOWN_DOCUMENTS = REQUIRED_DOCUMENTS + OPTIONAL_DOCUMENTS


def check_documents(acknowledged: Iterable[str]) -> List[str]:
    """
    Validate a seller's document acknowledgement.

    Returns:
        The acknowledged ids, de-duplicated, in catalogue order.

    Raises:
        ValidationError: On unknown ids or missing required documents.
    """
    acknowledged = set(acknowledged or ())
    unknown = sorted(acknowledged - set(KNOWN_DOCUMENTS))
    if unknown:
        raise ValidationError(f"Unknown documents: {', '.join(unknown)}", unknown=unknown)
    missing = [doc for doc in REQUIRED_DOCUMENTS if doc not in acknowledged]
    if missing:
        raise ValidationError(
            f"These documents must be confirmed first: {', '.join(missing)}",
            missing=missing,
        )
    return [doc for doc in KNOWN_DOCUMENTS if doc in acknowledged]


class PurchaseStateMachine:
    """
    Drives a listing through
    available → proposed → buyer confirmed → documents confirmed →
    handover scheduled → completed, with cancel back to available.
    """

    def __init__(
        self,
        session: Session,
        writer: Optional[ProjectionWriter] = None,
        notifications: Optional[NotificationService] = None,
        timeline: Optional[TimelineService] = None,
        feed: Optional[ChangeFeed] = None,
        directory: Optional[ParticipantDirectory] = None,
        retry_policy: Optional[ProjectionRetryPolicy] = None,
    ):
        self.session = session
        self.store = ListingStore(session)
        self.writer = writer or ProjectionWriter(session, directory or get_participant_directory())
        self.notifications = notifications or NotificationService(session)
        self.timeline = timeline or TimelineService(session)
        self.feed = feed or get_change_feed()
        self.retry_policy = retry_policy

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def propose_buyer(self, listing_id: int, buyer_id: str, caller_id: str) -> TransitionResult:
        """
        Seller selects a buyer and reserves the listing for them.

        Raises:
            PermissionDeniedError: If the caller is not the owner.
            ValidationError: If the buyer is missing or is the owner.
            ConflictError: If a purchase is already in progress.
        """
        listing = self.store.get_for_update(listing_id)
        self._require_owner(listing, caller_id)
        if not buyer_id:
            raise ValidationError("A buyer must be selected")
        if buyer_id == listing.owner_id:
            raise ValidationError("The seller cannot buy their own listing")
        if listing.is_under_purchase:
            raise ConflictError(
                "This listing is already reserved for a buyer",
                listing_id=listing_id,
                state=purchase_state(listing).value,
            )

        listing.is_under_purchase = True
        listing.confirmed_buyer_id = buyer_id
        listing.purchase_id = generate_unique_key()
        listing.buyer_confirmed = False
        listing.buyer_confirmed_at = None
        listing.seller_documents_confirmed = False
        listing.acknowledged_documents = None
        listing.handover_date = None
        listing.handover_note = None
        listing.handover_completed_at = None
        self.store.save(listing)

        return self._finish(
            listing,
            TimelineEventType.BUYER_PROPOSED,
            title="Buyer selected",
            actor_id=caller_id,
            targets=(seller_target(listing),),
            metadata={"buyer_id": buyer_id},
            notices=[(
                NotificationAudience.BUYER,
                "You've been selected as the buyer",
                f"The seller chose you as the buyer for \"{listing.title}\". Please confirm the purchase.",
                NotificationCategory.GENERAL,
            )],
            triggered_by=ParticipantRole.SELLER,
        )

    def confirm_as_buyer(self, listing_id: int, caller_id: str) -> TransitionResult:
        """
        Proposed buyer accepts. Creates the buyer's projection.

        Calling again once confirmed is a no-op.

        Raises:
            ConflictError: If there is no purchase or the caller is not the
                proposed buyer.
        """
        listing = self.store.get_for_update(listing_id)
        if not listing.is_under_purchase:
            raise ConflictError("This listing is not reserved for a buyer", listing_id=listing_id)
        if listing.confirmed_buyer_id != caller_id:
            raise ConflictError("This listing is reserved for a different buyer", listing_id=listing_id)
        if listing.buyer_confirmed:
            return self._unchanged(listing)

        listing.buyer_confirmed = True
        listing.buyer_confirmed_at = utcnow()
        self.store.save(listing)

        return self._finish(
            listing,
            TimelineEventType.BUYER_CONFIRMED,
            title="Buyer confirmed the purchase",
            actor_id=caller_id,
            targets=(seller_target(listing), buyer_target(caller_id)),
            notices=[(
                NotificationAudience.SELLER,
                "Buyer confirmed",
                f"The buyer confirmed the purchase of \"{listing.title}\". Please confirm your documents.",
                NotificationCategory.GENERAL,
            )],
            triggered_by=ParticipantRole.BUYER,
        )

    def confirm_documents_as_seller(
        self,
        listing_id: int,
        caller_id: str,
        acknowledged_documents: Sequence[str],
    ) -> TransitionResult:
        """
        Seller confirms the legal document set is in place.

        Args:
            listing_id: Listing being sold.
            caller_id: Must be the owner.
            acknowledged_documents: Document ids the seller ticked off; every
                required document must be present.

        Raises:
            PermissionDeniedError: If the caller is not the owner.
            ConflictError: If there is no purchase.
            InvalidTransitionError: If the buyer has not confirmed yet.
            ValidationError: If required documents are missing.
        """
        listing = self.store.get_for_update(listing_id)
        self._require_owner(listing, caller_id)
        self._require_purchase(listing)
        if not listing.buyer_confirmed:
            raise InvalidTransitionError(
                "The buyer has not confirmed the purchase yet",
                listing_id=listing_id,
                state=purchase_state(listing).value,
            )
        if listing.seller_documents_confirmed:
            return self._unchanged(listing)

        listing.acknowledged_documents = check_documents(acknowledged_documents)
        listing.seller_documents_confirmed = True
        self.store.save(listing)

        return self._finish(
            listing,
            TimelineEventType.DOCUMENTS_CONFIRMED,
            title="Seller documents confirmed",
            actor_id=caller_id,
            targets=self._both_targets(listing),
            metadata={"documents": listing.acknowledged_documents},
            notices=[(
                NotificationAudience.BUYER,
                "Documents ready",
                f"The seller confirmed all documents for \"{listing.title}\".",
                NotificationCategory.GENERAL,
            )],
            triggered_by=ParticipantRole.SELLER,
        )

    def schedule_handover(
        self,
        listing_id: int,
        caller_id: str,
        handover_date: date,
        note: Optional[str] = None,
    ) -> TransitionResult:
        """
        Seller sets (or moves) the handover date.

        Raises:
            PermissionDeniedError: If the caller is not the owner.
            ConflictError: If there is no purchase.
            InvalidTransitionError: If documents are not confirmed or the
                handover already happened.
            ValidationError: If no date is given.
        """
        listing = self.store.get_for_update(listing_id)
        self._require_owner(listing, caller_id)
        self._require_purchase(listing)
        if not isinstance(handover_date, date):
            raise ValidationError("A handover date is required")
        if not listing.seller_documents_confirmed:
            raise InvalidTransitionError(
                "Confirm the seller documents before scheduling the handover",
                listing_id=listing_id,
                state=purchase_state(listing).value,
            )
        if listing.handover_completed_at is not None:
            raise InvalidTransitionError("The handover has already taken place", listing_id=listing_id)
        if listing.handover_date == handover_date and listing.handover_note == note:
            return self._unchanged(listing)

        rescheduled = listing.handover_date is not None
        listing.handover_date = handover_date
        listing.handover_note = note
        listing.last_inspection_update_at = utcnow()
        listing.last_inspection_update_by = ParticipantRole.SELLER.value
        self.store.save(listing)

        headline = "Handover rescheduled" if rescheduled else "Handover scheduled"
        message = f"Handover for \"{listing.title}\" is set for {handover_date.isoformat()}."
        if note:
            message += f" Note: {note}"
        return self._finish(
            listing,
            TimelineEventType.HANDOVER_SCHEDULED,
            title=headline,
            actor_id=caller_id,
            targets=self._both_targets(listing),
            metadata={"handover_date": handover_date.isoformat(), "rescheduled": rescheduled},
            notices=[(NotificationAudience.BUYER, headline, message, NotificationCategory.SCHEDULE)],
            triggered_by=ParticipantRole.SELLER,
        )

    def complete_handover(self, listing_id: int, caller_id: str) -> TransitionResult:
        """Seller records that the handover took place. The purchase is then final."""
        listing = self.store.get_for_update(listing_id)
        self._require_owner(listing, caller_id)
        self._require_purchase(listing)
        if listing.handover_completed_at is not None:
            return self._unchanged(listing)
        if listing.handover_date is None:
            raise InvalidTransitionError(
                "Schedule the handover before completing it",
                listing_id=listing_id,
                state=purchase_state(listing).value,
            )

        listing.handover_completed_at = utcnow()
        listing.last_inspection_update_at = listing.handover_completed_at
        listing.last_inspection_update_by = ParticipantRole.SELLER.value
        self.store.save(listing)

        return self._finish(
            listing,
            TimelineEventType.HANDOVER_COMPLETED,
            title="Handover completed",
            actor_id=caller_id,
            targets=self._both_targets(listing),
            notices=[(
                NotificationAudience.ALL,
                "Handover completed",
                f"The handover of \"{listing.title}\" is complete.",
                NotificationCategory.SCHEDULE,
            )],
            triggered_by=ParticipantRole.SELLER,
        )

    def cancel(self, listing_id: int, initiator: ParticipantRole, caller_id: str) -> TransitionResult:
        """
        Abort the purchase and return the listing to available.

        Either side may cancel at any point before completion. The buyer's
        projection is removed; checklist items, defects, and notifications
        stay behind under the old purchase id. Cancelling an available
        listing is a no-op.

        Raises:
            PermissionDeniedError: If the caller is not the participant named
                by ``initiator``.
            ConflictError: If the handover has already completed.
            ValidationError: If ``initiator`` is not seller or buyer.
        """
        try:
            initiator = ParticipantRole(initiator)
        except ValueError:
            raise ValidationError(f"Unknown cancelling party '{initiator}' (expected seller or buyer)")
        listing = self.store.get_for_update(listing_id)
        if initiator == ParticipantRole.SELLER:
            self._require_owner(listing, caller_id)
        if not listing.is_under_purchase:
            return self._unchanged(listing)
        if initiator == ParticipantRole.BUYER and caller_id != listing.confirmed_buyer_id:
            raise PermissionDeniedError(
                "Only the selected buyer can cancel as buyer",
                listing_id=listing_id,
            )
        if listing.handover_completed_at is not None:
            raise ConflictError(
                "The handover is complete; this purchase can no longer be cancelled",
                listing_id=listing_id,
                state=PurchaseState.COMPLETED.value,
            )

        previous_buyer = listing.confirmed_buyer_id
        previous_state = purchase_state(listing)
        listing.is_under_purchase = False
        listing.confirmed_buyer_id = None
        listing.purchase_id = None
        listing.buyer_confirmed = False
        listing.buyer_confirmed_at = None
        listing.seller_documents_confirmed = False
        listing.acknowledged_documents = None
        listing.handover_date = None
        listing.handover_note = None
        listing.handover_completed_at = None
        listing.last_inspection_update_at = None
        listing.last_inspection_update_by = None
        self.store.save(listing)

        if initiator == ParticipantRole.SELLER:
            notices = [
                (
                    NotificationAudience.BUYER,
                    "Purchase cancelled",
                    f"The seller cancelled the purchase of \"{listing.title}\".",
                    NotificationCategory.GENERAL,
                ),
                (
                    NotificationAudience.SELLER,
                    "Purchase cancelled",
                    f"You cancelled the sale of \"{listing.title}\". The listing is available again.",
                    NotificationCategory.GENERAL,
                ),
            ]
        else:
            notices = [
                (
                    NotificationAudience.SELLER,
                    "Purchase cancelled",
                    f"The buyer cancelled the purchase of \"{listing.title}\". The listing is available again.",
                    NotificationCategory.GENERAL,
                ),
                (
                    NotificationAudience.BUYER,
                    "Purchase cancelled",
                    f"You cancelled your purchase of \"{listing.title}\".",
                    NotificationCategory.GENERAL,
                ),
            ]

        return self._finish(
            listing,
            TimelineEventType.PURCHASE_CANCELLED,
            title=f"Purchase cancelled by {initiator.value}",
            actor_id=caller_id,
            targets=(seller_target(listing), buyer_target(previous_buyer, ProjectionAction.DELETE)),
            metadata={
                "initiator": initiator.value,
                "buyer_id": previous_buyer,
                "previous_state": previous_state.value,
            },
            notices=notices,
            triggered_by=initiator,
            buyer_id=previous_buyer,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _require_owner(listing: Listing, caller_id: str) -> None:
        if caller_id != listing.owner_id:
            raise PermissionDeniedError(
                "Only the seller can do this",
                listing_id=listing.id,
            )

    @staticmethod
    def _require_purchase(listing: Listing) -> None:
        if not listing.is_under_purchase:
            raise ConflictError("There is no purchase in progress", listing_id=listing.id)

    @staticmethod
    def _both_targets(listing: Listing) -> tuple:
        return (seller_target(listing), buyer_target(listing.confirmed_buyer_id))

    @staticmethod
    def _unchanged(listing: Listing) -> TransitionResult:
        return TransitionResult(ListingSummary.from_model(listing), changed=False)

    def _finish(
        self,
        listing: Listing,
        event_type: str,
        title: str,
        actor_id: str,
        targets: Sequence[ProjectionTarget],
        notices: Sequence[tuple],
        triggered_by: ParticipantRole,
        metadata: Optional[dict] = None,
        buyer_id: Optional[str] = None,
    ) -> TransitionResult:
        """Fan out, notify, and record a transition whose canonical write is flushed."""
        operation_id = generate_unique_key()
        log = get_context_logger(__name__, listing_id=listing.id, operation_id=operation_id)
        state = purchase_state(listing)

        outcome: FanOutOutcome = self.writer.apply_with_retry(
            ProjectionDelta(listing.id, operation_id, tuple(targets)),
            self.retry_policy,
        )

        self.timeline.add_event(
            listing.id,
            event_type,
            title=title,
            actor_id=actor_id,
            operation_id=operation_id,
            metadata={"state": state.value, **(metadata or {})},
        )
        if outcome.degraded:
            self.timeline.add_event(
                listing.id,
                TimelineEventType.PROJECTIONS_DEGRADED,
                title="Participant views are behind",
                description="Some participant views could not be updated and are queued for repair.",
                operation_id=operation_id,
                metadata=outcome.to_dict(),
            )

        for audience, headline, message, category in notices:
            self.notifications.notify(
                listing,
                title=headline,
                message=message,
                category=category,
                audience=audience,
                triggered_by=triggered_by,
                triggered_by_id=actor_id,
                buyer_id=buyer_id,
            )

        self.feed.publish_after_commit(
            self.session,
            ChangeEvent(
                listing.id,
                event_type,
                operation_id,
                state.value,
                payload={"degraded": outcome.degraded},
            ),
        )

        if outcome.degraded:
            log.warning(f"{event_type} committed with {len(outcome.pending)} projection writes pending")
        else:
            log.info(f"{event_type}: listing {listing.id} is now {state.value}")
        return TransitionResult(ListingSummary.from_model(listing), True, operation_id, outcome)


def get_purchase_state_machine(session: Session) -> PurchaseStateMachine:
    """Get a PurchaseStateMachine instance."""
    return PurchaseStateMachine(session)


__all__ = [
    "PurchaseStateMachine",
    "REQUIRED_DOCUMENTS",
    "OPTIONAL_DOCUMENTS",
    "check_documents",
    "get_purchase_state_machine",
]
