"""Listing store, read model, and listing attribute maintenance."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from core.exceptions import (
    ConcurrentModificationError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from core.logging_config import get_logger
from core.models import Listing, NotificationAudience, ParticipantRole, PurchaseState
from core.utils import generate_unique_key, isoformat
from services.change_feed import ChangeEvent, ChangeFeed, get_change_feed
from services.projection import FanOutOutcome, ProjectionDelta, ProjectionWriter, seller_target
from services.retry import ProjectionRetryPolicy
from services.timeline import TimelineEventType, TimelineService

LOGGER = get_logger(__name__)

# Listing attributes a seller may edit; everything else is workflow state
EDITABLE_ATTRIBUTES = (
    "title",
    "description",
    "price",
    "transaction_type",
    "address",
    "city",
    "province",
    "photos",
)
TRANSACTION_TYPES = {"sale", "rent"}


def purchase_state(listing: Listing) -> PurchaseState:
    """Derive the workflow state from the canonical flags."""
    if not listing.is_under_purchase:
        return PurchaseState.AVAILABLE
    if listing.handover_completed_at is not None:
        return PurchaseState.COMPLETED
    if listing.handover_date is not None:
        return PurchaseState.HANDOVER_SCHEDULED
    if listing.seller_documents_confirmed:
        return PurchaseState.SELLER_DOCUMENTS_CONFIRMED
    if listing.buyer_confirmed:
        return PurchaseState.BUYER_CONFIRMED
    return PurchaseState.PROPOSED_TO_BUYER


def resolve_role(listing: Listing, caller_id: str) -> ParticipantRole:
    """
    Which side of the purchase ``caller_id`` is on.

    Raises:
        PermissionDeniedError: If the caller is neither the owner nor the
            listing's confirmed buyer.
    """
    if caller_id == listing.owner_id:
        return ParticipantRole.SELLER
    if listing.is_under_purchase and caller_id == listing.confirmed_buyer_id:
        return ParticipantRole.BUYER
    raise PermissionDeniedError(
        "Only the seller or the selected buyer can work on this listing",
        listing_id=listing.id,
    )


def counterpart(role: ParticipantRole) -> NotificationAudience:
    """Audience for the other side of the purchase."""
    if role == ParticipantRole.BUYER:
        return NotificationAudience.SELLER
    return NotificationAudience.BUYER


# =============================================================================
# Read model
# =============================================================================


@dataclass
class ListingSummary:
    """API view of the canonical listing."""

    id: int
    owner_id: str
    title: str
    state: PurchaseState
    is_under_purchase: bool
    confirmed_buyer_id: Optional[str]
    buyer_confirmed: bool
    seller_documents_confirmed: bool
    handover_date: Optional[date]
    handover_note: Optional[str]
    version: int
    description: Optional[str] = None
    price: Optional[float] = None
    transaction_type: str = "sale"
    address: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    photos: List[str] = field(default_factory=list)
    purchase_id: Optional[str] = None
    buyer_confirmed_at: Optional[datetime] = None
    acknowledged_documents: List[str] = field(default_factory=list)
    handover_completed_at: Optional[datetime] = None
    last_inspection_update_at: Optional[datetime] = None
    last_inspection_update_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, listing: Listing) -> "ListingSummary":
        return cls(
            id=listing.id,
            owner_id=listing.owner_id,
            title=listing.title,
            state=purchase_state(listing),
            is_under_purchase=listing.is_under_purchase,
            confirmed_buyer_id=listing.confirmed_buyer_id,
            buyer_confirmed=listing.buyer_confirmed,
            seller_documents_confirmed=listing.seller_documents_confirmed,
            handover_date=listing.handover_date,
            handover_note=listing.handover_note,
            version=listing.version,
            description=listing.description,
            price=float(listing.price) if listing.price is not None else None,
            transaction_type=listing.transaction_type,
            address=listing.address,
            city=listing.city,
            province=listing.province,
            photos=list(listing.photos or []),
            purchase_id=listing.purchase_id,
            buyer_confirmed_at=listing.buyer_confirmed_at,
            acknowledged_documents=list(listing.acknowledged_documents or []),
            handover_completed_at=listing.handover_completed_at,
            last_inspection_update_at=listing.last_inspection_update_at,
            last_inspection_update_by=listing.last_inspection_update_by,
            created_at=listing.created_at,
            updated_at=listing.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "description": self.description,
            "price": self.price,
            "transaction_type": self.transaction_type,
            "address": self.address,
            "city": self.city,
            "province": self.province,
            "photos": self.photos,
            "state": self.state.value,
            "is_under_purchase": self.is_under_purchase,
            "confirmed_buyer_id": self.confirmed_buyer_id,
            "buyer_confirmed": self.buyer_confirmed,
            "buyer_confirmed_at": isoformat(self.buyer_confirmed_at),
            "seller_documents_confirmed": self.seller_documents_confirmed,
            "acknowledged_documents": self.acknowledged_documents,
            "handover_date": isoformat(self.handover_date),
            "handover_note": self.handover_note,
            "handover_completed_at": isoformat(self.handover_completed_at),
            "last_inspection_update_at": isoformat(self.last_inspection_update_at),
            "last_inspection_update_by": self.last_inspection_update_by,
            "version": self.version,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


@dataclass
class TransitionResult:
    """
    Outcome of a write-model operation.

    ``changed`` is False for idempotent repeats. ``projections`` is None
    when nothing had to be fanned out.
    """

    listing: ListingSummary
    changed: bool = True
    operation_id: Optional[str] = None
    projections: Optional[FanOutOutcome] = None

    @property
    def degraded(self) -> bool:
        return bool(self.projections and self.projections.degraded)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "listing": self.listing.to_dict(),
            "changed": self.changed,
            "operation_id": self.operation_id,
            "degraded": self.degraded,
            "projections": self.projections.to_dict() if self.projections else None,
        }


# =============================================================================
# Store
# =============================================================================


class ListingStore:
    """Data access for the canonical listing record."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, listing_id: int) -> Listing:
        listing = self.session.get(Listing, listing_id)
        if listing is None:
            raise NotFoundError(f"Listing {listing_id} not found", listing_id=listing_id)
        return listing

    def get_for_update(self, listing_id: int) -> Listing:
        """
        Load a listing for a read-then-write transition.

        Takes a row lock where the backend supports it; the version column
        catches anything that slips past.
        """
        listing = self.session.query(Listing).filter(
            Listing.id == listing_id
        ).with_for_update().populate_existing().first()
        if listing is None:
            raise NotFoundError(f"Listing {listing_id} not found", listing_id=listing_id)
        return listing

    def add(self, listing: Listing) -> Listing:
        self.session.add(listing)
        self.save(listing)
        return listing

    def save(self, listing: Listing) -> None:
        """
        Flush pending changes to the listing.

        Raises:
            ConcurrentModificationError: If another writer changed the
                listing since it was loaded.
        """
        # Attributes cannot be loaded once the flush has failed
        listing_id = listing.id
        try:
            self.session.flush()
        except StaleDataError as e:
            LOGGER.warning(f"Concurrent modification of listing {listing_id}: {e}")
            raise ConcurrentModificationError(
                "This listing was just changed by someone else. Reload it and try again.",
                listing_id=listing_id,
            ) from e

    def list(
        self,
        owner_id: Optional[str] = None,
        available_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Listing]:
        query = self.session.query(Listing)
        if owner_id:
            query = query.filter(Listing.owner_id == owner_id)
        if available_only:
            query = query.filter(Listing.is_under_purchase.is_(False))
        return query.order_by(Listing.id.desc()).offset(offset).limit(limit).all()


# =============================================================================
# Listing service
# =============================================================================


def _validate_attributes(attributes: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(attributes) - set(EDITABLE_ATTRIBUTES)
    if unknown:
        raise ValidationError(f"Unknown listing fields: {', '.join(sorted(unknown))}")
    if "title" in attributes and not (attributes["title"] or "").strip():
        raise ValidationError("A listing needs a title")
    if attributes.get("price") is not None and attributes["price"] < 0:
        raise ValidationError("Price cannot be negative")
    if "transaction_type" in attributes and attributes["transaction_type"] not in TRANSACTION_TYPES:
        raise ValidationError(
            f"Transaction type must be one of {', '.join(sorted(TRANSACTION_TYPES))}"
        )
    return attributes


class ListingService:
    """Creates listings and edits their display attributes."""

    def __init__(
        self,
        session: Session,
        writer: Optional[ProjectionWriter] = None,
        timeline: Optional[TimelineService] = None,
        feed: Optional[ChangeFeed] = None,
        retry_policy: Optional[ProjectionRetryPolicy] = None,
    ):
        self.session = session
        self.store = ListingStore(session)
        self.writer = writer or ProjectionWriter(session)
        self.timeline = timeline or TimelineService(session)
        self.feed = feed or get_change_feed()
        self.retry_policy = retry_policy

    def get_listing(self, listing_id: int) -> ListingSummary:
        return ListingSummary.from_model(self.store.get(listing_id))

    def list_listings(
        self,
        owner_id: Optional[str] = None,
        available_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ListingSummary]:
        return [
            ListingSummary.from_model(listing)
            for listing in self.store.list(owner_id, available_only, limit, offset)
        ]

    def create_listing(self, owner_id: str, **attributes: Any) -> TransitionResult:
        """
        Create an available listing and its seller projection.

        Args:
            owner_id: Seller's participant id.
            **attributes: Display fields (see EDITABLE_ATTRIBUTES); title is required.
        """
        if not owner_id:
            raise ValidationError("A listing needs an owner")
        attributes = _validate_attributes({"title": attributes.pop("title", None), **attributes})

        listing = Listing(owner_id=owner_id, **attributes)
        listing.photos = list(attributes.get("photos") or [])
        self.store.add(listing)

        operation_id = generate_unique_key()
        outcome = self.writer.apply_with_retry(
            ProjectionDelta(listing.id, operation_id, (seller_target(listing),)),
            self.retry_policy,
        )
        self.timeline.add_event(
            listing.id,
            TimelineEventType.LISTING_CREATED,
            title="Listing created",
            actor_id=owner_id,
            operation_id=operation_id,
        )
        self.feed.publish_after_commit(
            self.session,
            ChangeEvent(listing.id, TimelineEventType.LISTING_CREATED, operation_id,
                        PurchaseState.AVAILABLE.value),
        )
        LOGGER.info(f"Created listing {listing.id} for owner {owner_id}")
        return TransitionResult(ListingSummary.from_model(listing), True, operation_id, outcome)

    def update_attributes(self, listing_id: int, caller_id: str, **changes: Any) -> TransitionResult:
        """Edit display fields. Buyer snapshots taken earlier are left as they were."""
        listing = self.store.get_for_update(listing_id)
        if caller_id != listing.owner_id:
            raise PermissionDeniedError("Only the seller can edit this listing", listing_id=listing_id)

        changes = _validate_attributes({k: v for k, v in changes.items() if v is not None})
        if not changes:
            return TransitionResult(ListingSummary.from_model(listing), changed=False)

        for name, value in changes.items():
            setattr(listing, name, value)
        self.store.save(listing)

        operation_id = generate_unique_key()
        outcome = self.writer.apply_with_retry(
            ProjectionDelta(listing.id, operation_id, (seller_target(listing),)),
            self.retry_policy,
        )
        self.timeline.add_event(
            listing.id,
            TimelineEventType.LISTING_UPDATED,
            title="Listing updated",
            actor_id=caller_id,
            operation_id=operation_id,
            metadata={"fields": sorted(changes)},
        )
        self.feed.publish_after_commit(
            self.session,
            ChangeEvent(listing.id, TimelineEventType.LISTING_UPDATED, operation_id,
                        purchase_state(listing).value),
        )
        return TransitionResult(ListingSummary.from_model(listing), True, operation_id, outcome)


def get_listing_service(session: Session) -> ListingService:
    """Get a ListingService instance."""
    return ListingService(session)


__all__ = [
    "ListingStore",
    "ListingService",
    "ListingSummary",
    "TransitionResult",
    "purchase_state",
    "resolve_role",
    "counterpart",
    "get_listing_service",
]
