"""Participant projection writer and read model.

Every canonical change fans out to at most two denormalized copies: the
seller's own-listings row and the buyer's purchased-properties row. Each
target is written inside its own SAVEPOINT so one failing target never
undoes another, and every write is derived from the current canonical
listing so repeating it is always safe.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import ExternalServiceError, NotFoundError, PartialWriteError
from core.logging_config import get_context_logger, get_logger
from core.models import (
    BuyerPropertyProjection,
    Listing,
    ProjectionAction,
    ProjectionKind,
    ProjectionOutbox,
    SellerListingProjection,
)
from core.utils import generate_idempotency_key, isoformat
from services.directory import ParticipantDirectory, ParticipantInfo
from services.retry import ProjectionRetryPolicy

LOGGER = get_logger(__name__)


# =============================================================================
# Delta types
# =============================================================================


@dataclass(frozen=True)
class ProjectionTarget:
    """One projection location and what to do with it."""

    kind: ProjectionKind
    participant_id: str
    action: ProjectionAction = ProjectionAction.UPSERT

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.participant_id}:{self.action.value}"

    def to_dict(self) -> Dict[str, str]:
        return {
            "kind": self.kind.value,
            "participant_id": self.participant_id,
            "action": self.action.value,
        }


@dataclass(frozen=True)
class ProjectionDelta:
    """The projection writes owed by one canonical change."""

    listing_id: int
    operation_id: str
    targets: Tuple[ProjectionTarget, ...] = ()

    def narrowed(self, targets: Iterable[ProjectionTarget]) -> "ProjectionDelta":
        """Same operation, restricted to ``targets``."""
        return ProjectionDelta(self.listing_id, self.operation_id, tuple(targets))


@dataclass
class ProjectionWriteResult:
    """All targets of a delta landed."""

    listing_id: int
    operation_id: str
    written: List[ProjectionTarget] = field(default_factory=list)


@dataclass
class FanOutOutcome:
    """
    Result of writing a delta under the retry policy.

    ``pending`` holds the targets that were still failing when the retry
    budget ran out; they have been recorded in the outbox.
    """

    operation_id: str
    written: List[ProjectionTarget] = field(default_factory=list)
    pending: List[ProjectionTarget] = field(default_factory=list)
    attempts: int = 0

    @property
    def degraded(self) -> bool:
        return bool(self.pending)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "degraded": self.degraded,
            "written": [t.to_dict() for t in self.written],
            "pending": [t.to_dict() for t in self.pending],
            "attempts": self.attempts,
        }


def seller_target(listing: Listing) -> ProjectionTarget:
    return ProjectionTarget(ProjectionKind.SELLER, listing.owner_id)


def buyer_target(buyer_id: str, action: ProjectionAction = ProjectionAction.UPSERT) -> ProjectionTarget:
    return ProjectionTarget(ProjectionKind.BUYER, buyer_id, action)


# =============================================================================
# Writer
# =============================================================================


class ProjectionWriter:
    """Applies projection deltas against the current canonical listing."""

    def __init__(self, session: Session, directory: Optional[ParticipantDirectory] = None):
        self.session = session
        self.directory = directory

    def apply(self, delta: ProjectionDelta) -> ProjectionWriteResult:
        """
        Write every target of ``delta``.

        Returns:
            ProjectionWriteResult listing the written targets.

        Raises:
            NotFoundError: If the listing does not exist.
            PartialWriteError: If any target failed; ``succeeded`` and
                ``failed`` split the targets.
        """
        listing = self.session.get(Listing, delta.listing_id)
        if listing is None:
            raise NotFoundError(f"Listing {delta.listing_id} not found", listing_id=delta.listing_id)

        log = get_context_logger(__name__, listing_id=delta.listing_id, operation_id=delta.operation_id)
        written: List[ProjectionTarget] = []
        failed: List[ProjectionTarget] = []
        errors: Dict[str, str] = {}

        for target in delta.targets:
            try:
                with self.session.begin_nested():
                    self._write(listing, target, delta.operation_id)
                written.append(target)
            except SQLAlchemyError as e:
                log.warning(f"Projection write {target.key} failed: {e}")
                failed.append(target)
                errors[target.key] = str(e)

        if failed:
            raise PartialWriteError(
                f"{len(failed)} of {len(delta.targets)} projection writes failed",
                succeeded=written,
                failed=failed,
                listing_id=delta.listing_id,
                operation_id=delta.operation_id,
                errors=errors,
            )

        log.debug(f"Applied {len(written)} projection writes")
        return ProjectionWriteResult(delta.listing_id, delta.operation_id, written)

    def apply_with_retry(
        self,
        delta: ProjectionDelta,
        policy: Optional[ProjectionRetryPolicy] = None,
    ) -> FanOutOutcome:
        """
        Apply ``delta``, retrying only the failed targets.

        Targets still failing after the last attempt go to the outbox and
        the outcome is marked degraded. The canonical change is kept.
        """
        policy = policy or ProjectionRetryPolicy.from_settings()
        outcome = FanOutOutcome(operation_id=delta.operation_id)
        pending = delta

        try:
            for attempt in policy.retrying():
                with attempt:
                    outcome.attempts += 1
                    try:
                        result = self.apply(pending)
                    except PartialWriteError as e:
                        outcome.written.extend(e.succeeded)
                        pending = pending.narrowed(e.failed)
                        raise
                    outcome.written.extend(result.written)
                    pending = pending.narrowed(())
        except PartialWriteError as e:
            LOGGER.error(
                f"Projection writes for listing {delta.listing_id} still failing after "
                f"{outcome.attempts} attempts, recording {len(pending.targets)} in outbox",
                extra={"extra_data": {"errors": e.details.get("errors")}},
            )
            outcome.pending = list(pending.targets)
            self.record_outbox(pending, error=str(e.details.get("errors") or e))

        return outcome

    def record_outbox(self, delta: ProjectionDelta, error: Optional[str] = None) -> List[ProjectionOutbox]:
        """Persist unfinished targets for the reconciliation pass."""
        rows = []
        for target in delta.targets:
            key = generate_idempotency_key(
                delta.listing_id, delta.operation_id, target.kind.value, target.participant_id
            )
            row = self.session.query(ProjectionOutbox).filter(
                ProjectionOutbox.idempotency_key == key
            ).first()
            if row is None:
                row = ProjectionOutbox(
                    listing_id=delta.listing_id,
                    operation_id=delta.operation_id,
                    target_kind=target.kind.value,
                    participant_id=target.participant_id,
                    action=target.action.value,
                    idempotency_key=key,
                    attempts=0,
                )
                self.session.add(row)
            row.last_error = error
            rows.append(row)
        self.session.flush()
        return rows

    # -------------------------------------------------------------------------
    # Per-target writes
    # -------------------------------------------------------------------------

    def _write(self, listing: Listing, target: ProjectionTarget, operation_id: str) -> None:
        if target.kind == ProjectionKind.SELLER:
            self._upsert_seller(listing, target.participant_id, operation_id)
        elif target.action == ProjectionAction.DELETE:
            self._delete_buyer(listing, target.participant_id)
        else:
            self._upsert_buyer(listing, target.participant_id, operation_id)
        self.session.flush()

    def _upsert_seller(self, listing: Listing, seller_id: str, operation_id: str) -> None:
        row = self.session.query(SellerListingProjection).filter(
            SellerListingProjection.seller_id == seller_id,
            SellerListingProjection.listing_id == listing.id,
        ).first()
        if row is None:
            row = SellerListingProjection(seller_id=seller_id, listing_id=listing.id)
            self.session.add(row)

        row.title = listing.title
        row.price = listing.price
        row.is_under_purchase = listing.is_under_purchase
        row.confirmed_buyer_id = listing.confirmed_buyer_id
        row.buyer_confirmed = listing.buyer_confirmed
        row.seller_documents_confirmed = listing.seller_documents_confirmed
        row.handover_date = listing.handover_date
        row.last_operation_id = operation_id

    def _upsert_buyer(self, listing: Listing, buyer_id: str, operation_id: str) -> None:
        # A replayed upsert for a buyer who is no longer confirmed becomes a delete
        if not (listing.buyer_confirmed and listing.confirmed_buyer_id == buyer_id):
            LOGGER.info(
                f"Buyer {buyer_id} is not the confirmed buyer of listing {listing.id}, "
                f"removing their projection instead"
            )
            self._delete_buyer(listing, buyer_id)
            return

        row = self._find_buyer_row(listing.id, buyer_id)
        if row is None:
            row = self._snapshot(listing, buyer_id)
            self.session.add(row)

        row.is_under_purchase = listing.is_under_purchase
        row.buyer_confirmed = listing.buyer_confirmed
        row.seller_documents_confirmed = listing.seller_documents_confirmed
        row.handover_date = listing.handover_date
        row.handover_note = listing.handover_note
        row.handover_completed_at = listing.handover_completed_at
        row.last_inspection_update_at = listing.last_inspection_update_at
        row.last_inspection_update_by = listing.last_inspection_update_by
        row.last_operation_id = operation_id

    def _delete_buyer(self, listing: Listing, buyer_id: str) -> None:
        row = self._find_buyer_row(listing.id, buyer_id)
        if row is not None:
            self.session.delete(row)

    def _find_buyer_row(self, listing_id: int, buyer_id: str) -> Optional[BuyerPropertyProjection]:
        return self.session.query(BuyerPropertyProjection).filter(
            BuyerPropertyProjection.buyer_id == buyer_id,
            BuyerPropertyProjection.listing_id == listing_id,
        ).first()

    def _snapshot(self, listing: Listing, buyer_id: str) -> BuyerPropertyProjection:
        """Display fields as they are at confirmation time."""
        seller = self._lookup_seller(listing.owner_id)
        return BuyerPropertyProjection(
            buyer_id=buyer_id,
            listing_id=listing.id,
            seller_id=listing.owner_id,
            title=listing.title,
            price=listing.price,
            transaction_type=listing.transaction_type or "sale",
            address=listing.address,
            city=listing.city,
            province=listing.province,
            thumbnail_url=listing.thumbnail_url,
            seller_name=seller.display_name if seller else None,
            seller_phone=seller.phone if seller else None,
            seller_email=seller.email if seller else None,
            confirmed_at=listing.buyer_confirmed_at,
        )

    def _lookup_seller(self, seller_id: str) -> Optional[ParticipantInfo]:
        if self.directory is None:
            return None
        try:
            return self.directory.lookup_participant(seller_id)
        except ExternalServiceError as e:
            LOGGER.warning(f"Seller contact lookup failed, snapshot taken without it: {e}")
            return None


# =============================================================================
# Read model
# =============================================================================


def seller_projection_to_dict(row: SellerListingProjection) -> Dict[str, Any]:
    return {
        "seller_id": row.seller_id,
        "listing_id": row.listing_id,
        "title": row.title,
        "price": float(row.price) if row.price is not None else None,
        "is_under_purchase": row.is_under_purchase,
        "confirmed_buyer_id": row.confirmed_buyer_id,
        "buyer_confirmed": row.buyer_confirmed,
        "seller_documents_confirmed": row.seller_documents_confirmed,
        "handover_date": isoformat(row.handover_date),
        "last_operation_id": row.last_operation_id,
        "updated_at": isoformat(row.updated_at),
    }


def buyer_projection_to_dict(row: BuyerPropertyProjection) -> Dict[str, Any]:
    return {
        "buyer_id": row.buyer_id,
        "listing_id": row.listing_id,
        "seller_id": row.seller_id,
        "title": row.title,
        "price": float(row.price) if row.price is not None else None,
        "transaction_type": row.transaction_type,
        "address": row.address,
        "city": row.city,
        "province": row.province,
        "thumbnail_url": row.thumbnail_url,
        "seller": {
            "name": row.seller_name,
            "phone": row.seller_phone,
            "email": row.seller_email,
        },
        "confirmed_at": isoformat(row.confirmed_at),
        "is_under_purchase": row.is_under_purchase,
        "buyer_confirmed": row.buyer_confirmed,
        "seller_documents_confirmed": row.seller_documents_confirmed,
        "handover_date": isoformat(row.handover_date),
        "handover_note": row.handover_note,
        "handover_completed_at": isoformat(row.handover_completed_at),
        "last_inspection_update_at": isoformat(row.last_inspection_update_at),
        "last_inspection_update_by": row.last_inspection_update_by,
        "last_operation_id": row.last_operation_id,
    }


class ProjectionReader:
    """Point reads over the participant projections."""

    def __init__(self, session: Session):
        self.session = session

    def get_seller_projection(self, seller_id: str, listing_id: int) -> SellerListingProjection:
        row = self.session.query(SellerListingProjection).filter(
            SellerListingProjection.seller_id == seller_id,
            SellerListingProjection.listing_id == listing_id,
        ).first()
        if row is None:
            raise NotFoundError(
                f"No listing {listing_id} in the listings of seller {seller_id}",
                listing_id=listing_id,
            )
        return row

    def get_buyer_projection(self, buyer_id: str, listing_id: int) -> BuyerPropertyProjection:
        row = self.session.query(BuyerPropertyProjection).filter(
            BuyerPropertyProjection.buyer_id == buyer_id,
            BuyerPropertyProjection.listing_id == listing_id,
        ).first()
        if row is None:
            raise NotFoundError(
                f"Listing {listing_id} is not among the purchases of buyer {buyer_id}",
                listing_id=listing_id,
            )
        return row

    def list_buyer_projections(self, buyer_id: str) -> List[BuyerPropertyProjection]:
        return self.session.query(BuyerPropertyProjection).filter(
            BuyerPropertyProjection.buyer_id == buyer_id
        ).order_by(BuyerPropertyProjection.confirmed_at.desc()).all()

    def list_seller_projections(self, seller_id: str) -> List[SellerListingProjection]:
        return self.session.query(SellerListingProjection).filter(
            SellerListingProjection.seller_id == seller_id
        ).order_by(SellerListingProjection.listing_id).all()


__all__ = [
    "ProjectionTarget",
    "ProjectionDelta",
    "ProjectionWriteResult",
    "FanOutOutcome",
    "ProjectionWriter",
    "ProjectionReader",
    "seller_target",
    "buyer_target",
    "seller_projection_to_dict",
    "buyer_projection_to_dict",
]
