"""Projection reconciliation.

Compares the participant projections with the canonical listing, rewrites
whatever has drifted, and drains the projection outbox left behind by
degraded transitions.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from core.config import get_settings
from core.exceptions import NotFoundError, PartialWriteError
from core.logging_config import get_logger
from core.models import (
    BuyerPropertyProjection,
    Listing,
    OutboxStatus,
    ProjectionAction,
    ProjectionKind,
    ProjectionOutbox,
    SellerListingProjection,
)
from core.utils import ensure_aware, generate_unique_key, utcnow
from services.projection import (
    ProjectionDelta,
    ProjectionTarget,
    ProjectionWriter,
    buyer_target,
    seller_target,
)
from services.timeline import TimelineEventType, TimelineService

LOGGER = get_logger(__name__)
SETTINGS = get_settings()

SELLER_FIELDS = (
    "title",
    "price",
    "is_under_purchase",
    "confirmed_buyer_id",
    "buyer_confirmed",
    "seller_documents_confirmed",
    "handover_date",
)
BUYER_FIELDS = (
    "is_under_purchase",
    "buyer_confirmed",
    "seller_documents_confirmed",
    "handover_date",
    "handover_note",
    "handover_completed_at",
    "last_inspection_update_at",
    "last_inspection_update_by",
)


def _normalize(value: Any) -> Any:
    # SQLite hands datetimes back naive; prices may be float or Decimal
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, (Decimal, float)):
        return round(float(value), 2)
    return value


def _diff(row: Any, listing: Listing, fields: tuple) -> List[str]:
    return [
        name for name in fields
        if _normalize(getattr(row, name)) != _normalize(getattr(listing, name))
    ]


@dataclass
class Drift:
    """One projection that disagrees with the canonical listing."""

    target: ProjectionTarget
    reason: str
    fields: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"target": self.target.to_dict(), "reason": self.reason, "fields": self.fields}


@dataclass
class ReconciliationResult:
    listing_id: int
    drift: List[Drift] = field(default_factory=list)
    repaired: bool = True
    outbox_resolved: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "listing_id": self.listing_id,
            "drift": [d.to_dict() for d in self.drift],
            "repaired": self.repaired,
            "outbox_resolved": self.outbox_resolved,
            "error": self.error,
        }


@dataclass
class OutboxDrainResult:
    processed: int = 0
    resolved: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"processed": self.processed, "resolved": self.resolved, "failed": self.failed}


class ReconciliationService:
    """Repairs participant projections from the canonical listing."""

    def __init__(
        self,
        session: Session,
        writer: Optional[ProjectionWriter] = None,
        timeline: Optional[TimelineService] = None,
    ):
        self.session = session
        self.writer = writer or ProjectionWriter(session)
        self.timeline = timeline or TimelineService(session)

    def expected_targets(self, listing: Listing) -> List[ProjectionTarget]:
        """Projections that should exist for ``listing`` right now."""
        targets = [seller_target(listing)]
        if listing.is_under_purchase and listing.buyer_confirmed and listing.confirmed_buyer_id:
            targets.append(buyer_target(listing.confirmed_buyer_id))
        return targets

    def detect_drift(self, listing: Listing) -> List[Drift]:
        """Every projection of ``listing`` that is missing, stale, or orphaned."""
        drift: List[Drift] = []

        seller_row = self.session.query(SellerListingProjection).filter(
            SellerListingProjection.listing_id == listing.id,
            SellerListingProjection.seller_id == listing.owner_id,
        ).first()
        if seller_row is None:
            drift.append(Drift(seller_target(listing), "missing"))
        else:
            changed = _diff(seller_row, listing, SELLER_FIELDS)
            if changed:
                drift.append(Drift(seller_target(listing), "stale", changed))

        expected_buyer = next(
            (t.participant_id for t in self.expected_targets(listing) if t.kind == ProjectionKind.BUYER),
            None,
        )
        buyer_rows = self.session.query(BuyerPropertyProjection).filter(
            BuyerPropertyProjection.listing_id == listing.id
        ).all()
        seen_expected = False
        for row in buyer_rows:
            if row.buyer_id != expected_buyer:
                drift.append(Drift(buyer_target(row.buyer_id, ProjectionAction.DELETE), "orphaned"))
                continue
            seen_expected = True
            changed = _diff(row, listing, BUYER_FIELDS)
            if changed:
                drift.append(Drift(buyer_target(row.buyer_id), "stale", changed))
        if expected_buyer and not seen_expected:
            drift.append(Drift(buyer_target(expected_buyer), "missing"))

        return drift

    def reconcile_listing(self, listing_id: int) -> ReconciliationResult:
        """
        Bring every projection of one listing back in line with it.

        Pending outbox rows for the listing are resolved once the repair
        lands, since the rewrite covers whatever they were owed.

        Raises:
            NotFoundError: If the listing does not exist.
        """
        listing = self.session.get(Listing, listing_id)
        if listing is None:
            raise NotFoundError(f"Listing {listing_id} not found", listing_id=listing_id)

        result = ReconciliationResult(listing_id=listing_id, drift=self.detect_drift(listing))
        pending_rows = self._pending_outbox(listing_id)
        if not result.drift and not pending_rows:
            return result

        operation_id = generate_unique_key()
        targets = [d.target for d in result.drift]
        try:
            self.writer.apply(ProjectionDelta(listing_id, operation_id, tuple(targets)))
        except PartialWriteError as e:
            result.repaired = False
            result.error = str(e)
            LOGGER.warning(f"Reconciliation of listing {listing_id} incomplete: {e}")
            return result

        now = utcnow()
        for row in pending_rows:
            row.status = OutboxStatus.RESOLVED.value
            row.resolved_at = now
        result.outbox_resolved = len(pending_rows)
        self.session.flush()

        if result.drift:
            self.timeline.add_event(
                listing_id,
                TimelineEventType.PROJECTIONS_REPAIRED,
                title="Participant views repaired",
                operation_id=operation_id,
                metadata=result.to_dict(),
            )
            LOGGER.info(f"Repaired {len(result.drift)} drifted projections on listing {listing_id}")
        return result

    def drain_outbox(self, limit: Optional[int] = None) -> OutboxDrainResult:
        """
        Retry pending outbox rows, oldest first.

        Each row is replayed against the current listing, so rows for
        changes that were later superseded still converge.
        """
        limit = limit or SETTINGS.outbox_batch_size
        summary = OutboxDrainResult()
        rows = self.session.query(ProjectionOutbox).filter(
            ProjectionOutbox.status == OutboxStatus.PENDING.value
        ).order_by(ProjectionOutbox.created_at, ProjectionOutbox.id).limit(limit).all()

        for row in rows:
            summary.processed += 1
            target = ProjectionTarget(
                ProjectionKind(row.target_kind),
                row.participant_id,
                ProjectionAction(row.action),
            )
            try:
                self.writer.apply(ProjectionDelta(row.listing_id, row.operation_id, (target,)))
            except (PartialWriteError, NotFoundError) as e:
                row.attempts += 1
                row.last_error = str(e.details.get("errors") or e)
                summary.failed += 1
                LOGGER.warning(f"Outbox row {row.id} still failing after {row.attempts} drains: {e}")
                continue
            row.attempts += 1
            row.status = OutboxStatus.RESOLVED.value
            row.resolved_at = utcnow()
            row.last_error = None
            summary.resolved += 1

        self.session.flush()
        if summary.processed:
            LOGGER.info(
                f"Outbox drain: {summary.resolved} resolved, {summary.failed} still pending"
            )
        return summary

    def reconcile_all(self, batch_size: int = 100) -> List[ReconciliationResult]:
        """Reconcile every listing. Returns only the listings that needed work."""
        results = []
        offset = 0
        while True:
            ids = [
                row.id for row in self.session.query(Listing.id)
                .order_by(Listing.id).offset(offset).limit(batch_size)
            ]
            if not ids:
                break
            for listing_id in ids:
                result = self.reconcile_listing(listing_id)
                if result.drift or result.outbox_resolved or not result.repaired:
                    results.append(result)
            offset += batch_size
        return results

    def _pending_outbox(self, listing_id: int) -> List[ProjectionOutbox]:
        return self.session.query(ProjectionOutbox).filter(
            ProjectionOutbox.listing_id == listing_id,
            ProjectionOutbox.status == OutboxStatus.PENDING.value,
        ).all()


def get_reconciliation_service(session: Session) -> ReconciliationService:
    """Get a ReconciliationService instance."""
    return ReconciliationService(session)


__all__ = [
    "Drift",
    "ReconciliationResult",
    "OutboxDrainResult",
    "ReconciliationService",
    "get_reconciliation_service",
]
