"""Tests for the purchase workflow state machine."""
from __future__ import annotations

from datetime import date
from unittest.mock import patch

import pytest
from sqlalchemy import text

from core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from core.models import (
    BuyerPropertyProjection,
    ListingEvent,
    ParticipantRole,
    PurchaseState,
    SellerListingProjection,
)
from core.utils import ensure_aware
from domain.listings import ListingStore, ListingSummary, purchase_state
from domain.purchase import REQUIRED_DOCUMENTS, check_documents
from services.timeline import TimelineEventType

from conftest import BUYER_ID, SELLER_ID


def _seller_row(db_session, listing_id):
    return db_session.query(SellerListingProjection).filter_by(
        seller_id=SELLER_ID, listing_id=listing_id
    ).one()


def _buyer_row(db_session, listing_id, buyer_id=BUYER_ID):
    return db_session.query(BuyerPropertyProjection).filter_by(
        buyer_id=buyer_id, listing_id=listing_id
    ).first()


def _assert_flags_consistent(listing):
    assert (listing.confirmed_buyer_id is not None) == listing.is_under_purchase
    if listing.buyer_confirmed:
        assert listing.is_under_purchase


def _comparable(summary: ListingSummary) -> dict:
    data = summary.to_dict()
    for volatile in ("version", "updated_at", "created_at"):
        data.pop(volatile)
    return data


# =============================================================================
# Happy path
# =============================================================================


class TestPurchaseScenario:
    """Propose, confirm, documents, then seller cancels."""

    def test_full_handshake_and_cancel(self, db_session, state_machine, sample_listing):
        listing_id = sample_listing.id

        state_machine.propose_buyer(listing_id, BUYER_ID, SELLER_ID)
        assert sample_listing.is_under_purchase is True
        assert sample_listing.confirmed_buyer_id == BUYER_ID
        assert sample_listing.buyer_confirmed is False
        assert _buyer_row(db_session, listing_id) is None
        _assert_flags_consistent(sample_listing)

        state_machine.confirm_as_buyer(listing_id, BUYER_ID)
        buyer_row = _buyer_row(db_session, listing_id)
        assert buyer_row is not None
        assert buyer_row.confirmed_at is not None
        assert ensure_aware(buyer_row.confirmed_at) == ensure_aware(sample_listing.buyer_confirmed_at)
        assert sample_listing.buyer_confirmed is True
        _assert_flags_consistent(sample_listing)

        state_machine.confirm_documents_as_seller(listing_id, SELLER_ID, list(REQUIRED_DOCUMENTS))
        assert sample_listing.seller_documents_confirmed is True
        assert _seller_row(db_session, listing_id).seller_documents_confirmed is True
        assert _buyer_row(db_session, listing_id).seller_documents_confirmed is True

        state_machine.cancel(listing_id, ParticipantRole.SELLER, SELLER_ID)
        assert sample_listing.is_under_purchase is False
        assert sample_listing.confirmed_buyer_id is None
        assert sample_listing.buyer_confirmed is False
        assert sample_listing.seller_documents_confirmed is False
        assert purchase_state(sample_listing) == PurchaseState.AVAILABLE
        assert _buyer_row(db_session, listing_id) is None
        seller_row = _seller_row(db_session, listing_id)
        assert seller_row.is_under_purchase is False
        assert seller_row.confirmed_buyer_id is None
        _assert_flags_consistent(sample_listing)

    def test_handover_to_completion(self, db_session, state_machine, confirmed_listing):
        listing_id = confirmed_listing.id
        state_machine.confirm_documents_as_seller(listing_id, SELLER_ID, list(REQUIRED_DOCUMENTS))

        result = state_machine.schedule_handover(listing_id, SELLER_ID, date(2026, 11, 2), "Keys at the office")
        assert result.listing.state == PurchaseState.HANDOVER_SCHEDULED
        buyer_row = _buyer_row(db_session, listing_id)
        assert buyer_row.handover_date == date(2026, 11, 2)
        assert buyer_row.handover_note == "Keys at the office"
        assert buyer_row.last_inspection_update_by == ParticipantRole.SELLER.value

        result = state_machine.complete_handover(listing_id, SELLER_ID)
        assert result.listing.state == PurchaseState.COMPLETED
        assert _buyer_row(db_session, listing_id).handover_completed_at is not None

    def test_state_follows_flags(self, state_machine, confirmed_listing):
        assert purchase_state(confirmed_listing) == PurchaseState.BUYER_CONFIRMED
        result = state_machine.confirm_documents_as_seller(
            confirmed_listing.id, SELLER_ID, list(REQUIRED_DOCUMENTS)
        )
        assert result.listing.state == PurchaseState.SELLER_DOCUMENTS_CONFIRMED
        assert result.changed is True
        assert result.degraded is False


# =============================================================================
# Properties
# =============================================================================


class TestIdempotence:

    def test_confirm_as_buyer_twice(self, db_session, state_machine, proposed_listing):
        first = state_machine.confirm_as_buyer(proposed_listing.id, BUYER_ID)
        confirmed_at = ensure_aware(proposed_listing.buyer_confirmed_at)

        second = state_machine.confirm_as_buyer(proposed_listing.id, BUYER_ID)

        assert first.changed is True
        assert second.changed is False
        assert ensure_aware(proposed_listing.buyer_confirmed_at) == confirmed_at
        assert db_session.query(BuyerPropertyProjection).filter_by(
            listing_id=proposed_listing.id
        ).count() == 1

    def test_cancel_twice(self, state_machine, confirmed_listing):
        state_machine.cancel(confirmed_listing.id, ParticipantRole.BUYER, BUYER_ID)
        again = state_machine.cancel(confirmed_listing.id, ParticipantRole.SELLER, SELLER_ID)

        assert again.changed is False
        assert again.listing.state == PurchaseState.AVAILABLE

    def test_schedule_same_handover_is_noop(self, state_machine, confirmed_listing):
        state_machine.confirm_documents_as_seller(confirmed_listing.id, SELLER_ID, list(REQUIRED_DOCUMENTS))
        state_machine.schedule_handover(confirmed_listing.id, SELLER_ID, date(2026, 11, 2))

        again = state_machine.schedule_handover(confirmed_listing.id, SELLER_ID, date(2026, 11, 2))
        assert again.changed is False

    def test_complete_twice(self, state_machine, confirmed_listing):
        state_machine.confirm_documents_as_seller(confirmed_listing.id, SELLER_ID, list(REQUIRED_DOCUMENTS))
        state_machine.schedule_handover(confirmed_listing.id, SELLER_ID, date(2026, 11, 2))
        state_machine.complete_handover(confirmed_listing.id, SELLER_ID)

        assert state_machine.complete_handover(confirmed_listing.id, SELLER_ID).changed is False


def test_round_trip_restores_available_listing(db_session, state_machine, sample_listing):
    """propose -> confirm -> cancel looks like the listing before propose."""
    store = ListingStore(db_session)
    before = _comparable(ListingSummary.from_model(store.get(sample_listing.id)))
    seller_before = _seller_row(db_session, sample_listing.id)
    seller_flags_before = (
        seller_before.is_under_purchase,
        seller_before.confirmed_buyer_id,
        seller_before.buyer_confirmed,
        seller_before.seller_documents_confirmed,
        seller_before.handover_date,
    )

    state_machine.propose_buyer(sample_listing.id, BUYER_ID, SELLER_ID)
    state_machine.confirm_as_buyer(sample_listing.id, BUYER_ID)
    state_machine.cancel(sample_listing.id, ParticipantRole.BUYER, BUYER_ID)

    after = _comparable(ListingSummary.from_model(store.get(sample_listing.id)))
    assert after == before

    seller_after = _seller_row(db_session, sample_listing.id)
    assert (
        seller_after.is_under_purchase,
        seller_after.confirmed_buyer_id,
        seller_after.buyer_confirmed,
        seller_after.seller_documents_confirmed,
        seller_after.handover_date,
    ) == seller_flags_before


def test_second_buyer_cannot_be_proposed(state_machine, proposed_listing):
    with pytest.raises(ConflictError):
        state_machine.propose_buyer(proposed_listing.id, "buyer-2", SELLER_ID)

    assert proposed_listing.confirmed_buyer_id == BUYER_ID


def test_listing_can_be_proposed_again_after_cancel(state_machine, confirmed_listing):
    old_purchase = confirmed_listing.purchase_id
    state_machine.cancel(confirmed_listing.id, ParticipantRole.SELLER, SELLER_ID)

    state_machine.propose_buyer(confirmed_listing.id, "buyer-2", SELLER_ID)

    assert confirmed_listing.confirmed_buyer_id == "buyer-2"
    assert confirmed_listing.purchase_id is not None
    assert confirmed_listing.purchase_id != old_purchase


# =============================================================================
# Rejections
# =============================================================================


class TestPreconditions:

    def test_only_owner_can_propose(self, state_machine, sample_listing):
        with pytest.raises(PermissionDeniedError):
            state_machine.propose_buyer(sample_listing.id, BUYER_ID, "someone-else")

    def test_owner_cannot_buy_own_listing(self, state_machine, sample_listing):
        with pytest.raises(ValidationError):
            state_machine.propose_buyer(sample_listing.id, SELLER_ID, SELLER_ID)

    def test_confirm_by_other_buyer_conflicts(self, state_machine, proposed_listing):
        with pytest.raises(ConflictError):
            state_machine.confirm_as_buyer(proposed_listing.id, "buyer-2")
        assert proposed_listing.buyer_confirmed is False

    def test_confirm_without_purchase_conflicts(self, state_machine, sample_listing):
        with pytest.raises(ConflictError):
            state_machine.confirm_as_buyer(sample_listing.id, BUYER_ID)

    def test_documents_before_buyer_confirmation(self, state_machine, proposed_listing):
        with pytest.raises(InvalidTransitionError):
            state_machine.confirm_documents_as_seller(
                proposed_listing.id, SELLER_ID, list(REQUIRED_DOCUMENTS)
            )

    def test_documents_missing_required(self, state_machine, confirmed_listing):
        with pytest.raises(ValidationError) as exc_info:
            state_machine.confirm_documents_as_seller(
                confirmed_listing.id, SELLER_ID, ["purchase-agreement", "ownership-proof"]
            )
        assert exc_info.value.details["missing"] == ["seller-id-card", "tax-documents"]
        assert confirmed_listing.seller_documents_confirmed is False

    def test_documents_only_by_owner(self, state_machine, confirmed_listing):
        with pytest.raises(PermissionDeniedError):
            state_machine.confirm_documents_as_seller(
                confirmed_listing.id, BUYER_ID, list(REQUIRED_DOCUMENTS)
            )

    def test_handover_before_documents(self, state_machine, confirmed_listing):
        with pytest.raises(InvalidTransitionError):
            state_machine.schedule_handover(confirmed_listing.id, SELLER_ID, date(2026, 11, 2))

    def test_complete_without_handover_date(self, state_machine, confirmed_listing):
        state_machine.confirm_documents_as_seller(confirmed_listing.id, SELLER_ID, list(REQUIRED_DOCUMENTS))
        with pytest.raises(InvalidTransitionError):
            state_machine.complete_handover(confirmed_listing.id, SELLER_ID)

    def test_cancel_after_completion(self, state_machine, confirmed_listing):
        state_machine.confirm_documents_as_seller(confirmed_listing.id, SELLER_ID, list(REQUIRED_DOCUMENTS))
        state_machine.schedule_handover(confirmed_listing.id, SELLER_ID, date(2026, 11, 2))
        state_machine.complete_handover(confirmed_listing.id, SELLER_ID)

        with pytest.raises(ConflictError):
            state_machine.cancel(confirmed_listing.id, ParticipantRole.SELLER, SELLER_ID)
        assert confirmed_listing.is_under_purchase is True

    def test_cancel_as_buyer_by_stranger(self, state_machine, confirmed_listing):
        with pytest.raises(PermissionDeniedError):
            state_machine.cancel(confirmed_listing.id, ParticipantRole.BUYER, "buyer-2")
        assert confirmed_listing.is_under_purchase is True

    def test_cancel_by_unknown_party(self, state_machine, confirmed_listing):
        with pytest.raises(ValidationError):
            state_machine.cancel(confirmed_listing.id, "agent", SELLER_ID)
        assert confirmed_listing.is_under_purchase is True


class TestDocumentCheck:

    def test_returns_catalogue_order_without_duplicates(self):
        docs = ["tax-documents", "power-of-attorney", *REQUIRED_DOCUMENTS, "tax-documents"]
        assert check_documents(docs) == [
            "purchase-agreement",
            "ownership-proof",
            "seller-id-card",
            "tax-documents",
            "power-of-attorney",
        ]

    def test_unknown_document_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            check_documents([*REQUIRED_DOCUMENTS, "birth-certificate"])
        assert exc_info.value.details["unknown"] == ["birth-certificate"]


# =============================================================================
# Concurrency and audit
# =============================================================================


def test_stale_write_detected(db_session, sample_listing):
    """A write against an outdated version raises instead of overwriting."""
    store = ListingStore(db_session)
    listing = store.get(sample_listing.id)

    db_session.connection().execute(
        text("UPDATE listing SET version = version + 1 WHERE id = :id"),
        {"id": listing.id},
    )
    listing.title = "Renamed behind someone's back"

    with pytest.raises(ConcurrentModificationError):
        store.save(listing)


def test_race_inside_transition_is_a_conflict(db_session, state_machine, proposed_listing):
    """Another writer landing between the precondition read and the write."""
    original = ListingStore.get_for_update

    def read_then_bump(store, listing_id):
        listing = original(store, listing_id)
        store.session.connection().execute(
            text("UPDATE listing SET version = version + 1 WHERE id = :id"),
            {"id": listing_id},
        )
        return listing

    with patch.object(ListingStore, "get_for_update", read_then_bump):
        with pytest.raises(ConcurrentModificationError) as exc_info:
            state_machine.cancel(proposed_listing.id, ParticipantRole.SELLER, SELLER_ID)

    assert exc_info.value.details["listing_id"] == proposed_listing.id


def test_transitions_write_timeline(db_session, state_machine, confirmed_listing):
    state_machine.cancel(confirmed_listing.id, ParticipantRole.BUYER, BUYER_ID)

    events = db_session.query(ListingEvent).filter_by(
        listing_id=confirmed_listing.id
    ).order_by(ListingEvent.id).all()
    types = [e.event_type for e in events]

    assert types == [
        TimelineEventType.LISTING_CREATED,
        TimelineEventType.BUYER_PROPOSED,
        TimelineEventType.BUYER_CONFIRMED,
        TimelineEventType.PURCHASE_CANCELLED,
    ]
    cancelled = events[-1]
    assert cancelled.actor_id == BUYER_ID
    assert cancelled.event_metadata["initiator"] == "buyer"
    assert cancelled.event_metadata["previous_state"] == PurchaseState.BUYER_CONFIRMED.value
