"""Tests for projection fan-out, partial failure handling, and the outbox."""
from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from core.exceptions import DirectoryError, NotFoundError, PartialWriteError
from core.models import (
    BuyerPropertyProjection,
    ListingEvent,
    OutboxStatus,
    ProjectionAction,
    ProjectionKind,
    ProjectionOutbox,
    SellerListingProjection,
)
from domain.purchase import PurchaseStateMachine
from services.directory import ParticipantDirectory, ParticipantInfo
from services.projection import (
    ProjectionDelta,
    ProjectionReader,
    ProjectionWriter,
    buyer_projection_to_dict,
    buyer_target,
    seller_target,
)
from services.timeline import TimelineEventType

from conftest import BUYER_ID, SELLER_ID


def _pending_outbox(db_session, listing_id):
    return db_session.query(ProjectionOutbox).filter_by(
        listing_id=listing_id, status=OutboxStatus.PENDING.value
    ).all()


class TestProjectionWriter:
    """Direct writes of projection deltas."""

    def test_seller_upsert_creates_then_updates(self, db_session, sample_listing):
        writer = ProjectionWriter(db_session)
        sample_listing.title = "Renamed flat"

        writer.apply(ProjectionDelta(sample_listing.id, "op-1", (seller_target(sample_listing),)))

        rows = db_session.query(SellerListingProjection).filter_by(listing_id=sample_listing.id).all()
        assert len(rows) == 1
        assert rows[0].title == "Renamed flat"
        assert rows[0].last_operation_id == "op-1"

    def test_repeating_a_delta_is_safe(self, db_session, confirmed_listing):
        writer = ProjectionWriter(db_session)
        delta = ProjectionDelta(
            confirmed_listing.id,
            "op-repeat",
            (seller_target(confirmed_listing), buyer_target(BUYER_ID)),
        )

        writer.apply(delta)
        writer.apply(delta)

        assert db_session.query(SellerListingProjection).filter_by(
            listing_id=confirmed_listing.id
        ).count() == 1
        assert db_session.query(BuyerPropertyProjection).filter_by(
            listing_id=confirmed_listing.id
        ).count() == 1

    def test_buyer_upsert_for_unconfirmed_buyer_deletes(self, db_session, confirmed_listing):
        writer = ProjectionWriter(db_session)

        writer.apply(ProjectionDelta(confirmed_listing.id, "op-x", (buyer_target("buyer-2"),)))

        assert db_session.query(BuyerPropertyProjection).filter_by(buyer_id="buyer-2").count() == 0

    def test_partial_failure_reports_split(self, db_session, confirmed_listing):
        writer = ProjectionWriter(db_session)
        delta = ProjectionDelta(
            confirmed_listing.id,
            "op-partial",
            (seller_target(confirmed_listing), buyer_target(BUYER_ID)),
        )

        with patch.object(ProjectionWriter, "_upsert_seller", side_effect=SQLAlchemyError("boom")):
            with pytest.raises(PartialWriteError) as exc_info:
                writer.apply(delta)

        assert exc_info.value.failed == [seller_target(confirmed_listing)]
        assert exc_info.value.succeeded == [buyer_target(BUYER_ID)]
        # The buyer write survived the seller failure
        buyer_row = db_session.query(BuyerPropertyProjection).filter_by(
            listing_id=confirmed_listing.id
        ).one()
        assert buyer_row.last_operation_id == "op-partial"

    def test_missing_listing(self, db_session):
        with pytest.raises(NotFoundError):
            ProjectionWriter(db_session).apply(ProjectionDelta(99999, "op", ()))

    def test_record_outbox_is_idempotent(self, db_session, sample_listing):
        writer = ProjectionWriter(db_session)
        delta = ProjectionDelta(sample_listing.id, "op-out", (seller_target(sample_listing),))

        writer.record_outbox(delta, error="first")
        writer.record_outbox(delta, error="second")

        rows = _pending_outbox(db_session, sample_listing.id)
        assert len(rows) == 1
        assert rows[0].last_error == "second"
        assert rows[0].target_kind == ProjectionKind.SELLER.value
        assert rows[0].action == ProjectionAction.UPSERT.value


class TestDegradedTransitions:
    """Transitions whose fan-out runs out of retries."""

    def test_buyer_projection_failure_keeps_canonical_change(
        self, db_session, state_machine, proposed_listing
    ):
        with patch.object(ProjectionWriter, "_upsert_buyer", side_effect=SQLAlchemyError("boom")):
            result = state_machine.confirm_as_buyer(proposed_listing.id, BUYER_ID)

        assert result.degraded is True
        assert result.projections.attempts == 2
        assert result.projections.pending == [buyer_target(BUYER_ID)]
        assert result.to_dict()["degraded"] is True

        assert proposed_listing.buyer_confirmed is True
        seller_row = db_session.query(SellerListingProjection).filter_by(
            listing_id=proposed_listing.id
        ).one()
        assert seller_row.buyer_confirmed is True
        assert db_session.query(BuyerPropertyProjection).filter_by(
            listing_id=proposed_listing.id
        ).count() == 0

        outbox = _pending_outbox(db_session, proposed_listing.id)
        assert len(outbox) == 1
        assert outbox[0].target_kind == ProjectionKind.BUYER.value
        assert outbox[0].participant_id == BUYER_ID
        assert outbox[0].operation_id == result.operation_id
        assert "boom" in outbox[0].last_error

        degraded_events = db_session.query(ListingEvent).filter_by(
            listing_id=proposed_listing.id,
            event_type=TimelineEventType.PROJECTIONS_DEGRADED,
        ).count()
        assert degraded_events == 1

    def test_transient_failure_recovers_within_budget(
        self, db_session, state_machine, proposed_listing
    ):
        original = ProjectionWriter._upsert_buyer
        calls = {"n": 0}

        def flaky(self, listing, buyer_id, operation_id):
            calls["n"] += 1
            if calls["n"] == 1:
                raise SQLAlchemyError("transient")
            return original(self, listing, buyer_id, operation_id)

        with patch.object(ProjectionWriter, "_upsert_buyer", flaky):
            result = state_machine.confirm_as_buyer(proposed_listing.id, BUYER_ID)

        assert result.degraded is False
        assert result.projections.attempts == 2
        # Only the failed target was retried
        assert [t.kind for t in result.projections.written] == [ProjectionKind.SELLER, ProjectionKind.BUYER]
        assert _pending_outbox(db_session, proposed_listing.id) == []
        assert db_session.query(BuyerPropertyProjection).filter_by(
            listing_id=proposed_listing.id
        ).count() == 1


class TestBuyerSnapshot:
    """The buyer projection carries display data taken at confirmation."""

    def test_snapshot_fields(self, db_session, confirmed_listing):
        row = ProjectionReader(db_session).get_buyer_projection(BUYER_ID, confirmed_listing.id)
        data = buyer_projection_to_dict(row)

        assert data["seller_id"] == SELLER_ID
        assert data["title"] == "Two-bedroom flat near the park"
        assert data["price"] == 250000.0
        assert data["thumbnail_url"] == "https://img.test/front.jpg"
        assert data["is_under_purchase"] is True
        assert data["buyer_confirmed"] is True

    def test_snapshot_not_refreshed_by_listing_edits(
        self, db_session, listing_service, confirmed_listing
    ):
        listing_service.update_attributes(confirmed_listing.id, SELLER_ID, title="New headline")

        row = ProjectionReader(db_session).get_buyer_projection(BUYER_ID, confirmed_listing.id)
        assert row.title == "Two-bedroom flat near the park"
        seller_row = ProjectionReader(db_session).get_seller_projection(SELLER_ID, confirmed_listing.id)
        assert seller_row.title == "New headline"

    def test_snapshot_includes_seller_contact(
        self, db_session, notifications, feed, retry_policy, proposed_listing
    ):
        directory = MagicMock(spec=ParticipantDirectory)
        directory.lookup_participant.return_value = ParticipantInfo(
            SELLER_ID, display_name="Sam Seller", phone="+15550100", email="sam@example.com"
        )
        machine = PurchaseStateMachine(
            db_session,
            writer=ProjectionWriter(db_session, directory),
            notifications=notifications,
            feed=feed,
            retry_policy=retry_policy,
        )

        machine.confirm_as_buyer(proposed_listing.id, BUYER_ID)

        row = ProjectionReader(db_session).get_buyer_projection(BUYER_ID, proposed_listing.id)
        assert row.seller_name == "Sam Seller"
        assert row.seller_phone == "+15550100"
        assert row.seller_email == "sam@example.com"
        directory.lookup_participant.assert_called_once_with(SELLER_ID)

    def test_directory_outage_does_not_block_confirmation(
        self, db_session, notifications, feed, retry_policy, proposed_listing
    ):
        directory = MagicMock(spec=ParticipantDirectory)
        directory.lookup_participant.side_effect = DirectoryError("directory down")
        machine = PurchaseStateMachine(
            db_session,
            writer=ProjectionWriter(db_session, directory),
            notifications=notifications,
            feed=feed,
            retry_policy=retry_policy,
        )

        result = machine.confirm_as_buyer(proposed_listing.id, BUYER_ID)

        assert result.degraded is False
        row = ProjectionReader(db_session).get_buyer_projection(BUYER_ID, proposed_listing.id)
        assert row.seller_name is None


class TestProjectionReader:

    def test_missing_buyer_projection(self, db_session, proposed_listing):
        with pytest.raises(NotFoundError):
            ProjectionReader(db_session).get_buyer_projection(BUYER_ID, proposed_listing.id)

    def test_lists_by_participant(self, db_session, confirmed_listing):
        reader = ProjectionReader(db_session)
        assert [r.listing_id for r in reader.list_seller_projections(SELLER_ID)] == [confirmed_listing.id]
        assert [r.listing_id for r in reader.list_buyer_projections(BUYER_ID)] == [confirmed_listing.id]
        assert reader.list_buyer_projections("nobody") == []
