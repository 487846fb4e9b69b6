"""Tests for the inspection notification feed and delivery."""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from core.models import (
    InspectionNotification,
    NotificationAudience,
    NotificationCategory,
    ParticipantRole,
)
from domain.purchase import PurchaseStateMachine
from services.messaging import MessagingClient
from services.notification import NotificationService, notification_to_dict
from services.projection import ProjectionWriter

from conftest import BUYER_ID, SELLER_ID


@pytest.fixture
def messaging_mock():
    return MagicMock(spec=MessagingClient)


@pytest.fixture
def machine_with_mock(db_session, messaging_mock, feed, retry_policy) -> PurchaseStateMachine:
    return PurchaseStateMachine(
        db_session,
        writer=ProjectionWriter(db_session),
        notifications=NotificationService(db_session, messaging_mock),
        feed=feed,
        retry_policy=retry_policy,
    )


def _recipients(messaging_mock):
    return [c.args[0] for c in messaging_mock.emit_notification.call_args_list]


class TestNotify:

    def test_propose_notifies_buyer(self, db_session, messaging_mock, machine_with_mock, sample_listing):
        machine_with_mock.propose_buyer(sample_listing.id, BUYER_ID, SELLER_ID)

        entry = db_session.query(InspectionNotification).filter_by(listing_id=sample_listing.id).one()
        assert entry.audience == NotificationAudience.BUYER.value
        assert entry.read_by_seller is True
        assert entry.read_by_buyer is False
        assert entry.purchase_id == sample_listing.purchase_id

        db_session.commit()
        assert _recipients(messaging_mock) == [BUYER_ID]

        payload = messaging_mock.emit_notification.call_args.args[1]
        assert payload["listing_id"] == sample_listing.id
        assert payload["notification_id"] == entry.id
        assert payload["link"].endswith(f"/inspection/buyer/{sample_listing.id}")

    def test_messages_wait_for_commit(self, db_session, messaging_mock, machine_with_mock, sample_listing):
        machine_with_mock.propose_buyer(sample_listing.id, BUYER_ID, SELLER_ID)

        messaging_mock.emit_notification.assert_not_called()

    def test_rollback_drops_messages(self, db_session, messaging_mock, machine_with_mock, sample_listing):
        db_session.commit()
        machine_with_mock.propose_buyer(sample_listing.id, BUYER_ID, SELLER_ID)

        db_session.rollback()
        db_session.commit()

        messaging_mock.emit_notification.assert_not_called()

    def test_initiator_is_never_messaged(self, db_session, messaging_mock, machine_with_mock, sample_listing):
        machine_with_mock.propose_buyer(sample_listing.id, BUYER_ID, SELLER_ID)
        machine_with_mock.confirm_as_buyer(sample_listing.id, BUYER_ID)
        db_session.commit()
        messaging_mock.reset_mock()

        machine_with_mock.cancel(sample_listing.id, ParticipantRole.BUYER, BUYER_ID)
        db_session.commit()

        # Counterpart notice reaches the seller; the buyer's own copy is feed-only
        assert _recipients(messaging_mock) == [SELLER_ID]

    def test_cancel_records_both_notices(self, db_session, machine_with_mock, sample_listing):
        machine_with_mock.propose_buyer(sample_listing.id, BUYER_ID, SELLER_ID)
        machine_with_mock.cancel(sample_listing.id, ParticipantRole.SELLER, SELLER_ID)

        entries = db_session.query(InspectionNotification).filter_by(
            listing_id=sample_listing.id, title="Purchase cancelled"
        ).all()
        assert sorted(e.audience for e in entries) == ["buyer", "seller"]

    def test_delivery_failure_does_not_raise(self, db_session, sample_listing):
        messaging = MagicMock(spec=MessagingClient)
        messaging.emit_notification.return_value = False
        service = NotificationService(db_session, messaging)

        entry = service.notify(
            sample_listing,
            title="Heads up",
            message="Something happened",
            category=NotificationCategory.NOTE,
        )

        assert entry.id is not None
        db_session.commit()
        messaging.emit_notification.assert_called_once()


class TestFeed:

    def test_role_filter_and_read_marks(self, notifications, proposed_listing, state_machine):
        state_machine.confirm_as_buyer(proposed_listing.id, BUYER_ID)

        seller_feed = notifications.list_notifications(proposed_listing, role=ParticipantRole.SELLER)
        buyer_feed = notifications.list_notifications(proposed_listing, role=ParticipantRole.BUYER)

        assert [e.title for e in seller_feed] == ["Buyer confirmed"]
        assert [e.title for e in buyer_feed] == ["You've been selected as the buyer"]

        entry = buyer_feed[0]
        assert notifications.mark_read(proposed_listing.id, [entry.id], ParticipantRole.BUYER) == 1
        assert entry.read_by_buyer is True
        assert notifications.mark_read(proposed_listing.id, [entry.id], ParticipantRole.BUYER) == 0
        assert notifications.mark_read(proposed_listing.id, [], ParticipantRole.BUYER) == 0

    def test_history_hidden_after_cancel(self, notifications, state_machine, confirmed_listing):
        state_machine.cancel(confirmed_listing.id, ParticipantRole.SELLER, SELLER_ID)

        current = notifications.list_notifications(confirmed_listing)
        history = notifications.list_notifications(confirmed_listing, include_history=True)

        assert {e.title for e in current} == {"Purchase cancelled"}
        assert len(history) > len(current)

    def test_to_dict(self, notifications, proposed_listing):
        entry = notifications.list_notifications(proposed_listing)[0]
        data = notification_to_dict(entry)

        assert data["listing_id"] == proposed_listing.id
        assert data["category"] == "general"
        assert data["triggered_by"] == "seller"
        assert data["created_at"].endswith("+00:00")
