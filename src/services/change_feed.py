"""In-process change feed for push-on-change subscribers.

Events raised during a unit of work are held on the session and only
delivered once that session commits; a rollback discards them.
"""
from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session

from core.logging_config import get_logger
from core.utils import isoformat, utcnow

LOGGER = get_logger(__name__)

_PENDING_KEY = "pending_change_events"

# Subscribe with listing_id=None to receive every listing's events
ALL_LISTINGS = None


@dataclass
class ChangeEvent:
    """A committed change on one listing."""

    listing_id: int
    event_type: str
    operation_id: Optional[str] = None
    state: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: Any = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "listing_id": self.listing_id,
            "event_type": self.event_type,
            "operation_id": self.operation_id,
            "state": self.state,
            "payload": self.payload,
            "occurred_at": isoformat(self.occurred_at),
        }


Subscriber = Callable[[ChangeEvent], None]


class ChangeFeed:
    """Listing-scoped publish/subscribe."""

    def __init__(self) -> None:
        self._subscribers: Dict[Optional[int], List[Subscriber]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, listing_id: Optional[int], callback: Subscriber) -> Callable[[], None]:
        """
        Register ``callback`` for changes on ``listing_id``.

        Returns:
            A function that removes the subscription.
        """
        with self._lock:
            self._subscribers[listing_id].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(listing_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def publish(self, change: ChangeEvent) -> int:
        """Deliver ``change`` now. Returns the number of subscribers reached."""
        with self._lock:
            callbacks = list(self._subscribers.get(change.listing_id, []))
            callbacks += self._subscribers.get(ALL_LISTINGS, [])

        delivered = 0
        for callback in callbacks:
            try:
                callback(change)
                delivered += 1
            except Exception:
                # A broken subscriber must not affect the writer or other subscribers
                LOGGER.exception(f"Change subscriber failed for listing {change.listing_id}")
        return delivered

    def publish_after_commit(self, session: Session, change: ChangeEvent) -> None:
        """Queue ``change`` until ``session`` commits."""
        session.info.setdefault(_PENDING_KEY, []).append((self, change))


@event.listens_for(Session, "after_commit")
def _deliver_pending(session: Session) -> None:
    # Releasing a SAVEPOINT also fires after_commit
    if session.in_nested_transaction():
        return
    for feed, change in session.info.pop(_PENDING_KEY, []):
        feed.publish(change)


@event.listens_for(Session, "after_rollback")
def _discard_pending(session: Session) -> None:
    if session.in_nested_transaction():
        return
    dropped = session.info.pop(_PENDING_KEY, [])
    if dropped:
        LOGGER.debug(f"Discarded {len(dropped)} change events after rollback")


_feed = ChangeFeed()


def get_change_feed() -> ChangeFeed:
    """Get the process-wide change feed."""
    return _feed


__all__ = [
    "ChangeEvent",
    "ChangeFeed",
    "get_change_feed",
]
