"""Core utility functions."""
from __future__ import annotations

import hashlib
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Union

from core.logging_config import get_logger

LOGGER = get_logger(__name__)


def utcnow() -> datetime:
    """Get current UTC datetime with timezone info. Always use this instead of datetime.now()."""
    return datetime.now(timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is timezone-aware (UTC).

    SQLite stores datetimes without timezone info, so values read back
    from it are naive and must be treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def isoformat(value: Optional[Union[date, datetime]]) -> Optional[str]:
    """Serialize a date/datetime for API payloads, keeping None as None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_aware(value).isoformat()
    return value.isoformat()


def generate_idempotency_key(*args: Any) -> str:
    """
    Generate a deterministic idempotency key from arguments.

    Args:
        *args: Values to include in the key (listing_id, operation_id, target, ...)

    Returns:
        A 64-character hex string.
    """
    key_string = "|".join(str(arg) for arg in args)
    return hashlib.sha256(key_string.encode()).hexdigest()


def generate_unique_key() -> str:
    """Generate a unique random key."""
    return uuid.uuid4().hex


class CircuitBreaker:
    """
    Fail-fast guard around a collaborator that keeps erroring.

    After ``failure_threshold`` consecutive failures the breaker opens and
    calls are refused until ``recovery_timeout`` seconds have passed. It then
    lets up to ``half_open_max_calls`` trial calls through; that many
    successes close it again, any failure re-opens it.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        half_open_max_calls: int = 3,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self.reset()

    def reset(self) -> None:
        """Close the breaker and forget past failures."""
        self.state = self.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[datetime] = None
        self.half_open_successes = 0

    def _move_to(self, state: str) -> None:
        LOGGER.info(f"Circuit breaker {self.name}: {self.state} -> {state}")
        self.state = state
        if state == self.OPEN:
            self.opened_at = utcnow()
        elif state == self.HALF_OPEN:
            self.half_open_successes = 0
        else:
            self.failure_count = 0
            self.opened_at = None

    def can_execute(self) -> bool:
        """Whether the next call may go out."""
        if self.state == self.OPEN:
            elapsed = (utcnow() - self.opened_at).total_seconds() if self.opened_at else 0
            if elapsed < self.recovery_timeout:
                return False
            self._move_to(self.HALF_OPEN)
        if self.state == self.HALF_OPEN:
            return self.half_open_successes < self.half_open_max_calls
        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            self.half_open_successes += 1
            if self.half_open_successes >= self.half_open_max_calls:
                self._move_to(self.CLOSED)
        else:
            self.failure_count = 0

    def record_failure(self) -> None:
        self.failure_count += 1
        if self.state == self.HALF_OPEN or (
            self.state == self.CLOSED and self.failure_count >= self.failure_threshold
        ):
            self._move_to(self.OPEN)

    def to_dict(self) -> Dict[str, Any]:
        """State summary for the health endpoint."""
        return {
            "name": self.name,
            "state": self.state,
            "failure_count": self.failure_count,
            "opened_at": isoformat(self.opened_at),
        }


__all__ = [
    "utcnow",
    "ensure_aware",
    "isoformat",
    "generate_idempotency_key",
    "generate_unique_key",
    "CircuitBreaker",
]
