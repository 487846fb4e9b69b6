"""API route modules."""
from __future__ import annotations

from . import (
    events,
    health,
    inspection,
    listings,
    notifications,
    participants,
)

__all__ = [
    "events",
    "health",
    "inspection",
    "listings",
    "notifications",
    "participants",
]
