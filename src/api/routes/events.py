"""Listing timeline routes for polling clients."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from api.deps import get_timeline
from domain.listings import ListingStore
from services.timeline import TimelineService, event_to_dict

router = APIRouter()


@router.get("/{listing_id}/events")
def list_events(
    listing_id: int,
    event_type: Optional[str] = Query(None, description="Only this event type"),
    limit: int = Query(50, ge=1, le=500),
    timeline: TimelineService = Depends(get_timeline),
) -> Dict[str, Any]:
    """Audit trail of workflow activity on a listing, newest first."""
    ListingStore(timeline.session).get(listing_id)
    events = timeline.get_listing_timeline(listing_id, limit=limit, event_type=event_type)
    return {
        "listing_id": listing_id,
        "events": [event_to_dict(e) for e in events],
    }
