"""Inspection notification feed routes."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from api.deps import get_db, get_readonly_db
from core.models import ParticipantRole
from domain.listings import ListingStore, resolve_role
from services.notification import NotificationService, notification_to_dict

router = APIRouter()


class MarkReadRequest(BaseModel):
    """Request body for marking feed entries read."""

    caller_id: str = Field(..., min_length=1)
    notification_ids: List[int] = Field(default_factory=list)


@router.get("/{listing_id}/notifications")
def list_notifications(
    listing_id: int,
    role: Optional[ParticipantRole] = Query(None, description="Only entries addressed to this side"),
    include_history: bool = Query(False, description="Include entries from cancelled purchases"),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_readonly_db),
) -> Dict[str, Any]:
    """The listing's inspection feed, newest first."""
    listing = ListingStore(db).get(listing_id)
    entries = NotificationService(db).list_notifications(listing, role, include_history, limit)
    unread_field = "read_by_buyer" if role == ParticipantRole.BUYER else "read_by_seller"
    return {
        "listing_id": listing_id,
        "unread": sum(1 for e in entries if role is not None and not getattr(e, unread_field)),
        "notifications": [notification_to_dict(e) for e in entries],
    }


@router.post("/{listing_id}/notifications/read")
def mark_notifications_read(
    listing_id: int,
    body: MarkReadRequest,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Mark entries read for the caller's side."""
    listing = ListingStore(db).get(listing_id)
    role = resolve_role(listing, body.caller_id)
    updated = NotificationService(db).mark_read(listing_id, body.notification_ids, role)
    return {"listing_id": listing_id, "updated": updated}
