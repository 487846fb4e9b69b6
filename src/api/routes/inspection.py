"""Inspection checklist and defect routes."""
from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from api.deps import get_checklist_engine, get_defect_tracker, get_readonly_db
from core.logging_config import get_logger
from domain.defects import DefectTracker, PhotoUpload, defect_to_dict, photo_to_dict
from domain.inspection import InspectionChecklistEngine, checklist_item_to_dict
from services.notification import notification_to_dict

router = APIRouter()
LOGGER = get_logger(__name__)


# =============================================================================
# Pydantic Models
# =============================================================================


class ChecklistItemCreate(BaseModel):
    """Request body for adding a checklist item."""

    caller_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    description: Optional[str] = None


class ChecklistItemUpdate(BaseModel):
    caller_id: str = Field(..., min_length=1)
    title: Optional[str] = None
    description: Optional[str] = None


class StatusUpdate(BaseModel):
    """Request body for a checklist or defect status change."""

    caller_id: str = Field(..., min_length=1)
    status: str = Field(..., description="New status")


class DefectCreate(BaseModel):
    """Request body for reporting a defect."""

    caller_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    location: Optional[str] = None
    description: Optional[str] = None
    expected_completion: Optional[date] = None
    owner: Optional[str] = Field(None, description="Who is responsible for the fix")
    checklist_item_id: Optional[int] = None


class DefectUpdate(BaseModel):
    caller_id: str = Field(..., min_length=1)
    title: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    expected_completion: Optional[date] = None
    owner: Optional[str] = None


class ReminderRequest(BaseModel):
    caller_id: str = Field(..., min_length=1)
    note: Optional[str] = Field(None, max_length=500)


# =============================================================================
# Checklist Routes
# =============================================================================


@router.get("/listings/{listing_id}/checklist")
def list_checklist(
    listing_id: int,
    include_history: bool = Query(False, description="Include items from cancelled purchases"),
    db: Session = Depends(get_readonly_db),
) -> List[Dict[str, Any]]:
    """Checklist items for the current purchase."""
    engine = InspectionChecklistEngine(db)
    return [checklist_item_to_dict(i) for i in engine.list_checklist(listing_id, include_history)]


@router.post("/listings/{listing_id}/checklist")
def add_checklist_item(
    listing_id: int,
    body: ChecklistItemCreate,
    engine: InspectionChecklistEngine = Depends(get_checklist_engine),
) -> Dict[str, Any]:
    """Add a pending checklist item."""
    item = engine.add_item(listing_id, body.caller_id, body.title, body.description)
    return checklist_item_to_dict(item)


@router.post("/checklist/{item_id}/status")
def set_checklist_status(
    item_id: int,
    body: StatusUpdate,
    engine: InspectionChecklistEngine = Depends(get_checklist_engine),
) -> Dict[str, Any]:
    """Mark a checklist item passed or flagged."""
    return checklist_item_to_dict(engine.set_status(item_id, body.status, body.caller_id))


@router.patch("/checklist/{item_id}")
def update_checklist_item(
    item_id: int,
    body: ChecklistItemUpdate,
    engine: InspectionChecklistEngine = Depends(get_checklist_engine),
) -> Dict[str, Any]:
    item = engine.update_item_details(item_id, body.caller_id, body.title, body.description)
    return checklist_item_to_dict(item)


# =============================================================================
# Defect Routes
# =============================================================================


@router.get("/listings/{listing_id}/defects")
def list_defects(
    listing_id: int,
    status: Optional[str] = Query(None, description="Filter by status"),
    include_history: bool = Query(False, description="Include defects from cancelled purchases"),
    db: Session = Depends(get_readonly_db),
) -> List[Dict[str, Any]]:
    """Defects for the current purchase."""
    tracker = DefectTracker(db)
    return [defect_to_dict(d) for d in tracker.list_defects(listing_id, include_history, status)]


@router.post("/listings/{listing_id}/defects")
def report_defect(
    listing_id: int,
    body: DefectCreate,
    tracker: DefectTracker = Depends(get_defect_tracker),
) -> Dict[str, Any]:
    """Report a new defect."""
    issue = tracker.report(listing_id, **body.model_dump())
    return defect_to_dict(issue)


@router.post("/defects/{issue_id}/status")
def advance_defect(
    issue_id: int,
    body: StatusUpdate,
    tracker: DefectTracker = Depends(get_defect_tracker),
) -> Dict[str, Any]:
    """Move a defect to a new status."""
    return defect_to_dict(tracker.advance(issue_id, body.status, body.caller_id))


@router.patch("/defects/{issue_id}")
def update_defect(
    issue_id: int,
    body: DefectUpdate,
    tracker: DefectTracker = Depends(get_defect_tracker),
) -> Dict[str, Any]:
    changes = body.model_dump(exclude={"caller_id"}, exclude_none=True)
    return defect_to_dict(tracker.update_details(issue_id, body.caller_id, **changes))


@router.post("/defects/{issue_id}/photos")
def attach_defect_photos(
    issue_id: int,
    caller_id: str = Form(...),
    kind: str = Form(..., description="before or after"),
    files: List[UploadFile] = File(...),
    tracker: DefectTracker = Depends(get_defect_tracker),
) -> Dict[str, Any]:
    """Upload before/after photos for a defect."""
    uploads = [
        PhotoUpload(
            filename=f.filename or "photo",
            data=f.file.read(),
            content_type=f.content_type or "application/octet-stream",
        )
        for f in files
    ]
    photos = tracker.attach_photos(issue_id, kind, uploads, caller_id)
    return {"issue_id": issue_id, "photos": [photo_to_dict(p) for p in photos]}


@router.post("/defects/{issue_id}/remind")
def remind_defect(
    issue_id: int,
    body: ReminderRequest,
    tracker: DefectTracker = Depends(get_defect_tracker),
) -> Dict[str, Any]:
    """Send the other party a reminder about a defect."""
    return notification_to_dict(tracker.remind(issue_id, body.caller_id, body.note))
