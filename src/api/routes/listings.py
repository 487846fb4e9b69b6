"""Listing and purchase workflow routes."""
from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from api.deps import get_listing_service, get_readonly_db, get_state_machine
from core.logging_config import get_logger
from core.models import ParticipantRole
from domain.listings import ListingService, TransitionResult
from domain.purchase import PurchaseStateMachine

router = APIRouter()
LOGGER = get_logger(__name__)


# =============================================================================
# Pydantic Models
# =============================================================================


class ListingCreate(BaseModel):
    """Request body for creating a listing."""

    owner_id: str = Field(..., min_length=1, description="Seller's participant id")
    title: str = Field(..., min_length=1, description="Listing title")
    description: Optional[str] = Field(None, description="Free text description")
    price: Optional[float] = Field(None, ge=0, description="Asking price")
    transaction_type: str = Field("sale", description="sale or rent")
    address: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    photos: List[str] = Field(default_factory=list, description="Photo URLs, first is the thumbnail")


class ListingUpdate(BaseModel):
    """Request body for editing listing display fields."""

    caller_id: str = Field(..., min_length=1)
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    transaction_type: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    photos: Optional[List[str]] = None


class CallerRequest(BaseModel):
    """Request body carrying only the acting participant."""

    caller_id: str = Field(..., min_length=1, description="Acting participant id")


class ProposeBuyerRequest(CallerRequest):
    buyer_id: str = Field(..., min_length=1, description="Buyer being selected")


class ConfirmDocumentsRequest(CallerRequest):
    documents: List[str] = Field(default_factory=list, description="Acknowledged document ids")


class HandoverRequest(CallerRequest):
    handover_date: date = Field(..., description="Handover date (YYYY-MM-DD)")
    note: Optional[str] = Field(None, description="Note for the buyer")


class CancelRequest(CallerRequest):
    initiator: ParticipantRole = Field(..., description="buyer or seller")


def transition_response(result: TransitionResult) -> JSONResponse:
    """200 when everything landed, 202 when participant views are still catching up."""
    return JSONResponse(status_code=202 if result.degraded else 200, content=result.to_dict())


# =============================================================================
# Listing Routes
# =============================================================================


@router.post("")
def create_listing(
    body: ListingCreate,
    service: ListingService = Depends(get_listing_service),
) -> JSONResponse:
    """Create a new available listing."""
    result = service.create_listing(**body.model_dump())
    return transition_response(result)


@router.get("")
def list_listings(
    owner_id: Optional[str] = Query(None, description="Only this seller's listings"),
    available_only: bool = Query(False, description="Only listings without a purchase"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_readonly_db),
) -> List[Dict[str, Any]]:
    """List listings with optional filtering."""
    service = ListingService(db)
    return [
        summary.to_dict()
        for summary in service.list_listings(owner_id, available_only, limit, offset)
    ]


@router.get("/{listing_id}")
def get_listing(
    listing_id: int,
    db: Session = Depends(get_readonly_db),
) -> Dict[str, Any]:
    """Get the canonical listing and its purchase state."""
    return ListingService(db).get_listing(listing_id).to_dict()


@router.patch("/{listing_id}")
def update_listing(
    listing_id: int,
    body: ListingUpdate,
    service: ListingService = Depends(get_listing_service),
) -> JSONResponse:
    """Edit display fields (owner only)."""
    changes = body.model_dump(exclude={"caller_id"}, exclude_none=True)
    result = service.update_attributes(listing_id, body.caller_id, **changes)
    return transition_response(result)


# =============================================================================
# Purchase Workflow Routes
# =============================================================================


@router.post("/{listing_id}/purchase/propose")
def propose_buyer(
    listing_id: int,
    body: ProposeBuyerRequest,
    machine: PurchaseStateMachine = Depends(get_state_machine),
) -> JSONResponse:
    """Seller selects a buyer."""
    return transition_response(machine.propose_buyer(listing_id, body.buyer_id, body.caller_id))


@router.post("/{listing_id}/purchase/confirm-buyer")
def confirm_buyer(
    listing_id: int,
    body: CallerRequest,
    machine: PurchaseStateMachine = Depends(get_state_machine),
) -> JSONResponse:
    """Selected buyer confirms the purchase."""
    return transition_response(machine.confirm_as_buyer(listing_id, body.caller_id))


@router.post("/{listing_id}/purchase/confirm-documents")
def confirm_documents(
    listing_id: int,
    body: ConfirmDocumentsRequest,
    machine: PurchaseStateMachine = Depends(get_state_machine),
) -> JSONResponse:
    """Seller confirms the document set."""
    result = machine.confirm_documents_as_seller(listing_id, body.caller_id, body.documents)
    return transition_response(result)


@router.post("/{listing_id}/purchase/handover")
def schedule_handover(
    listing_id: int,
    body: HandoverRequest,
    machine: PurchaseStateMachine = Depends(get_state_machine),
) -> JSONResponse:
    """Seller schedules or reschedules the handover."""
    result = machine.schedule_handover(listing_id, body.caller_id, body.handover_date, body.note)
    return transition_response(result)


@router.post("/{listing_id}/purchase/complete")
def complete_handover(
    listing_id: int,
    body: CallerRequest,
    machine: PurchaseStateMachine = Depends(get_state_machine),
) -> JSONResponse:
    """Seller records the completed handover."""
    return transition_response(machine.complete_handover(listing_id, body.caller_id))


@router.post("/{listing_id}/purchase/cancel")
def cancel_purchase(
    listing_id: int,
    body: CancelRequest,
    machine: PurchaseStateMachine = Depends(get_state_machine),
) -> JSONResponse:
    """Either party cancels the purchase."""
    return transition_response(machine.cancel(listing_id, body.initiator, body.caller_id))
