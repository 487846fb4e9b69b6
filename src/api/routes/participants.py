"""Participant projection routes (seller's listings, buyer's purchases)."""
from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from api.deps import get_projection_reader
from services.projection import (
    ProjectionReader,
    buyer_projection_to_dict,
    seller_projection_to_dict,
)

router = APIRouter()


@router.get("/{seller_id}/listings")
def list_seller_listings(
    seller_id: str,
    reader: ProjectionReader = Depends(get_projection_reader),
) -> List[Dict[str, Any]]:
    """The seller's own-listings view."""
    return [seller_projection_to_dict(row) for row in reader.list_seller_projections(seller_id)]


@router.get("/{seller_id}/listings/{listing_id}")
def get_seller_listing(
    seller_id: str,
    listing_id: int,
    reader: ProjectionReader = Depends(get_projection_reader),
) -> Dict[str, Any]:
    return seller_projection_to_dict(reader.get_seller_projection(seller_id, listing_id))


@router.get("/{buyer_id}/purchases")
def list_buyer_purchases(
    buyer_id: str,
    reader: ProjectionReader = Depends(get_projection_reader),
) -> List[Dict[str, Any]]:
    """The buyer's purchased-properties view."""
    return [buyer_projection_to_dict(row) for row in reader.list_buyer_projections(buyer_id)]


@router.get("/{buyer_id}/purchases/{listing_id}")
def get_buyer_purchase(
    buyer_id: str,
    listing_id: int,
    reader: ProjectionReader = Depends(get_projection_reader),
) -> Dict[str, Any]:
    return buyer_projection_to_dict(reader.get_buyer_projection(buyer_id, listing_id))
