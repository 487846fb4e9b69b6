"""Domain layer for the property purchase workflow.

All workflow operations go through these services; the API and CLI only
translate requests into calls on them.
"""
from __future__ import annotations

from .listings import (
    ListingService,
    ListingStore,
    ListingSummary,
    TransitionResult,
    purchase_state,
    resolve_role,
)
from .purchase import PurchaseStateMachine, REQUIRED_DOCUMENTS, OPTIONAL_DOCUMENTS
from .inspection import InspectionChecklistEngine, checklist_item_to_dict
from .defects import DefectTracker, PhotoUpload, defect_to_dict

__all__ = [
    # Listings
    "ListingService",
    "ListingStore",
    "ListingSummary",
    "TransitionResult",
    "purchase_state",
    "resolve_role",
    # Purchase workflow
    "PurchaseStateMachine",
    "REQUIRED_DOCUMENTS",
    "OPTIONAL_DOCUMENTS",
    # Inspection
    "InspectionChecklistEngine",
    "checklist_item_to_dict",
    "DefectTracker",
    "PhotoUpload",
    "defect_to_dict",
]
