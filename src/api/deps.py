"""Database session and service dependencies for FastAPI routes."""
from __future__ import annotations

from typing import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from core.db import SessionLocal
from domain.defects import DefectTracker
from domain.inspection import InspectionChecklistEngine
from domain.listings import ListingService
from domain.purchase import PurchaseStateMachine
from services.notification import NotificationService
from services.projection import ProjectionReader
from services.timeline import TimelineService


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency that provides a database session.

    The session commits when the route returns and rolls back if it raises,
    so a transition and its projection writes land together.

    Yields:
        SQLAlchemy Session instance.
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_readonly_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency that provides a read-only database session.

    Yields:
        SQLAlchemy Session instance (always rolled back).
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


def get_listing_service(db: Session = Depends(get_db)) -> ListingService:
    return ListingService(db)


def get_state_machine(db: Session = Depends(get_db)) -> PurchaseStateMachine:
    return PurchaseStateMachine(db)


def get_checklist_engine(db: Session = Depends(get_db)) -> InspectionChecklistEngine:
    return InspectionChecklistEngine(db)


def get_defect_tracker(db: Session = Depends(get_db)) -> DefectTracker:
    return DefectTracker(db)


def get_notification_service(db: Session = Depends(get_db)) -> NotificationService:
    return NotificationService(db)


def get_projection_reader(db: Session = Depends(get_readonly_db)) -> ProjectionReader:
    return ProjectionReader(db)


def get_timeline(db: Session = Depends(get_readonly_db)) -> TimelineService:
    return TimelineService(db)


__all__ = [
    "get_db",
    "get_readonly_db",
    "get_listing_service",
    "get_state_machine",
    "get_checklist_engine",
    "get_defect_tracker",
    "get_notification_service",
    "get_projection_reader",
    "get_timeline",
]
