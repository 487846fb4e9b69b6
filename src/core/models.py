"""SQLAlchemy ORM models for the homeflow transaction coordinator."""
from __future__ import annotations

import enum
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base
from core.utils import utcnow


# =============================================================================
# Enums
# =============================================================================


class PurchaseState(str, enum.Enum):
    """Purchase workflow states, derived from the listing flags."""
    AVAILABLE = "available"
    PROPOSED_TO_BUYER = "proposed_to_buyer"
    BUYER_CONFIRMED = "buyer_confirmed"
    SELLER_DOCUMENTS_CONFIRMED = "seller_documents_confirmed"
    HANDOVER_SCHEDULED = "handover_scheduled"
    COMPLETED = "completed"


class ParticipantRole(str, enum.Enum):
    """Which side of the purchase a participant is on."""
    BUYER = "buyer"
    SELLER = "seller"


class ChecklistStatus(str, enum.Enum):
    """Inspection checklist item statuses."""
    PENDING = "pending"
    PASSED = "passed"
    ISSUE = "issue"


class DefectStatus(str, enum.Enum):
    """Defect issue lifecycle."""
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    VERIFIED = "verified"
    COMPLETED = "completed"


class PhotoKind(str, enum.Enum):
    """Defect photo slot."""
    BEFORE = "before"
    AFTER = "after"


class NotificationCategory(str, enum.Enum):
    """Inspection feed categories."""
    GENERAL = "general"
    SCHEDULE = "schedule"
    CHECKLIST = "checklist"
    ISSUE = "issue"
    NOTE = "note"


class NotificationAudience(str, enum.Enum):
    """Who an inspection notification is addressed to."""
    BUYER = "buyer"
    SELLER = "seller"
    ALL = "all"


class ProjectionKind(str, enum.Enum):
    """Per-participant projection locations."""
    SELLER = "seller"
    BUYER = "buyer"


class ProjectionAction(str, enum.Enum):
    UPSERT = "upsert"
    DELETE = "delete"


class OutboxStatus(str, enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


# =============================================================================
# Listing Model (canonical record)
# =============================================================================


class Listing(Base):
    """
    The single authoritative record of a property and its purchase flags.

    ``version`` is bumped on every UPDATE; a flush that finds a different
    version in the database raises ``StaleDataError``.
    """
    __tablename__ = "listing"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Display attributes, opaque to the workflow
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[Optional[float]] = mapped_column(Numeric(14, 2), nullable=True)
    transaction_type: Mapped[str] = mapped_column(String(20), default="sale", nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    province: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    photos: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    # Purchase workflow flags
    is_under_purchase: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    confirmed_buyer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    purchase_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    buyer_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    buyer_confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    seller_documents_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    acknowledged_documents: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    handover_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    handover_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    handover_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_inspection_update_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_inspection_update_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __mapper_args__ = {"version_id_col": version}

    checklist_items: Mapped[List["InspectionChecklistItem"]] = relationship(
        "InspectionChecklistItem", back_populates="listing"
    )
    defects: Mapped[List["DefectIssue"]] = relationship("DefectIssue", back_populates="listing")

    @property
    def thumbnail_url(self) -> Optional[str]:
        """First photo, used as the buyer-side thumbnail."""
        return self.photos[0] if self.photos else None


# =============================================================================
# Participant Projections
# =============================================================================


class SellerListingProjection(Base):
    """The seller's own-listings copy of a listing's workflow flags."""
    __tablename__ = "seller_listing_projection"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    listing_id: Mapped[int] = mapped_column(ForeignKey("listing.id"), nullable=False)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Optional[float]] = mapped_column(Numeric(14, 2), nullable=True)
    is_under_purchase: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    confirmed_buyer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    buyer_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    seller_documents_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    handover_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    last_operation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("seller_id", "listing_id", name="uq_seller_projection_listing"),
    )


class BuyerPropertyProjection(Base):
    """
    The buyer's purchased-properties copy.

    Created when the buyer confirms; display fields are a snapshot taken at
    confirmation time, workflow flags follow the canonical listing.
    """
    __tablename__ = "buyer_property_projection"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    listing_id: Mapped[int] = mapped_column(ForeignKey("listing.id"), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Snapshot
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Optional[float]] = mapped_column(Numeric(14, 2), nullable=True)
    transaction_type: Mapped[str] = mapped_column(String(20), default="sale", nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    province: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    seller_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    seller_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    seller_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Workflow flags
    is_under_purchase: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    buyer_confirmed: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    seller_documents_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    handover_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    handover_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    handover_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_inspection_update_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_inspection_update_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    last_operation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("buyer_id", "listing_id", name="uq_buyer_projection_listing"),
    )


# =============================================================================
# Inspection Models
# =============================================================================


class InspectionChecklistItem(Base):
    """A shared inspection checklist entry. Never deleted."""
    __tablename__ = "inspection_checklist_item"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_id: Mapped[int] = mapped_column(ForeignKey("listing.id"), nullable=False, index=True)
    purchase_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(10), nullable=False)
    created_by_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=ChecklistStatus.PENDING.value, nullable=False)
    last_updated_by: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    listing: Mapped["Listing"] = relationship("Listing", back_populates="checklist_items")


class DefectIssue(Base):
    """A reported defect. Issues are permanent audit records."""
    __tablename__ = "defect_issue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_id: Mapped[int] = mapped_column(ForeignKey("listing.id"), nullable=False, index=True)
    purchase_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    checklist_item_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("inspection_checklist_item.id"), nullable=True
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=DefectStatus.PENDING.value, nullable=False)
    owner: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reported_by: Mapped[str] = mapped_column(String(10), nullable=False)
    reported_by_id: Mapped[str] = mapped_column(String(64), nullable=False)
    expected_completion: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    reported_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    listing: Mapped["Listing"] = relationship("Listing", back_populates="defects")
    photos: Mapped[List["DefectPhoto"]] = relationship(
        "DefectPhoto", back_populates="issue", order_by="DefectPhoto.id"
    )

    __table_args__ = (
        Index("ix_defect_listing_status", "listing_id", "status"),
    )


class DefectPhoto(Base):
    """Before/after evidence attached to a defect."""
    __tablename__ = "defect_photo"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    issue_id: Mapped[int] = mapped_column(ForeignKey("defect_issue.id"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(10), nullable=False)
    url: Mapped[str] = mapped_column(String(1000), nullable=False)
    storage_path: Mapped[str] = mapped_column(String(500), nullable=False)
    uploaded_by: Mapped[str] = mapped_column(String(64), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    issue: Mapped["DefectIssue"] = relationship("DefectIssue", back_populates="photos")


class InspectionNotification(Base):
    """Per-listing inspection feed entry shown to buyer and/or seller."""
    __tablename__ = "inspection_notification"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_id: Mapped[int] = mapped_column(ForeignKey("listing.id"), nullable=False, index=True)
    purchase_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(20), default=NotificationCategory.GENERAL.value)
    audience: Mapped[str] = mapped_column(String(10), default=NotificationAudience.ALL.value)
    triggered_by: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    triggered_by_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    related_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    read_by_buyer: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_by_seller: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


# =============================================================================
# Consistency & Audit Models
# =============================================================================


class ProjectionOutbox(Base):
    """
    A projection write that did not land within the retry budget.

    Rows are written in the same transaction as the canonical change and
    drained by reconciliation.
    """
    __tablename__ = "projection_outbox"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_id: Mapped[int] = mapped_column(ForeignKey("listing.id"), nullable=False, index=True)
    operation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    target_kind: Mapped[str] = mapped_column(String(10), nullable=False)
    participant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(10), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    status: Mapped[str] = mapped_column(String(10), default=OutboxStatus.PENDING.value, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_outbox_status_created", "status", "created_at"),
    )


class ListingEvent(Base):
    """Audit trail of workflow activity on a listing."""
    __tablename__ = "listing_event"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_id: Mapped[int] = mapped_column(ForeignKey("listing.id"), nullable=False, index=True)

    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    operation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    event_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
