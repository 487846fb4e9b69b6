"""Defect tracking with before/after photo evidence."""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from core.exceptions import ConflictError, ExternalServiceError, NotFoundError, ValidationError
from core.logging_config import get_logger
from core.models import (
    DefectIssue,
    DefectPhoto,
    DefectStatus,
    InspectionChecklistItem,
    InspectionNotification,
    Listing,
    NotificationAudience,
    NotificationCategory,
    ParticipantRole,
    PhotoKind,
)
from core.utils import isoformat, utcnow
from domain.listings import ListingStore, counterpart, resolve_role
from services.change_feed import ChangeEvent, ChangeFeed, get_change_feed
from services.notification import NotificationService
from services.storage import StorageClient, get_storage_client
from services.timeline import TimelineEventType, TimelineService

LOGGER = get_logger(__name__)

# Older clients send these names
STATUS_ALIASES = {
    "buyer-review": DefectStatus.VERIFIED.value,
    "in_progress": DefectStatus.IN_PROGRESS.value,
}
EDITABLE_FIELDS = ("title", "location", "description", "owner", "expected_completion")
MAX_PHOTOS_PER_UPLOAD = 10


def parse_defect_status(value: Any) -> DefectStatus:
    value = STATUS_ALIASES.get(value, value)
    try:
        return DefectStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in DefectStatus)
        raise ValidationError(f"Unknown defect status '{value}' (expected one of {allowed})")


def _safe_filename(filename: str) -> str:
    name = re.sub(r"[^A-Za-z0-9._-]+", "-", filename or "").strip("-.")
    return name or "photo"


@dataclass
class PhotoUpload:
    """A photo file waiting to be stored."""

    filename: str
    data: bytes
    content_type: str = "image/jpeg"


class DefectTracker:
    """
    Defect issues raised during inspection.

    Status may move in any direction; ``resolved_at`` is stamped the first
    time an issue reaches completed and kept afterwards. Defects of a
    cancelled purchase stay readable but can no longer be changed.
    """

    def __init__(
        self,
        session: Session,
        storage: Optional[StorageClient] = None,
        notifications: Optional[NotificationService] = None,
        timeline: Optional[TimelineService] = None,
        feed: Optional[ChangeFeed] = None,
    ):
        self.session = session
        self.store = ListingStore(session)
        self.storage = storage or get_storage_client()
        self.notifications = notifications or NotificationService(session)
        self.timeline = timeline or TimelineService(session)
        self.feed = feed or get_change_feed()

    def get_issue(self, issue_id: int) -> DefectIssue:
        issue = self.session.get(DefectIssue, issue_id)
        if issue is None:
            raise NotFoundError(f"Defect {issue_id} not found", issue_id=issue_id)
        return issue

    def report(
        self,
        listing_id: int,
        caller_id: str,
        title: str,
        location: Optional[str] = None,
        description: Optional[str] = None,
        expected_completion: Optional[date] = None,
        owner: Optional[str] = None,
        checklist_item_id: Optional[int] = None,
    ) -> DefectIssue:
        """
        Report a new defect in pending status.

        Args:
            listing_id: Listing the defect was found on.
            caller_id: Reporting participant; must be the seller or buyer.
            title: Short name of the defect.
            location: Where in the property.
            description: Free text.
            expected_completion: When the fix is expected.
            owner: Who is responsible for fixing it.
            checklist_item_id: Checklist item the defect was found under.

        Raises:
            ValidationError: If the title is blank.
            NotFoundError: If the checklist item is not on this listing.
        """
        title = (title or "").strip()
        if not title:
            raise ValidationError("A defect needs a title")

        listing = self.store.get(listing_id)
        role = resolve_role(listing, caller_id)
        if checklist_item_id is not None:
            item = self.session.get(InspectionChecklistItem, checklist_item_id)
            if item is None or item.listing_id != listing.id:
                raise NotFoundError(
                    f"Checklist item {checklist_item_id} is not part of listing {listing.id}",
                    checklist_item_id=checklist_item_id,
                )

        now = utcnow()
        issue = DefectIssue(
            listing_id=listing.id,
            purchase_id=listing.purchase_id,
            checklist_item_id=checklist_item_id,
            title=title,
            location=location,
            description=description,
            status=DefectStatus.PENDING.value,
            owner=owner,
            reported_by=role.value,
            reported_by_id=caller_id,
            expected_completion=expected_completion,
            reported_at=now,
            updated_at=now,
        )
        self.session.add(issue)
        self.session.flush()

        where = f" ({location})" if location else ""
        self._record(
            listing, issue, role, caller_id,
            event_type=TimelineEventType.DEFECT_REPORTED,
            headline="New defect reported",
            message=f"The {role.value} reported \"{issue.title}\"{where}.",
        )
        return issue

    def advance(self, issue_id: int, new_status: Any, caller_id: str) -> DefectIssue:
        """
        Move a defect to ``new_status``.

        Raises:
            ValidationError: If the status is unknown.
        """
        status = parse_defect_status(new_status)
        issue = self.get_issue(issue_id)
        listing = self.store.get(issue.listing_id)
        role = resolve_role(listing, caller_id)
        self._require_current(listing, issue)
        if issue.status == status.value:
            return issue

        previous = issue.status
        now = utcnow()
        issue.status = status.value
        issue.updated_at = now
        if status == DefectStatus.COMPLETED and issue.resolved_at is None:
            issue.resolved_at = now
        self.session.flush()

        self._record(
            listing, issue, role, caller_id,
            event_type=TimelineEventType.DEFECT_STATUS_CHANGED,
            headline="Defect updated",
            message=f"\"{issue.title}\" moved from {previous} to {status.value}.",
            metadata={"from": previous, "to": status.value},
        )
        return issue

    def update_details(self, issue_id: int, caller_id: str, **changes: Any) -> DefectIssue:
        """Edit descriptive fields. Status and photos have their own operations."""
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown defect fields: {', '.join(sorted(unknown))}")
        issue = self.get_issue(issue_id)
        listing = self.store.get(issue.listing_id)
        resolve_role(listing, caller_id)
        self._require_current(listing, issue)

        changes = {k: v for k, v in changes.items() if v is not None}
        if "title" in changes:
            changes["title"] = changes["title"].strip()
            if not changes["title"]:
                raise ValidationError("A defect needs a title")
        if not changes:
            return issue

        for name, value in changes.items():
            setattr(issue, name, value)
        issue.updated_at = utcnow()
        self.session.flush()
        return issue

    def attach_photos(
        self,
        issue_id: int,
        kind: Any,
        files: Sequence[PhotoUpload],
        caller_id: str,
    ) -> List[DefectPhoto]:
        """
        Upload photos and attach them to a defect.

        Either every photo is attached or none are; objects already stored
        are deleted again when a later upload fails.

        Raises:
            ValidationError: On an unknown kind, no files, or too many files.
            ServiceUnavailableError: If attachment storage is not configured.
            StorageError: If an upload fails.
        """
        try:
            kind = PhotoKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown photo kind '{kind}' (expected before or after)")
        if not files:
            raise ValidationError("No photos to attach")
        if len(files) > MAX_PHOTOS_PER_UPLOAD:
            raise ValidationError(f"At most {MAX_PHOTOS_PER_UPLOAD} photos can be attached at once")

        issue = self.get_issue(issue_id)
        listing = self.store.get(issue.listing_id)
        role = resolve_role(listing, caller_id)
        self._require_current(listing, issue)

        stored: List[tuple] = []
        try:
            for upload in files:
                path = (
                    f"inspection/{listing.id}/issues/{issue.id}/{kind.value}/"
                    f"{uuid.uuid4().hex}-{_safe_filename(upload.filename)}"
                )
                url = self.storage.upload_attachment(path, upload.data, upload.content_type)
                stored.append((path, url))
        except ExternalServiceError:
            self._discard_uploads([path for path, _ in stored])
            raise

        now = utcnow()
        photos = []
        for path, url in stored:
            photo = DefectPhoto(
                kind=kind.value,
                url=url,
                storage_path=path,
                uploaded_by=caller_id,
                uploaded_at=now,
            )
            issue.photos.append(photo)
            photos.append(photo)
        issue.updated_at = now
        self.session.flush()

        self._record(
            listing, issue, role, caller_id,
            event_type=TimelineEventType.DEFECT_PHOTOS_ADDED,
            headline=f"{kind.value.capitalize()} photos added",
            message=f"The {role.value} added {len(photos)} {kind.value} photo(s) to \"{issue.title}\".",
            metadata={"photos": len(photos), "kind": kind.value},
            audience=NotificationAudience.SELLER if kind == PhotoKind.BEFORE else NotificationAudience.BUYER,
        )
        return photos

    def remind(self, issue_id: int, caller_id: str, note: Optional[str] = None) -> InspectionNotification:
        """Nudge the other party about an open defect."""
        issue = self.get_issue(issue_id)
        listing = self.store.get(issue.listing_id)
        role = resolve_role(listing, caller_id)
        self._require_current(listing, issue)

        message = f"Reminder about \"{issue.title}\" (status: {issue.status})."
        if note:
            message += f" {note}"
        return self.notifications.notify(
            listing,
            title="Defect reminder",
            message=message,
            category=NotificationCategory.NOTE,
            audience=counterpart(role),
            triggered_by=role,
            triggered_by_id=caller_id,
            related_id=issue.id,
        )

    def list_defects(
        self,
        listing_id: int,
        include_history: bool = False,
        status: Optional[Any] = None,
    ) -> List[DefectIssue]:
        """Defects for the listing's current purchase, most recently touched first."""
        listing = self.store.get(listing_id)
        query = self.session.query(DefectIssue).filter(DefectIssue.listing_id == listing.id)
        if not include_history:
            query = query.filter(DefectIssue.purchase_id == listing.purchase_id)
        if status is not None:
            query = query.filter(DefectIssue.status == parse_defect_status(status).value)
        return query.order_by(DefectIssue.updated_at.desc(), DefectIssue.id.desc()).all()

    @staticmethod
    def _require_current(listing: Listing, issue: DefectIssue) -> None:
        if issue.purchase_id != listing.purchase_id:
            raise ConflictError(
                "This defect belongs to a cancelled purchase",
                issue_id=issue.id,
                listing_id=listing.id,
            )

    def _discard_uploads(self, paths: List[str]) -> None:
        for path in paths:
            try:
                self.storage.delete_attachment(path)
            except ExternalServiceError as e:
                LOGGER.warning(f"Could not remove orphaned upload {path}: {e}")

    def _record(
        self,
        listing: Listing,
        issue: DefectIssue,
        role: ParticipantRole,
        caller_id: str,
        event_type: str,
        headline: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        audience: Optional[NotificationAudience] = None,
    ) -> None:
        self.notifications.notify(
            listing,
            title=headline,
            message=message,
            category=NotificationCategory.ISSUE,
            audience=audience or counterpart(role),
            triggered_by=role,
            triggered_by_id=caller_id,
            related_id=issue.id,
        )
        self.timeline.add_event(
            listing.id,
            event_type,
            title=headline,
            description=message,
            actor_id=caller_id,
            metadata={"issue_id": issue.id, **(metadata or {})},
        )
        self.feed.publish_after_commit(
            self.session,
            ChangeEvent(listing.id, event_type, payload={"issue_id": issue.id, "status": issue.status}),
        )
        LOGGER.info(f"{event_type}: defect {issue.id} on listing {listing.id}")


def photo_to_dict(photo: DefectPhoto) -> Dict[str, Any]:
    return {
        "id": photo.id,
        "kind": photo.kind,
        "url": photo.url,
        "uploaded_by": photo.uploaded_by,
        "uploaded_at": isoformat(photo.uploaded_at),
    }


def defect_to_dict(issue: DefectIssue) -> Dict[str, Any]:
    photos = [photo_to_dict(p) for p in issue.photos]
    return {
        "id": issue.id,
        "listing_id": issue.listing_id,
        "checklist_item_id": issue.checklist_item_id,
        "title": issue.title,
        "location": issue.location,
        "description": issue.description,
        "status": issue.status,
        "owner": issue.owner,
        "reported_by": issue.reported_by,
        "reported_by_id": issue.reported_by_id,
        "expected_completion": isoformat(issue.expected_completion),
        "reported_at": isoformat(issue.reported_at),
        "updated_at": isoformat(issue.updated_at),
        "resolved_at": isoformat(issue.resolved_at),
        "photos_before": [p for p in photos if p["kind"] == PhotoKind.BEFORE.value],
        "photos_after": [p for p in photos if p["kind"] == PhotoKind.AFTER.value],
    }


__all__ = [
    "DefectTracker",
    "PhotoUpload",
    "defect_to_dict",
    "photo_to_dict",
    "parse_defect_status",
]
