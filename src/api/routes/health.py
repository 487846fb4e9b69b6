"""Health check routes with collaborator configuration status."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy import func, text
from sqlalchemy.orm import Session

from api.deps import get_readonly_db
from core.config import get_settings
from core.logging_config import get_logger
from core.models import OutboxStatus, ProjectionOutbox
from core.utils import utcnow
from services.messaging import get_messaging_client

router = APIRouter()
LOGGER = get_logger(__name__)
SETTINGS = get_settings()


@router.get("")
async def health_check() -> Dict[str, Any]:
    """Basic health check - always returns OK."""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "dry_run": SETTINGS.dry_run,
        "environment": SETTINGS.environment,
    }


@router.get("/detailed")
def detailed_health_check(
    db: Session = Depends(get_readonly_db),
) -> Dict[str, Any]:
    """Detailed health check including database, outbox backlog, and collaborators."""
    status = "healthy"
    checks: Dict[str, Any] = {}

    try:
        db.execute(text("SELECT 1"))
        checks["database"] = {"status": "healthy", "connected": True}
    except Exception as e:
        LOGGER.error(f"Database health check failed: {e}")
        status = "unhealthy"
        checks["database"] = {"status": "unhealthy", "error": str(e)}

    if checks["database"]["status"] == "healthy":
        pending = db.query(func.count(ProjectionOutbox.id)).filter(
            ProjectionOutbox.status == OutboxStatus.PENDING.value
        ).scalar() or 0
        checks["projection_outbox"] = {"pending": pending}
        if pending and status == "healthy":
            status = "degraded"

    checks["messaging"] = {
        "configured": SETTINGS.is_messaging_enabled(),
        "dry_run": SETTINGS.dry_run,
        "circuit": get_messaging_client().circuit.to_dict(),
    }
    checks["storage"] = {"configured": SETTINGS.is_storage_enabled()}
    checks["directory"] = {"configured": SETTINGS.is_directory_enabled()}

    return {
        "status": status,
        "timestamp": utcnow().isoformat(),
        "checks": checks,
    }
