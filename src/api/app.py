"""FastAPI application entry point with global error handling."""
from __future__ import annotations

import os
import sys

# Add src/ to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import get_settings
from core.logging_config import get_logger, setup_logging
from core.exceptions import (
    ConfigurationError,
    ConflictError,
    ExternalServiceError,
    InvalidTransitionError,
    NotFoundError,
    PartialWriteError,
    PermissionDeniedError,
    ServiceUnavailableError,
    TransactionCoordinatorError,
    ValidationError,
)
from api.routes import events, health, inspection, listings, notifications, participants

LOGGER = get_logger(__name__)
SETTINGS = get_settings()

# Most specific class wins; looked up along the exception's MRO
ERROR_STATUS_CODES = {
    NotFoundError: 404,
    PermissionDeniedError: 403,
    ConflictError: 409,
    InvalidTransitionError: 409,
    ValidationError: 400,
    PartialWriteError: 202,
    ServiceUnavailableError: 503,
    ExternalServiceError: 502,
    TransactionCoordinatorError: 500,
}


def status_code_for(exc: TransactionCoordinatorError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Sets up logging, validates database, and logs startup/shutdown events.
    Startup does not fail if the database is not ready yet.
    """
    json_logging = SETTINGS.log_format == "json"
    setup_logging(level=SETTINGS.log_level, json_format=json_logging)

    if not SETTINGS.dry_run:
        LOGGER.warning("DRY_RUN=false - notifications will be delivered to participants")
    else:
        LOGGER.info("DRY_RUN mode enabled - notifications are logged, not delivered")

    LOGGER.info(
        "API application starting",
        extra={"extra_data": {
            "environment": SETTINGS.environment,
            "dry_run": SETTINGS.dry_run,
            "enabled_services": SETTINGS.get_enabled_services(),
        }}
    )

    try:
        from core.db import init_db, validate_database
        db_status = validate_database()

        if db_status["status"] == "error":
            LOGGER.error(
                "Database validation failed - app will start without database",
                extra={"extra_data": {"errors": db_status["errors"]}}
            )
        elif db_status["status"] == "missing_tables":
            LOGGER.warning(
                "Missing database tables detected - attempting to create",
                extra={"extra_data": {"missing": db_status["tables_missing"]}}
            )
            init_result = init_db(create_missing_only=True)
            if init_result["status"] == "error":
                LOGGER.error(
                    "Failed to create missing tables",
                    extra={"extra_data": {"error": init_result.get("error")}}
                )
        else:
            LOGGER.info(
                "Database validation passed",
                extra={"extra_data": {"tables_found": len(db_status["tables_found"])}}
            )
    except Exception as e:
        LOGGER.error(f"Database validation error during startup: {e} - app will start anyway")

    yield
    LOGGER.info("API application shutting down")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance with:
        - CORS middleware
        - Global exception handlers
        - All API routes
    """
    application = FastAPI(
        title="Homeflow Transaction Coordinator",
        description="Property purchase workflow: listings, buyer and seller views, inspection",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # -------------------------------------------------------------------------
    # CORS Middleware
    # -------------------------------------------------------------------------
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -------------------------------------------------------------------------
    # Global Exception Handlers
    # -------------------------------------------------------------------------

    @application.exception_handler(ConfigurationError)
    async def configuration_handler(
        request: Request, exc: ConfigurationError
    ) -> JSONResponse:
        """Handle configuration errors without leaking settings."""
        LOGGER.error(f"Configuration error: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": exc.code,
                "message": "Service misconfiguration",
                "detail": "Please contact the administrator.",
            },
        )

    @application.exception_handler(TransactionCoordinatorError)
    async def app_error_handler(
        request: Request, exc: TransactionCoordinatorError
    ) -> JSONResponse:
        """Map business and collaborator errors to HTTP responses."""
        status_code = status_code_for(exc)
        log_extra = {"extra_data": {"path": request.url.path, "code": exc.code}}
        if status_code >= 500:
            LOGGER.error(f"Application error: {exc}", extra=log_extra, exc_info=status_code == 500)
        else:
            LOGGER.warning(f"Request rejected: {exc}", extra=log_extra)
        return JSONResponse(
            status_code=status_code,
            content=exc.to_dict(),
        )

    # -------------------------------------------------------------------------
    # Include Routers
    # -------------------------------------------------------------------------
    application.include_router(health.router, prefix="/health", tags=["Health"])
    application.include_router(listings.router, prefix="/listings", tags=["Listings"])
    application.include_router(participants.router, prefix="/participants", tags=["Participants"])
    application.include_router(inspection.router, tags=["Inspection"])
    application.include_router(notifications.router, prefix="/listings", tags=["Notifications"])
    application.include_router(events.router, prefix="/listings", tags=["Events"])

    return application


# Create the application instance
app = create_app()

LOGGER.info("API application initialized")
