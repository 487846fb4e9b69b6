#!/usr/bin/env python3
"""Command Line Interface for the homeflow transaction coordinator.

Usage:
    cd src
    python cli.py server                   # Start API server
    python cli.py init-db                  # Create missing tables
    python cli.py reconcile                # Drain outbox and repair all projections
    python cli.py reconcile --listing-id 7 # Repair one listing
    python cli.py info                     # Show configuration
"""
from __future__ import annotations

from typing import Optional

import typer
import uvicorn

from core.config import get_settings
from core.logging_config import get_logger, setup_logging
from core.db import get_session

LOGGER = get_logger(__name__)
SETTINGS = get_settings()

app = typer.Typer(help="Homeflow transaction coordinator CLI")


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
) -> None:
    """Homeflow - property purchase workflow coordinator."""
    log_level = "DEBUG" if verbose else SETTINGS.log_level
    setup_logging(level=log_level, json_format=SETTINGS.log_format == "json")


# =============================================================================
# Server Commands
# =============================================================================


@app.command("server")
def run_server(
    host: str = typer.Option("0.0.0.0", help="Host to bind to"),
    port: int = typer.Option(SETTINGS.api_port, help="Port to bind to"),
    reload: bool = typer.Option(False, help="Enable auto-reload for development"),
) -> None:
    """Start the API server."""
    typer.echo(f"Starting API server on {host}:{port}...")
    uvicorn.run("api.app:app", host=host, port=port, reload=reload)


# =============================================================================
# Maintenance Commands
# =============================================================================


@app.command("init-db")
def init_database() -> None:
    """Create any missing database tables."""
    from core.db import init_db

    result = init_db(create_missing_only=True)
    if result["tables_created"]:
        typer.secho(f"✓ Created tables: {', '.join(result['tables_created'])}", fg="green")
    else:
        typer.echo("All tables already exist")
    for warning in result["warnings"]:
        typer.secho(f"  ! {warning}", fg="yellow")


@app.command("reconcile")
def reconcile(
    listing_id: Optional[int] = typer.Option(None, "--listing-id", help="Only repair this listing"),
    limit: Optional[int] = typer.Option(None, help="Max outbox rows to drain"),
) -> None:
    """Drain the projection outbox and repair drifted participant views."""
    from core.exceptions import NotFoundError
    from services.reconciliation import ReconciliationService

    with get_session() as session:
        service = ReconciliationService(session)
        if listing_id is not None:
            try:
                results = [service.reconcile_listing(listing_id)]
            except NotFoundError as e:
                typer.secho(f"✗ {e}", fg="red")
                raise typer.Exit(1)
        else:
            drained = service.drain_outbox(limit=limit)
            typer.echo(
                f"Outbox: {drained.processed} processed, {drained.resolved} resolved, "
                f"{drained.failed} still pending"
            )
            results = service.reconcile_all()

    failed = [r for r in results if not r.repaired]
    repaired = [r for r in results if r.repaired and r.drift]
    typer.secho(f"✓ Repaired {len(repaired)} listing(s)", fg="green")
    for result in repaired:
        typer.echo(f"  Listing {result.listing_id}: {len(result.drift)} projection(s) rewritten")
    if failed:
        for result in failed:
            typer.secho(f"  ✗ Listing {result.listing_id}: {result.error}", fg="yellow")
        raise typer.Exit(1)


@app.command("info")
def show_info() -> None:
    """Show application configuration info."""
    typer.echo("Homeflow Transaction Coordinator Configuration:")
    typer.echo(f"  Environment: {SETTINGS.environment}")
    typer.echo(f"  Database: {SETTINGS.database_url}")
    typer.echo(f"  Dry Run: {SETTINGS.dry_run}")
    typer.echo(f"  Log Level: {SETTINGS.log_level}")
    typer.echo(f"  Projection Retry Attempts: {SETTINGS.projection_retry_attempts}")
    typer.echo(f"  Messaging Configured: {SETTINGS.is_messaging_enabled()}")
    typer.echo(f"  Storage Configured: {SETTINGS.is_storage_enabled()}")
    typer.echo(f"  Directory Configured: {SETTINGS.is_directory_enabled()}")
    typer.echo(f"  Enabled Services: {', '.join(SETTINGS.get_enabled_services()) or 'none'}")


if __name__ == "__main__":
    app()
