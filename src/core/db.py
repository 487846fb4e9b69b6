"""Database connection and session management."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, List

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from .config import get_settings
from .logging_config import get_logger

LOGGER = get_logger(__name__)
SETTINGS = get_settings()

# Tables that MUST exist for the coordinator to function
REQUIRED_TABLES = [
    "listing",
    "seller_listing_projection",
    "buyer_property_projection",
    "inspection_checklist_item",
    "defect_issue",
    "defect_photo",
    "inspection_notification",
    "projection_outbox",
    "listing_event",
]

_is_sqlite = SETTINGS.database_url.startswith("sqlite")


def configure_sqlite_engine(engine: Engine, wal: bool = True) -> Engine:
    """
    Install connection hooks so SQLite honours SAVEPOINT and foreign keys.

    pysqlite defers BEGIN until the first DML statement, which makes
    ``Session.begin_nested()`` release the outer transaction. Disabling the
    driver's transaction handling and emitting BEGIN ourselves fixes that.
    """

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        if wal:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def _create_engine() -> Engine:
    if not _is_sqlite:
        return create_engine(
            SETTINGS.database_url,
            pool_size=SETTINGS.db_pool_size,
            max_overflow=SETTINGS.db_max_overflow,
            pool_timeout=SETTINGS.db_pool_timeout,
            pool_pre_ping=True,
        )

    in_memory = ":memory:" in SETTINGS.database_url
    sqlite_engine = create_engine(
        SETTINGS.database_url,
        connect_args={"check_same_thread": False},
        # An in-memory database only lives as long as its single connection
        poolclass=StaticPool if in_memory else NullPool,
    )
    return configure_sqlite_engine(sqlite_engine, wal=not in_memory)


engine = _create_engine()

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def get_engine() -> Engine:
    """Return the process-wide engine."""
    return engine


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Commits on success, rolls back on any exception.
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def get_readonly_session() -> Generator[Session, None, None]:
    """Context manager for read-only database sessions."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def _missing_tables(bind: Engine) -> List[str]:
    existing_tables = set(inspect(bind).get_table_names())
    return [t for t in REQUIRED_TABLES if t not in existing_tables]


def init_db(create_missing_only: bool = True) -> dict:
    """
    Initialize database tables.

    Args:
        create_missing_only: If True, only creates missing tables (safe).
                            If False, creates all tables (use for fresh install).

    Returns:
        Dict with initialization results.
    """
    # Import models to ensure they are registered with Base
    from . import models  # noqa: F401

    result = {
        "status": "success",
        "tables_created": [],
        "tables_existing": [],
        "warnings": [],
    }

    existing_tables = set(inspect(engine).get_table_names())
    if create_missing_only and existing_tables:
        missing = set(Base.metadata.tables.keys()) - existing_tables
        if missing:
            Base.metadata.create_all(
                bind=engine, tables=[Base.metadata.tables[name] for name in missing]
            )
            LOGGER.info(f"Created missing tables: {sorted(missing)}")
        result["tables_created"] = sorted(missing)
    else:
        Base.metadata.create_all(bind=engine)
        result["tables_created"] = sorted(set(inspect(engine).get_table_names()) - existing_tables)
    result["tables_existing"] = sorted(existing_tables)

    missing_required = _missing_tables(engine)
    if missing_required:
        result["warnings"].append(f"Missing required tables: {missing_required}")
        result["status"] = "warning"

    return result


def validate_database() -> dict:
    """
    Validate database connection and required tables.

    Call this at application startup to ensure the database is ready.

    Returns:
        Dict with validation results.
    """
    result = {
        "status": "ok",
        "database_url": SETTINGS.database_url,
        "tables_found": [],
        "tables_missing": [],
        "errors": [],
    }

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        result["tables_found"] = inspect(engine).get_table_names()
        missing = _missing_tables(engine)
        result["tables_missing"] = missing
        if missing:
            result["status"] = "missing_tables"
            result["errors"].append(f"Missing required tables: {missing}")
    except Exception as e:
        result["status"] = "error"
        result["errors"].append(str(e))

    return result


__all__ = [
    "Base",
    "SessionLocal",
    "engine",
    "get_engine",
    "get_session",
    "get_readonly_session",
    "configure_sqlite_engine",
    "init_db",
    "validate_database",
]
