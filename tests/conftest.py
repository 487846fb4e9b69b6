"""Pytest configuration and fixtures."""
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("DRY_RUN", "true")
os.environ.setdefault("ENVIRONMENT", "test")

from core.db import Base, configure_sqlite_engine
from core.models import Listing
from domain.defects import DefectTracker
from domain.inspection import InspectionChecklistEngine
from domain.listings import ListingService
from domain.purchase import PurchaseStateMachine
from services.change_feed import ChangeFeed
from services.directory import ParticipantDirectory
from services.messaging import MessagingClient
from services.notification import NotificationService
from services.projection import ProjectionWriter
from services.retry import ProjectionRetryPolicy
from services.storage import StorageClient


SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

SELLER_ID = "seller-1"
BUYER_ID = "buyer-1"


@pytest.fixture(scope="session")
def engine():
    """Create a test database engine that honours SAVEPOINT."""
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    return configure_sqlite_engine(engine, wal=False)


@pytest.fixture(scope="session")
def tables(engine):
    """Create all tables for testing."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session(engine, tables) -> Session:
    """
    Returns a SQLAlchemy session for testing.

    Each test runs inside an outer transaction that is rolled back after the
    test; ``session.commit()`` only releases a SAVEPOINT.
    """
    connection = engine.connect()
    transaction = connection.begin()

    TestSession = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=connection,
        join_transaction_mode="create_savepoint",
    )
    session = TestSession()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def retry_policy() -> ProjectionRetryPolicy:
    """Two attempts, no waiting."""
    return ProjectionRetryPolicy(attempts=2, min_wait=0, max_wait=0)


@pytest.fixture
def messaging() -> MessagingClient:
    return MessagingClient(dry_run=True)


@pytest.fixture
def directory() -> ParticipantDirectory:
    """A directory with no base URL, so lookups are skipped."""
    return ParticipantDirectory(base_url="")


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def notifications(db_session, messaging) -> NotificationService:
    return NotificationService(db_session, messaging)


# =============================================================================
# Domain services
# =============================================================================


@pytest.fixture
def listing_service(db_session, feed, retry_policy) -> ListingService:
    return ListingService(
        db_session,
        writer=ProjectionWriter(db_session),
        feed=feed,
        retry_policy=retry_policy,
    )


@pytest.fixture
def state_machine(db_session, notifications, directory, feed, retry_policy) -> PurchaseStateMachine:
    return PurchaseStateMachine(
        db_session,
        writer=ProjectionWriter(db_session, directory),
        notifications=notifications,
        feed=feed,
        directory=directory,
        retry_policy=retry_policy,
    )


@pytest.fixture
def checklist(db_session, notifications, feed) -> InspectionChecklistEngine:
    return InspectionChecklistEngine(db_session, notifications=notifications, feed=feed)


@pytest.fixture
def unconfigured_storage() -> StorageClient:
    return StorageClient(base_url="", api_key="")


@pytest.fixture
def defect_tracker(db_session, notifications, feed, unconfigured_storage) -> DefectTracker:
    return DefectTracker(
        db_session,
        storage=unconfigured_storage,
        notifications=notifications,
        feed=feed,
    )


# =============================================================================
# Sample data
# =============================================================================


@pytest.fixture
def sample_listing(db_session, listing_service) -> Listing:
    """An available listing owned by seller-1."""
    result = listing_service.create_listing(
        SELLER_ID,
        title="Two-bedroom flat near the park",
        description="Bright corner unit",
        price=250000.0,
        transaction_type="sale",
        address="12 Garden Row",
        city="Springfield",
        province="Central",
        photos=["https://img.test/front.jpg", "https://img.test/kitchen.jpg"],
    )
    return db_session.get(Listing, result.listing.id)


@pytest.fixture
def proposed_listing(sample_listing, state_machine) -> Listing:
    """sample_listing reserved for buyer-1."""
    state_machine.propose_buyer(sample_listing.id, BUYER_ID, SELLER_ID)
    return sample_listing


@pytest.fixture
def confirmed_listing(proposed_listing, state_machine) -> Listing:
    """sample_listing with buyer-1 confirmed."""
    state_machine.confirm_as_buyer(proposed_listing.id, BUYER_ID)
    return proposed_listing
