"""Pytest configuration for CourseSignal tests

WHAT: Provides shared fixtures for service-level and HTTP endpoint tests
WHY: Ensures consistent test setup and database isolation
REFERENCES:
    - coursesignal/main.py: FastAPI application
    - coursesignal/database.py: Database configuration
"""

import os
import sys
from pathlib import Path
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure repo root is in path
REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

# Set test environment (before any coursesignal import)
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("PURCHASE_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("APP_URL", "http://localhost:3000")


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine.

    StaticPool keeps one connection so TestClient threads see the same data.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from coursesignal.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    """Create test database session with rollback."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session):
    """Create FastAPI test application bound to the test session."""
    from coursesignal.main import create_app
    from coursesignal.database import get_db

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


# ============================================================================
# Tenant Fixtures
# ============================================================================

def _make_workspace(db: Session, name: str, site_key: str, is_active: bool = True):
    from coursesignal.models import Workspace

    workspace = Workspace(name=name, site_key=site_key, is_active=is_active)
    db.add(workspace)
    db.commit()
    db.refresh(workspace)
    return workspace


@pytest.fixture
def workspace(test_db_session):
    return _make_workspace(test_db_session, "Acme Courses", "site_acme")


@pytest.fixture
def workspace_b(test_db_session):
    return _make_workspace(test_db_session, "Other Academy", "site_other")


@pytest.fixture
def inactive_workspace(test_db_session):
    return _make_workspace(test_db_session, "Paused", "site_paused", is_active=False)


# ============================================================================
# Builders
# ============================================================================

@pytest.fixture
def recorder(test_db_session):
    from coursesignal.services.touch_recorder import TouchRecorder
    return TouchRecorder(test_db_session)


@pytest.fixture
def track(recorder):
    """Record a touch: track(workspace, visitor_key, source, medium, campaign, at)."""
    from coursesignal.services.touch_recorder import TouchData

    def _track(
        workspace,
        visitor_key,
        source=None,
        medium=None,
        campaign=None,
        at=None,
        fingerprint=None,
        content=None,
        term=None,
    ):
        return recorder.record_touch(
            workspace,
            visitor_key,
            TouchData(
                source=source,
                medium=medium,
                campaign=campaign,
                content=content,
                term=term,
                touched_at=at,
                device_fingerprint=fingerprint,
            ),
        )
    return _track


@pytest.fixture
def buy(test_db_session):
    """Ingest a purchase: buy(workspace, purchase_id, email, amount, at, **extra)."""
    from coursesignal.services.purchase_ingestion import PurchaseEvent, ingest_purchase

    def _buy(workspace, purchase_id, email, amount, at, platform="kajabi", **extra):
        event = PurchaseEvent(
            platform=platform,
            platform_purchase_id=purchase_id,
            email=email,
            amount=amount,
            currency=extra.pop("currency", "USD"),
            purchased_at=at,
            **extra,
        )
        return ingest_purchase(test_db_session, workspace, event)
    return _buy
