"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory plus the FastAPI
    dependency for request-scoped sessions.

WHY:
    - API requests: one session per request via `get_db`
    - arq jobs and backfills: `SessionLocal` passed as a session factory
    - Tests: SQLite engines are supported (no pool sizing)

USAGE:
    from coursesignal.database import SessionLocal, get_db

    @router.get("/items")
    def get_items(db: Session = Depends(get_db)):
        return db.query(Item).all()

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - coursesignal/routers/ (consumers of these sessions)
"""

import logging
import os
from typing import Generator

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading a local .env if needed.

    Exported variables always win over .env (load_dotenv(override=False)).

    Returns:
        SQLAlchemy connection string

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    if not os.getenv("DATABASE_URL") and load_dotenv(override=False):
        logger.info("[DB] Loaded local .env file (existing variables were NOT overwritten)")

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("Missing required environment variable: DATABASE_URL")

    # Heroku-style URLs are not accepted by SQLAlchemy 2.x
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# NOTE: SQLite engines (tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Tracking pings arrive in bursts during launches
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in coursesignal.models to ensure a single registry
from .models import Base  # noqa: E402,F401


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Yields:
        SQLAlchemy Session instance, closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
