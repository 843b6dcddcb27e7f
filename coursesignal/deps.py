"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .models import Workspace


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    APP_URL: str = "http://localhost:3000"
    ENVIRONMENT: str = "development"

    # Redis (arq job queue)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Shared secret used to sign normalized purchase webhooks
    PURCHASE_WEBHOOK_SECRET: Optional[str] = None

    # Attribution policy
    ATTRIBUTION_LOOKBACK_DAYS: int = 90  # 0 = unbounded
    FINGERPRINT_MATCH_WINDOW_HOURS: int = 24  # 0 = unbounded
    MAX_TOUCH_FIELD_LENGTH: int = 255
    MATCH_RATE_TARGET: float = 85.0

    # Backfill
    REATTRIBUTION_BATCH_SIZE: int = 500

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_workspace(workspace_id: UUID, db: Session = Depends(get_db)) -> Workspace:
    """Resolve the workspace from the path, or 404.

    Authentication of the dashboard user happens upstream of this service;
    here we only guarantee that the tenant exists.
    """
    workspace = db.query(Workspace).filter(Workspace.id == workspace_id).first()
    if not workspace:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workspace not found")
    return workspace
