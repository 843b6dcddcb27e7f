"""
Sentry Error Tracking
=====================

Error tracking for the API and the arq worker.

Related files:
- coursesignal/main.py: Initializes Sentry when the app is created
- coursesignal/workers/arq_worker.py: Initializes Sentry on worker startup
  and reports job failures
- coursesignal/routers/purchases.py: Tags events with the workspace

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled without it)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release identifier set by CI/CD
"""

from __future__ import annotations

import os
import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_initialized = False


def init_sentry() -> bool:
    """
    Initialize the Sentry SDK.

    Safe to call more than once; only the first call with a DSN configures
    the SDK.

    Returns:
        True if Sentry is active, False otherwise.
    """
    global _initialized
    if _initialized:
        return True

    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        logger.debug("[SENTRY] SENTRY_DSN not set - error tracking disabled")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,         # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            # Buyer emails are PII; never attach request bodies
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False

    _initialized = True
    logger.info(f"[SENTRY] Initialized for {environment} environment")
    return True


def set_workspace_context(workspace_id: str, platform: Optional[str] = None) -> None:
    """Tag subsequent events in this scope with the tenant."""
    sentry_sdk.set_tag("workspace_id", workspace_id)
    if platform:
        sentry_sdk.set_tag("platform", platform)


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Report a handled exception to Sentry.

    Use for failures that are caught (e.g. a backfill skipping one purchase)
    but still need to be visible. Always logged locally as well.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event
    """
    logger.error(f"[SENTRY] Captured exception: {exception}", extra=extra or {})

    if not _initialized:
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)
