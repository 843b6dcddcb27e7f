"""ARQ async worker - background jobs for the attribution engine.

WHAT:
    - reattribute_purchases_job: resumable backfill of purchase attribution
    - refresh_launch_statuses_job: cron, every 5 minutes, persists launch
      status transitions (upcoming -> active -> completed)

WHY:
    Backfills can touch thousands of purchases and must stay off the live
    ingestion path. Launch status is derived from dates, but dashboards list
    and filter on the stored column, so it is refreshed on a schedule.

USAGE:
    # Start worker
    arq coursesignal.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m coursesignal.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - coursesignal/services/reattribution_service.py
    - coursesignal/services/launch_service.py
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional
from uuid import UUID

from arq import cron
from sqlalchemy.orm import Session

from coursesignal.database import SessionLocal
from coursesignal.deps import get_settings
from coursesignal.models import Workspace
from coursesignal.services.launch_service import refresh_launch_statuses
from coursesignal.services.reattribution_service import ReattributionService
from coursesignal.telemetry import capture_exception, init_sentry
from coursesignal.workers.arq_enqueue import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)


# =============================================================================
# SYNC IMPLEMENTATIONS (run in a thread)
# =============================================================================

def run_reattribution(
    workspace_id: str,
    since: Optional[str] = None,
    until: Optional[str] = None,
    only_unmatched: bool = False,
    batch_size: Optional[int] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> Dict:
    """Backfill a workspace batch by batch until the snapshot is exhausted.

    Each batch uses a fresh session; the cursor from one batch is the
    `start_after` of the next.
    """
    settings = get_settings()
    batch_size = batch_size or settings.REATTRIBUTION_BATCH_SIZE

    totals = {"scanned": 0, "updated": 0, "newly_matched": 0, "failed": 0, "batches": 0}
    cursor = None

    while True:
        db = session_factory()
        try:
            if not db.query(Workspace).filter(Workspace.id == UUID(workspace_id)).first():
                return {"success": False, "error": "Workspace not found"}

            service = ReattributionService(
                db,
                UUID(workspace_id),
                lookback_days=settings.ATTRIBUTION_LOOKBACK_DAYS,
                fingerprint_window_hours=settings.FINGERPRINT_MATCH_WINDOW_HOURS,
            )
            report = service.run(
                since=since,
                until=until,
                only_unmatched=only_unmatched,
                start_after=cursor,
                limit=batch_size,
            )
        finally:
            db.close()

        totals["batches"] += 1
        for key in ("scanned", "updated", "newly_matched", "failed"):
            totals[key] += getattr(report, key)

        if report.scanned < batch_size:
            break
        cursor = report.cursor

    return {"success": True, **totals}


def run_launch_status_refresh(session_factory: Callable[[], Session] = SessionLocal) -> Dict:
    db = session_factory()
    try:
        return refresh_launch_statuses(db).to_dict()
    finally:
        db.close()


# =============================================================================
# JOBS
# =============================================================================

async def reattribute_purchases_job(
    ctx: Dict,
    workspace_id: str,
    since: Optional[str] = None,
    until: Optional[str] = None,
    only_unmatched: bool = False,
) -> Dict:
    """Re-run resolution and attribution over a workspace's purchases.

    Args:
        ctx: ARQ context
        workspace_id: Workspace UUID string
        since/until: Optional ISO bounds on purchased_at
        only_unmatched: Only retry purchases currently unmatched
    """
    logger.info(f"[ARQ] Starting reattribution for workspace {workspace_id} (only_unmatched={only_unmatched})")
    try:
        result = await asyncio.to_thread(run_reattribution, workspace_id, since, until, only_unmatched)
    except Exception as e:
        capture_exception(e, extra={"job": "reattribute_purchases_job", "workspace_id": workspace_id})
        raise

    logger.info(f"[ARQ] Reattribution finished for workspace {workspace_id}: {result}")
    return result


async def refresh_launch_statuses_job(ctx: Dict) -> Dict:
    """Persist launch status transitions."""
    try:
        result = await asyncio.to_thread(run_launch_status_refresh)
    except Exception as e:
        capture_exception(e, extra={"job": "refresh_launch_statuses_job"})
        raise

    if result["changed"]:
        logger.info(f"[ARQ] Launch statuses refreshed: {result}")
    return result


# =============================================================================
# LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize telemetry and log config."""
    init_sentry()
    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0
    logger.info("[ARQ] Worker starting up")
    logger.info(f"[ARQ] Queue: {QUEUE_NAME}")
    logger.info("[ARQ] Cron: refresh_launch_statuses_job every 5 minutes")


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))
    logger.info(f"[ARQ] Worker shutting down (jobs processed: {ctx.get('jobs_processed', 0)}, uptime: {uptime})")


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration."""

    functions = [
        reattribute_purchases_job,
        refresh_launch_statuses_job,
    ]

    cron_jobs = [
        cron(
            refresh_launch_statuses_job,
            minute=set(range(0, 60, 5)),
            run_at_startup=True,
            unique=True,
        ),
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    # Redis connection
    redis_settings = get_redis_settings()
    queue_name = QUEUE_NAME

    max_jobs = 10
    job_timeout = 3600               # Large backfills
    keep_result = 3600
    retry_jobs = True
    max_tries = 3
    health_check_interval = 30
