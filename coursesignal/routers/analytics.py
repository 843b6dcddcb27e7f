"""Analytics endpoints for the dashboard.

WHAT:
    Provides API endpoints for:
    - Revenue summary with period-over-period trends
    - Revenue by source (last-touch default, first-touch optional)
    - Match rate against the 85% accuracy target
    - Recent purchases feed
    - Source drill-down by campaign/medium and CSV export
    - Enqueueing a re-attribution backfill

WHY:
    The dashboard is an external collaborator; these endpoints are its only
    read surface into the attribution engine.

WINDOWS:
    `days` selects the trailing window ending now. Explicit `since`/`until`
    override it. Windows are half-open [since, until).

REFERENCES:
    - coursesignal/services/aggregation_service.py
    - coursesignal/workers/arq_enqueue.py
"""

import logging
from datetime import datetime, timedelta
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from coursesignal import schemas
from coursesignal.database import get_db
from coursesignal.deps import Settings, get_settings, get_workspace
from coursesignal.models import Workspace
from coursesignal.services.aggregation_service import AggregationService, TimeWindow
from coursesignal.utils.time import to_naive_utc, utcnow
from coursesignal.workers.arq_enqueue import enqueue_reattribution_job

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/workspaces/{workspace_id}/analytics",
    tags=["Analytics"],
)

AttributionModel = Literal["last_touch", "first_touch"]


def _window(days: int, since: Optional[datetime], until: Optional[datetime]) -> TimeWindow:
    until = to_naive_utc(until) or utcnow()
    since = to_naive_utc(since) or (until - timedelta(days=days))
    if until <= since:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="until must be after since")
    return TimeWindow(since=since, until=until)


def _service(db: Session, workspace: Workspace, settings: Settings) -> AggregationService:
    return AggregationService(db, workspace.id, match_rate_target=settings.MATCH_RATE_TARGET)


@router.get("/summary")
def get_summary(
    days: int = Query(30, ge=1, le=365, description="Trailing window in days"),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    source: Optional[str] = Query(None, description="Only purchases credited to this source (\"all\" for every purchase)"),
    model: AttributionModel = Query("last_touch", description="Attribution model used by `source`"),
    workspace: Workspace = Depends(get_workspace),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Revenue, buyers, AOV and purchase count with trends vs the prior window.

    Includes unmatched purchases, so total revenue always reconciles, unless
    `source` narrows it to matched purchases credited to one source.
    """
    window = _window(days, since, until)
    summary = _service(db, workspace, settings).summarize(window, source=source, model=model)
    return {
        "since": window.since.isoformat(),
        "until": window.until.isoformat(),
        "source": source or "all",
        **summary.to_dict(),
    }


@router.get("/sources")
def get_revenue_by_source(
    days: int = Query(30, ge=1, le=365),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    model: AttributionModel = Query("last_touch", description="Attribution model"),
    workspace: Workspace = Depends(get_workspace),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> List[dict]:
    """Per-source revenue, visitors and conversion for matched purchases."""
    window = _window(days, since, until)
    rows = _service(db, workspace, settings).by_source(window, model=model)
    return [row.to_dict() for row in rows]


@router.get("/match-rate")
def get_match_rate(
    days: int = Query(30, ge=1, le=365),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    workspace: Workspace = Depends(get_workspace),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Share of purchases linked to a visitor identity."""
    window = _window(days, since, until)
    return _service(db, workspace, settings).match_rate(window).to_dict()


@router.get("/recent-purchases", response_model=List[schemas.PurchaseOut])
def get_recent_purchases(
    limit: int = Query(10, ge=1, le=100),
    workspace: Workspace = Depends(get_workspace),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Most recent purchases first."""
    purchases = _service(db, workspace, settings).recent_purchases(limit)
    return [schemas.PurchaseOut.from_model(p) for p in purchases]


@router.get("/drilldown")
def get_source_drilldown(
    source: str = Query(..., min_length=1, description="Source to break down"),
    days: int = Query(30, ge=1, le=365),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    model: AttributionModel = Query("last_touch"),
    workspace: Workspace = Depends(get_workspace),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Campaign/medium breakdown of one source."""
    window = _window(days, since, until)
    rows = _service(db, workspace, settings).source_drilldown(window, source, model=model)
    return {"source": source, "rows": rows}


@router.get("/export")
def export_sources_csv(
    days: int = Query(30, ge=1, le=365),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    model: AttributionModel = Query("last_touch"),
    workspace: Workspace = Depends(get_workspace),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Revenue by source as a CSV download."""
    window = _window(days, since, until)
    content = _service(db, workspace, settings).export_csv(window, model=model)
    filename = f"coursesignal-sources-{window.since.date().isoformat()}-{window.until.date().isoformat()}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post(
    "/reattribute",
    response_model=schemas.JobEnqueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def reattribute_purchases(
    payload: schemas.ReattributeRequest,
    workspace: Workspace = Depends(get_workspace),
):
    """Queue a re-attribution backfill for this workspace.

    Runs on the ARQ worker; re-running over the same purchases is safe.
    """
    result = await enqueue_reattribution_job(
        workspace.id,
        since=to_naive_utc(payload.since),
        until=to_naive_utc(payload.until),
        only_unmatched=payload.only_unmatched,
    )
    return schemas.JobEnqueuedResponse(job_id=result.get("job_id"), status=result["status"])
