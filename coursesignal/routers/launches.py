"""Launch management endpoints.

WHAT:
    - CRUD for launches (time-boxed promotions) in a workspace
    - Archive (manual status override) and duplicate
    - Public recap sharing: enable/disable, optional password and expiry
    - Per-launch analytics and side-by-side comparison (up to 3)

WHY:
    Creators report revenue per launch and share the recap with partners.
    Purchases are linked to the launch whose window contains them.

REFERENCES:
    - coursesignal/services/launch_service.py
    - coursesignal/services/aggregation_service.py (launch_analytics, compare_launches)
    - coursesignal/routers/public.py (public recap view)
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from coursesignal import schemas
from coursesignal.database import get_db
from coursesignal.deps import Settings, get_settings, get_workspace
from coursesignal.errors import InvalidLaunch, LaunchNotFound
from coursesignal.models import Workspace
from coursesignal.services.aggregation_service import MAX_COMPARED_LAUNCHES, AggregationService
from coursesignal.services.launch_service import LaunchService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/workspaces/{workspace_id}/launches",
    tags=["Launches"],
)


def get_launch_service(
    workspace: Workspace = Depends(get_workspace),
    db: Session = Depends(get_db),
) -> LaunchService:
    return LaunchService(db, workspace.id)


def _not_found(e: LaunchNotFound) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _bad_request(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# =============================================================================
# CRUD
# =============================================================================

@router.get("", response_model=List[schemas.LaunchOut])
def list_launches(
    include_archived: bool = Query(False),
    service: LaunchService = Depends(get_launch_service),
):
    """Launches for the workspace, newest start date first."""
    return [schemas.LaunchOut.from_model(launch) for launch in service.list(include_archived=include_archived)]


@router.post("", response_model=schemas.LaunchOut, status_code=status.HTTP_201_CREATED)
def create_launch(
    payload: schemas.LaunchCreate,
    service: LaunchService = Depends(get_launch_service),
):
    """Create a launch and link existing purchases inside its window."""
    try:
        launch = service.create(
            title=payload.title,
            start_date=payload.start_date,
            end_date=payload.end_date,
            description=payload.description,
            revenue_goal=payload.revenue_goal,
            sales_goal=payload.sales_goal,
        )
    except InvalidLaunch as e:
        raise _bad_request(e)
    return schemas.LaunchOut.from_model(launch)


@router.get("/compare", response_model=schemas.CompareResponse)
def compare_launches(
    ids: List[UUID] = Query(..., description=f"1 to {MAX_COMPARED_LAUNCHES} launch ids"),
    workspace: Workspace = Depends(get_workspace),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    service: LaunchService = Depends(get_launch_service),
):
    """Side-by-side headline metrics for up to three launches."""
    if not 1 <= len(ids) <= MAX_COMPARED_LAUNCHES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Select between 1 and {MAX_COMPARED_LAUNCHES} launches to compare",
        )
    try:
        launches = [service.get(launch_id) for launch_id in ids]
    except LaunchNotFound as e:
        raise _not_found(e)

    aggregation = AggregationService(db, workspace.id, match_rate_target=settings.MATCH_RATE_TARGET)
    return schemas.CompareResponse(launches=aggregation.compare_launches(launches))


@router.get("/{launch_id}", response_model=schemas.LaunchOut)
def get_launch(
    launch_id: UUID,
    service: LaunchService = Depends(get_launch_service),
):
    try:
        return schemas.LaunchOut.from_model(service.get(launch_id))
    except LaunchNotFound as e:
        raise _not_found(e)


@router.patch("/{launch_id}", response_model=schemas.LaunchOut)
def update_launch(
    launch_id: UUID,
    payload: schemas.LaunchUpdate,
    service: LaunchService = Depends(get_launch_service),
):
    """Partial update. Moving the dates re-links purchases."""
    try:
        launch = service.update(launch_id, payload.model_dump(exclude_unset=True))
    except LaunchNotFound as e:
        raise _not_found(e)
    except InvalidLaunch as e:
        raise _bad_request(e)
    return schemas.LaunchOut.from_model(launch)


@router.delete("/{launch_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_launch(
    launch_id: UUID,
    service: LaunchService = Depends(get_launch_service),
):
    """Delete a launch; its purchases are kept and unlinked."""
    try:
        service.delete(launch_id)
    except LaunchNotFound as e:
        raise _not_found(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{launch_id}/archive", response_model=schemas.LaunchOut)
def archive_launch(
    launch_id: UUID,
    service: LaunchService = Depends(get_launch_service),
):
    try:
        return schemas.LaunchOut.from_model(service.archive(launch_id))
    except LaunchNotFound as e:
        raise _not_found(e)


@router.post(
    "/{launch_id}/duplicate",
    response_model=schemas.LaunchOut,
    status_code=status.HTTP_201_CREATED,
)
def duplicate_launch(
    launch_id: UUID,
    payload: Optional[schemas.LaunchDuplicateRequest] = None,
    service: LaunchService = Depends(get_launch_service),
):
    """Create a copy of a launch (title, description, goals) as a template."""
    payload = payload or schemas.LaunchDuplicateRequest()
    try:
        launch = service.duplicate(launch_id, start_date=payload.start_date, end_date=payload.end_date)
    except LaunchNotFound as e:
        raise _not_found(e)
    except InvalidLaunch as e:
        raise _bad_request(e)
    return schemas.LaunchOut.from_model(launch)


# =============================================================================
# SHARING

# =============================================================================

@router.post("/{launch_id}/share", response_model=schemas.ShareResponse)
def enable_sharing(
    launch_id: UUID,
    payload: schemas.ShareRequest,
    service: LaunchService = Depends(get_launch_service),
    settings: Settings = Depends(get_settings),
):
    """Enable the public recap and return its URL.

    Calling again updates password/expiry but keeps the same token.
    """
    try:
        launch = service.enable_sharing(launch_id, password=payload.password, expires_at=payload.expires_at)
    except LaunchNotFound as e:
        raise _not_found(e)
    except InvalidLaunch as e:
        raise _bad_request(e)

    return schemas.ShareResponse(
        share_token=launch.share_token,
        share_url=f"{settings.APP_URL.rstrip('/')}/recap/{launch.share_token}",
        password_protected=bool(launch.share_password_hash),
        expires_at=launch.share_expires_at,
        view_count=service.view_count(launch.id),
    )


@router.delete("/{launch_id}/share", response_model=schemas.LaunchOut)
def disable_sharing(
    launch_id: UUID,
    service: LaunchService = Depends(get_launch_service),
):
    try:
        return schemas.LaunchOut.from_model(service.disable_sharing(launch_id))
    except LaunchNotFound as e:
        raise _not_found(e)


# =============================================================================
# ANALYTICS
# =============================================================================

@router.get("/{launch_id}/analytics")
def get_launch_analytics(
    launch_id: UUID,
    workspace: Workspace = Depends(get_workspace),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    service: LaunchService = Depends(get_launch_service),
):
    """Revenue, sources, match rate, goals and daily revenue for one launch."""
    try:
        launch = service.get(launch_id)
    except LaunchNotFound as e:
        raise _not_found(e)

    aggregation = AggregationService(db, workspace.id, match_rate_target=settings.MATCH_RATE_TARGET)
    return aggregation.launch_analytics(launch).to_dict()
