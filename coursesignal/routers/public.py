"""Public launch recap (no authentication).

WHAT:
    Serves the shared recap of a launch by its share token. Password
    protected recaps accept the password via POST.

WHY:
    Creators share launch results with affiliates and partners who have no
    dashboard account. The recap exposes aggregates only: no buyer emails,
    no purchase-level data.

STATUS CODES:
    404: unknown token, sharing disabled, or link expired
    401: password required or incorrect (body tells the client to prompt)

REFERENCES:
    - coursesignal/services/launch_service.py (resolve_shared_launch)
    - coursesignal/services/aggregation_service.py (shared_recap)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from coursesignal import schemas
from coursesignal.database import get_db
from coursesignal.errors import ShareAccessDenied
from coursesignal.services.aggregation_service import AggregationService
from coursesignal.services.launch_service import resolve_shared_launch

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/public", tags=["Public"])


def _recap(db: Session, request: Request, token: str, password: Optional[str]):
    try:
        launch = resolve_shared_launch(
            db,
            token,
            password=password,
            referrer=request.headers.get("referer"),
            user_agent=request.headers.get("user-agent"),
        )
    except ShareAccessDenied as e:
        code = status.HTTP_401_UNAUTHORIZED if e.password_required else status.HTTP_404_NOT_FOUND
        logger.info(f"[RECAP] Denied token {token[:6]}...: {e}")
        return JSONResponse(
            status_code=code,
            content={"detail": str(e), "password_required": e.password_required},
        )

    return AggregationService(db, launch.workspace_id).shared_recap(launch)


@router.get("/launches/{token}")
def view_recap(
    token: str,
    request: Request,
    db: Session = Depends(get_db),
):
    """Recap of a shared launch without a password."""
    return _recap(db, request, token, None)


@router.post("/launches/{token}")
def unlock_recap(
    token: str,
    payload: schemas.PublicRecapRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """Recap of a password-protected launch."""
    return _recap(db, request, token, payload.password)
