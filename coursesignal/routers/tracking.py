"""Tracking endpoints for the site script.

WHAT:
    Receives tracking pings and identity captures from the CourseSignal
    script embedded on a creator's sales pages.

WHY:
    Pings carry the UTM metadata that later attributes purchases; identify
    calls attach the email that links a visitor to their purchase.

REFERENCES:
    - coursesignal/services/touch_recorder.py
    - coursesignal/main.py (TrackingCORSMiddleware: any origin may POST here)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from coursesignal import schemas
from coursesignal.database import get_db
from coursesignal.deps import Settings, get_settings
from coursesignal.errors import InvalidIdentity, InvalidTouch, UnknownTenant
from coursesignal.services.touch_recorder import TouchData, TouchRecorder, resolve_tenant

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Tracking"])


@router.post("/track", response_model=schemas.TrackResponse)
def track(
    payload: schemas.TrackRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Record one touch for a visitor.

    WHAT: Resolves the site key, creates the visitor on first sight and
          appends the touch.
    WHY: The first ping fixes the visitor's first-touch snapshot; every
         later ping is a candidate last touch.
    """
    recorder = TouchRecorder(db, max_field_length=settings.MAX_TOUCH_FIELD_LENGTH)
    try:
        workspace = resolve_tenant(db, payload.site_key)
        visitor = recorder.record_touch(
            workspace,
            payload.visitor_key,
            TouchData(
                source=payload.source,
                medium=payload.medium,
                campaign=payload.campaign,
                content=payload.content,
                term=payload.term,
                referrer=payload.referrer,
                landing_page=payload.landing_page,
                touched_at=payload.timestamp,
                device_fingerprint=payload.device_fingerprint,
            ),
        )
    except UnknownTenant as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidTouch as e:
        logger.info(f"[TRACK] Rejected ping: {e}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return schemas.TrackResponse(visitor_id=visitor.id)


@router.post("/identify", response_model=schemas.IdentifyResponse)
def identify(
    payload: schemas.IdentifyRequest,
    db: Session = Depends(get_db),
):
    """Attach an email to a visitor.

    An already-identified visitor keeps its email; the response reports
    `conflict` instead of overwriting it.
    """
    recorder = TouchRecorder(db)
    try:
        workspace = resolve_tenant(db, payload.site_key)
        result = recorder.identify(workspace, payload.visitor_key, payload.email)
    except UnknownTenant as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidIdentity as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return schemas.IdentifyResponse(visitor_id=result.visitor.id, outcome=result.outcome)
