"""Purchase webhook endpoint.

WHAT:
    Receives normalized purchase events from platform adapters (Kajabi,
    Teachable, Skool, ...) and runs them through the ingestion pipeline.

WHY:
    Platform adapters translate each platform's webhook into one shape and
    sign it with PURCHASE_WEBHOOK_SECRET. Delivery is at-least-once, so a
    re-delivery returns the original purchase with 200 instead of 201.

FLOW:
    1. Verify HMAC signature (X-CourseSignal-Hmac-Sha256, base64)
    2. Resolve the workspace
    3. Ingest: idempotency -> resolve -> attribute -> launch -> persist

REFERENCES:
    - coursesignal/services/purchase_ingestion.py
    - coursesignal/security.py (verify_webhook_signature)
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from coursesignal import schemas
from coursesignal.database import get_db
from coursesignal.deps import Settings, get_settings
from coursesignal.errors import InvalidPurchase
from coursesignal.models import Workspace
from coursesignal.security import verify_webhook_signature
from coursesignal.services.purchase_ingestion import PurchaseEvent, PurchaseIngestionService
from coursesignal.telemetry import set_workspace_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Purchase Webhooks"])

SIGNATURE_HEADER = "X-CourseSignal-Hmac-Sha256"


async def get_verified_purchase_payload(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> schemas.PurchaseWebhookPayload:
    """Dependency that verifies the signature and parses the body.

    Raises:
        HTTPException: 401 on a bad signature, 422 on a malformed body
    """
    body = await request.body()
    if not verify_webhook_signature(settings.PURCHASE_WEBHOOK_SECRET, body, request.headers.get(SIGNATURE_HEADER)):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )

    try:
        return schemas.PurchaseWebhookPayload.model_validate_json(body)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.errors(include_url=False, include_context=False),
        )


@router.post("/purchases/{workspace_id}", response_model=schemas.IngestResponse)
def receive_purchase(
    workspace_id: UUID,
    payload: schemas.PurchaseWebhookPayload = Depends(get_verified_purchase_payload),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Ingest one purchase event.

    Returns 201 for a new purchase and 200 for a duplicate delivery; both
    carry the stored purchase with its attribution.
    """
    workspace = db.query(Workspace).filter(Workspace.id == workspace_id).first()
    if not workspace:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workspace not found")

    set_workspace_context(str(workspace.id), payload.platform)

    service = PurchaseIngestionService(
        db,
        lookback_days=settings.ATTRIBUTION_LOOKBACK_DAYS,
        fingerprint_window_hours=settings.FINGERPRINT_MATCH_WINDOW_HOURS,
    )
    try:
        result = service.ingest(workspace, PurchaseEvent(
            platform=payload.platform,
            platform_purchase_id=payload.platform_purchase_id,
            email=payload.email,
            amount=payload.amount,
            currency=payload.currency,
            product_name=payload.product_name,
            purchased_at=payload.purchased_at,
            device_fingerprint=payload.device_fingerprint,
            launch_hint=payload.launch_id,
        ))
    except InvalidPurchase as e:
        logger.info(f"[WEBHOOK] Rejected purchase for workspace {workspace.id}: {e}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    response = schemas.IngestResponse(
        created=result.created,
        purchase=schemas.PurchaseOut.from_model(result.purchase),
    )
    return JSONResponse(
        status_code=status.HTTP_201_CREATED if result.created else status.HTTP_200_OK,
        content=response.model_dump(mode="json"),
    )
