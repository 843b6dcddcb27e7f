"""Purchase ingestion pipeline.

WHAT:
    The only write path for Purchase rows:
    1. Idempotency check on (workspace, platform, platform_purchase_id)
    2. Identity resolution (email -> fingerprint -> unmatched)
    3. First/last touch attribution for matched purchases
    4. Launch association (hint, or the launch whose window contains the purchase)
    5. Persist, in a single transaction

WHY:
    Course platforms deliver webhooks at-least-once and out of order. The
    unique constraint is the final arbiter: a concurrent duplicate that loses
    the race rolls back and returns the row that won.

REFERENCES:
    - coursesignal/routers/purchases.py (webhook transport)
    - coursesignal/services/identity_resolver.py
    - coursesignal/services/attribution_calculator.py
    - coursesignal/services/launch_service.py (find_launch_for_purchase)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coursesignal.errors import InvalidPurchase
from coursesignal.models import Launch, Purchase, Workspace
from coursesignal.services.attribution_calculator import AttributionCalculator
from coursesignal.services.identity_resolver import IdentityResolver
from coursesignal.services.launch_service import find_launch_for_purchase
from coursesignal.utils.time import to_naive_utc

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class PurchaseEvent:
    """Platform-neutral purchase event produced by integration adapters."""

    platform: str
    platform_purchase_id: str
    email: str
    amount: Union[Decimal, float, int, str]
    currency: str
    purchased_at: Union[datetime, str]
    product_name: Optional[str] = None
    device_fingerprint: Optional[str] = None
    launch_hint: Optional[UUID] = None


@dataclass
class IngestionResult:
    """Ingested (or previously ingested) purchase.

    `created` is False when the event was a re-delivery.
    """

    purchase: Purchase
    created: bool


# =============================================================================
# HELPERS
# =============================================================================

def _to_decimal(value: Any) -> Decimal:
    """Convert a webhook amount to a 2-place Decimal."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidPurchase(f"amount {value!r} is not a number")
    if not amount.is_finite():
        raise InvalidPurchase("amount must be finite")
    return amount.quantize(Decimal("0.01"))


def _validated(event: PurchaseEvent) -> dict:
    """Normalize an event or raise InvalidPurchase. Nothing is persisted on failure."""
    platform = (event.platform or "").strip().lower()
    if not platform:
        raise InvalidPurchase("platform is required")

    platform_purchase_id = str(event.platform_purchase_id or "").strip()
    if not platform_purchase_id:
        raise InvalidPurchase("platform_purchase_id is required")

    email = (event.email or "").strip().lower()
    if not email or "@" not in email:
        raise InvalidPurchase("a buyer email is required")

    amount = _to_decimal(event.amount)
    if amount <= 0:
        raise InvalidPurchase("amount must be positive")

    currency = (event.currency or "").strip().upper()
    if len(currency) != 3 or not currency.isalpha():
        raise InvalidPurchase(f"currency {event.currency!r} is not an ISO-4217 code")

    try:
        purchased_at = to_naive_utc(event.purchased_at)
    except ValueError:
        raise InvalidPurchase(f"purchased_at {event.purchased_at!r} is not an ISO-8601 timestamp")
    if purchased_at is None:
        raise InvalidPurchase("purchased_at is required")

    product_name = (event.product_name or "").strip() or None

    return {
        "platform": platform,
        "platform_purchase_id": platform_purchase_id,
        "email": email,
        "amount": amount,
        "currency": currency,
        "purchased_at": purchased_at,
        "product_name": product_name[:255] if product_name else None,
    }


def find_existing_purchase(
    db: Session,
    workspace_id: UUID,
    platform: str,
    platform_purchase_id: str,
) -> Optional[Purchase]:
    return db.query(Purchase).filter(
        Purchase.workspace_id == workspace_id,
        Purchase.platform == platform,
        Purchase.platform_purchase_id == platform_purchase_id,
    ).first()


# =============================================================================
# SERVICE
# =============================================================================

class PurchaseIngestionService:
    """Ingests normalized purchase events for one database session.

    Usage:
        service = PurchaseIngestionService(db, lookback_days=90)
        result = service.ingest(workspace, event)
    """

    def __init__(
        self,
        db: Session,
        lookback_days: Optional[int] = 90,
        fingerprint_window_hours: Optional[int] = 24,
    ):
        self.db = db
        self.resolver = IdentityResolver(db, fingerprint_window_hours=fingerprint_window_hours)
        self.calculator = AttributionCalculator(db, lookback_days=lookback_days)

    def _launch_for(self, workspace_id: UUID, purchased_at: datetime, hint: Optional[UUID]) -> Optional[Launch]:
        if hint is not None:
            launch = self.db.query(Launch).filter(
                Launch.id == hint,
                Launch.workspace_id == workspace_id,
            ).first()
            if not launch:
                raise InvalidPurchase(f"launch {hint} does not belong to this workspace")
            return launch
        return find_launch_for_purchase(self.db, workspace_id, purchased_at)

    def ingest(self, workspace: Workspace, event: PurchaseEvent) -> IngestionResult:
        """Ingest one purchase event.

        Returns:
            IngestionResult with the persisted purchase. Re-deliveries return
            the original row with created=False.

        Raises:
            InvalidPurchase: Missing/malformed fields or a foreign launch hint
        """
        fields = _validated(event)

        # Step 1: idempotency (the unique constraint remains the arbiter)
        existing = find_existing_purchase(
            self.db, workspace.id, fields["platform"], fields["platform_purchase_id"]
        )
        if existing:
            logger.info(
                f"[INGEST] Duplicate delivery {fields['platform']}:{fields['platform_purchase_id']}, returning existing",
                extra={"workspace_id": str(workspace.id), "purchase_id": str(existing.id)},
            )
            return IngestionResult(purchase=existing, created=False)

        # Step 2: identity
        resolution = self.resolver.resolve(
            workspace.id,
            fields["email"],
            event.device_fingerprint,
            fields["purchased_at"],
        )

        purchase = Purchase(
            workspace_id=workspace.id,
            attribution_status=resolution.status,
            match_method=resolution.method,
            **fields,
        )

        # Step 3: attribution
        if resolution.matched:
            attribution = self.calculator.attribute(resolution.visitor, fields["purchased_at"])
            purchase.visitor_id = resolution.visitor_id
            for column, value in attribution.columns().items():
                setattr(purchase, column, value)

        # Step 4: launch
        launch = self._launch_for(workspace.id, fields["purchased_at"], event.launch_hint)
        if launch:
            purchase.launch_id = launch.id

        # Step 5: persist
        self.db.add(purchase)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = find_existing_purchase(
                self.db, workspace.id, fields["platform"], fields["platform_purchase_id"]
            )
            if existing is None:
                raise
            logger.info(
                f"[INGEST] Lost insert race for {fields['platform']}:{fields['platform_purchase_id']}, returning winner",
                extra={"workspace_id": str(workspace.id)},
            )
            return IngestionResult(purchase=existing, created=False)

        self.db.refresh(purchase)
        logger.info(
            f"[INGEST] Purchase {purchase.id} {resolution.status.value} via {resolution.method.value}",
            extra={
                "workspace_id": str(workspace.id),
                "platform": purchase.platform,
                "last_touch_source": purchase.last_touch_source,
                "launch_id": str(purchase.launch_id) if purchase.launch_id else None,
            },
        )
        return IngestionResult(purchase=purchase, created=True)


def ingest_purchase(
    db: Session,
    workspace: Workspace,
    event: PurchaseEvent,
    lookback_days: Optional[int] = 90,
    fingerprint_window_hours: Optional[int] = 24,
) -> IngestionResult:
    """Convenience wrapper around PurchaseIngestionService.ingest."""
    service = PurchaseIngestionService(
        db,
        lookback_days=lookback_days,
        fingerprint_window_hours=fingerprint_window_hours,
    )
    return service.ingest(workspace, event)
