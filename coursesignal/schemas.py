"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_serializer, field_validator

from .models import AttributionStatusEnum, LaunchStatusEnum, MatchMethodEnum


# =============================================================================
# HEALTH
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])


# =============================================================================
# TRACKING
# =============================================================================

class TrackRequest(BaseModel):
    """Tracking ping sent by the site script on every visit/navigation.

    The utm fields are validated by the touch recorder so
    that malformed values produce a structured InvalidTouch error.
    """

    site_key: str = Field(..., description="Public site key from the tracking snippet")
    visitor_key: str = Field(..., description="Persistent anonymous visitor id (cookie)")
    source: Optional[Any] = Field(None, description="utm_source, absent for direct")
    medium: Optional[Any] = Field(None, description="utm_medium")
    campaign: Optional[Any] = Field(None, description="utm_campaign")
    content: Optional[Any] = Field(None, description="utm_content")
    term: Optional[Any] = Field(None, description="utm_term")
    referrer: Optional[str] = Field(None, description="document.referrer")
    landing_page: Optional[str] = Field(None, description="Path of the landing page")
    timestamp: Optional[datetime] = Field(None, description="Client timestamp (ISO-8601)")
    device_fingerprint: Optional[str] = Field(None, max_length=255, description="Client-side fingerprint")


class TrackResponse(BaseModel):
    success: bool = True
    visitor_id: UUID


class IdentifyRequest(BaseModel):
    """Explicit email capture (opt-in form, checkout pre-fill)."""

    site_key: str
    visitor_key: str
    email: EmailStr


class IdentifyResponse(BaseModel):
    success: bool = True
    visitor_id: UUID
    outcome: str = Field(description="set | unchanged | conflict")


# =============================================================================
# PURCHASES
# =============================================================================

class PurchaseWebhookPayload(BaseModel):
    """Normalized purchase event produced by a platform adapter."""

    platform: str = Field(..., min_length=1, max_length=64, examples=["kajabi"])
    platform_purchase_id: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., description="Buyer email")
    amount: Decimal = Field(..., description="Order total in `currency`")
    currency: str = Field("USD", description="ISO-4217 code")
    product_name: Optional[str] = None
    purchased_at: datetime
    device_fingerprint: Optional[str] = None
    launch_id: Optional[UUID] = Field(None, description="Explicit launch association")


class TouchSnapshotOut(BaseModel):
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    content: Optional[str] = None
    term: Optional[str] = None


class PurchaseOut(BaseModel):
    id: UUID
    platform: str
    platform_purchase_id: str
    email: str
    amount: Decimal
    currency: str
    product_name: Optional[str] = None
    purchased_at: datetime
    attribution_status: AttributionStatusEnum
    match_method: MatchMethodEnum
    visitor_id: Optional[UUID] = None
    launch_id: Optional[UUID] = None
    first_touch: TouchSnapshotOut
    last_touch: TouchSnapshotOut

    @field_serializer("amount")
    def serialize_amount(self, value: Decimal) -> float:
        return float(value)

    @classmethod
    def from_model(cls, purchase) -> "PurchaseOut":
        return cls(
            id=purchase.id,
            platform=purchase.platform,
            platform_purchase_id=purchase.platform_purchase_id,
            email=purchase.email,
            amount=purchase.amount,
            currency=purchase.currency,
            product_name=purchase.product_name,
            purchased_at=purchase.purchased_at,
            attribution_status=purchase.attribution_status,
            match_method=purchase.match_method,
            visitor_id=purchase.visitor_id,
            launch_id=purchase.launch_id,
            first_touch=TouchSnapshotOut(
                source=purchase.first_touch_source,
                medium=purchase.first_touch_medium,
                campaign=purchase.first_touch_campaign,
                content=purchase.first_touch_content,
                term=purchase.first_touch_term,
            ),
            last_touch=TouchSnapshotOut(
                source=purchase.last_touch_source,
                medium=purchase.last_touch_medium,
                campaign=purchase.last_touch_campaign,
                content=purchase.last_touch_content,
                term=purchase.last_touch_term,
            ),
        )


class IngestResponse(BaseModel):
    created: bool = Field(description="False when this delivery was a duplicate")
    purchase: PurchaseOut


# =============================================================================
# LAUNCHES
# =============================================================================

class LaunchCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    start_date: datetime
    end_date: datetime
    revenue_goal: Optional[Decimal] = Field(None, ge=0)
    sales_goal: Optional[int] = Field(None, ge=0)


class LaunchUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    revenue_goal: Optional[Decimal] = Field(None, ge=0)
    sales_goal: Optional[int] = Field(None, ge=0)


class LaunchDuplicateRequest(BaseModel):
    """Dates for the copy; defaults to a 7-day window starting now."""

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class LaunchOut(BaseModel):
    id: UUID
    title: str
    description: Optional[str] = None
    start_date: datetime
    end_date: datetime
    revenue_goal: Optional[Decimal] = None
    sales_goal: Optional[int] = None
    status: LaunchStatusEnum
    share_enabled: bool
    share_token: Optional[str] = None
    share_password_protected: bool = False
    share_expires_at: Optional[datetime] = None
    created_at: datetime

    @field_serializer("revenue_goal")
    def serialize_goal(self, value: Optional[Decimal]) -> Optional[float]:
        return float(value) if value is not None else None

    @classmethod
    def from_model(cls, launch) -> "LaunchOut":
        return cls(
            id=launch.id,
            title=launch.title,
            description=launch.description,
            start_date=launch.start_date,
            end_date=launch.end_date,
            revenue_goal=launch.revenue_goal,
            sales_goal=launch.sales_goal,
            status=launch.status,
            share_enabled=launch.share_enabled,
            share_token=launch.share_token if launch.share_enabled else None,
            share_password_protected=bool(launch.share_password_hash),
            share_expires_at=launch.share_expires_at,
            created_at=launch.created_at,
        )


class ShareRequest(BaseModel):
    password: Optional[str] = Field(None, min_length=4, max_length=128)
    expires_at: Optional[datetime] = None


class ShareResponse(BaseModel):
    share_token: str
    share_url: str
    password_protected: bool
    expires_at: Optional[datetime] = None
    view_count: int = 0


class PublicRecapRequest(BaseModel):
    password: Optional[str] = None


# =============================================================================
# ANALYTICS / BACKFILL
# =============================================================================

class ReattributeRequest(BaseModel):
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    only_unmatched: bool = False

    @field_validator("until")
    @classmethod
    def until_after_since(cls, value, info):
        since = info.data.get("since")
        if value is not None and since is not None and value <= since:
            raise ValueError("until must be after since")
        return value


class JobEnqueuedResponse(BaseModel):
    job_id: Optional[str] = None
    status: str = "queued"


class CompareResponse(BaseModel):
    launches: List[Dict[str, Any]]
