"""SQLAlchemy ORM models and enums.

This module defines the attribution schema using UUID primary keys and
explicit relationships. Every table carries `workspace_id` so that each query
can be scoped to a single tenant.

Timestamps are stored as naive UTC (see `coursesignal.utils.time`).
"""

import uuid
import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base

from .utils.time import utcnow


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class AttributionStatusEnum(str, enum.Enum):
    matched = "matched"
    unmatched = "unmatched"


class MatchMethodEnum(str, enum.Enum):
    email = "email"
    fingerprint = "fingerprint"
    none = "none"


class LaunchStatusEnum(str, enum.Enum):
    upcoming = "upcoming"
    active = "active"
    completed = "completed"
    archived = "archived"  # Manual override, never recomputed from dates


def _enum_values(obj):
    return [e.value for e in obj]


# Tenancy -------------------------------------------------------

class Workspace(Base):
    """A product account (tenant) and its tracked site.

    `site_key` is embedded in the tracking script; tracking pings resolve the
    tenant through it.
    """
    __tablename__ = "workspaces"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    site_key = Column(String(64), nullable=False, unique=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    visitors = relationship("VisitorIdentity", back_populates="workspace", cascade="all, delete-orphan")
    purchases = relationship("Purchase", back_populates="workspace", cascade="all, delete-orphan")
    launches = relationship("Launch", back_populates="workspace", cascade="all, delete-orphan")

    def __str__(self):
        return f"{self.name}"


# Attribution ---------------------------------------------------

class VisitorIdentity(Base):
    """An anonymous browser/device seen by the tracking script.

    WHAT: Holds the visitor key, the (optional) captured email, the device
          fingerprint and the first-touch snapshot.
    WHY: Purchases are resolved to identities by email, then fingerprint.
         The first-touch snapshot is written once and never recomputed.
    """
    __tablename__ = "visitor_identities"
    __table_args__ = (
        UniqueConstraint("workspace_id", "visitor_key", name="uq_visitor_identity_key"),
        Index("ix_visitor_identities_workspace_email", "workspace_id", "email"),
        Index("ix_visitor_identities_workspace_fingerprint", "workspace_id", "device_fingerprint"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)

    # Identity
    visitor_key = Column(String(255), nullable=False)
    email = Column(String(320), nullable=True)  # Stored lowercased
    device_fingerprint = Column(String(255), nullable=False)

    # First touch snapshot (first_touch_at is NULL until captured)
    first_touch_source = Column(String(255), nullable=True)
    first_touch_medium = Column(String(255), nullable=True)
    first_touch_campaign = Column(String(255), nullable=True)
    first_touch_content = Column(String(255), nullable=True)
    first_touch_term = Column(String(255), nullable=True)
    first_touch_referrer = Column(Text, nullable=True)
    first_touch_landing_page = Column(Text, nullable=True)
    first_touch_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    workspace = relationship("Workspace", back_populates="visitors")
    touches = relationship("Touch", back_populates="visitor", cascade="all, delete-orphan")

    def __str__(self):
        return f"Visitor {self.visitor_key} ({self.email or 'anonymous'})"


class Touch(Base):
    """One inbound visit carrying marketing metadata.

    Append-only. `touched_at` is client supplied and may be skewed, so
    consumers sort rather than rely on insertion order.
    """
    __tablename__ = "touches"
    __table_args__ = (
        Index("ix_touches_visitor_touched_at", "visitor_id", "touched_at"),
        Index("ix_touches_workspace_touched_at", "workspace_id", "touched_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    visitor_id = Column(UUID(as_uuid=True), ForeignKey("visitor_identities.id", ondelete="CASCADE"), nullable=False)

    source = Column(String(255), nullable=True)
    medium = Column(String(255), nullable=True)
    campaign = Column(String(255), nullable=True)
    content = Column(String(255), nullable=True)
    term = Column(String(255), nullable=True)
    referrer = Column(Text, nullable=True)
    landing_page = Column(Text, nullable=True)
    touched_at = Column(DateTime, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    visitor = relationship("VisitorIdentity", back_populates="touches")

    def __str__(self):
        return f"Touch {self.source or 'direct'}/{self.medium or 'none'} @ {self.touched_at}"


class Purchase(Base):
    """A completed transaction on a connected course platform.

    WHAT: Carries the resolution outcome and the first/last touch snapshots.
    WHY: Attribution is frozen at ingestion so historical reports never move,
         except through an explicit re-attribution run.
    REFERENCES:
        - coursesignal/services/purchase_ingestion.py (only writer)
        - coursesignal/services/reattribution_service.py (backfill)
    """
    __tablename__ = "purchases"
    __table_args__ = (
        UniqueConstraint("workspace_id", "platform", "platform_purchase_id", name="uq_purchase_platform_id"),
        Index("ix_purchases_workspace_purchased_at", "workspace_id", "purchased_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    visitor_id = Column(UUID(as_uuid=True), ForeignKey("visitor_identities.id", ondelete="SET NULL"), nullable=True)
    launch_id = Column(UUID(as_uuid=True), ForeignKey("launches.id", ondelete="SET NULL"), nullable=True)

    # Platform identity (idempotency key)
    platform = Column(String(64), nullable=False)
    platform_purchase_id = Column(String(255), nullable=False)

    email = Column(String(320), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    product_name = Column(String(255), nullable=True)

    # First touch snapshot
    first_touch_source = Column(String(255), nullable=True)
    first_touch_medium = Column(String(255), nullable=True)
    first_touch_campaign = Column(String(255), nullable=True)
    first_touch_content = Column(String(255), nullable=True)
    first_touch_term = Column(String(255), nullable=True)

    # Last touch snapshot
    last_touch_source = Column(String(255), nullable=True)
    last_touch_medium = Column(String(255), nullable=True)
    last_touch_campaign = Column(String(255), nullable=True)
    last_touch_content = Column(String(255), nullable=True)
    last_touch_term = Column(String(255), nullable=True)

    attribution_status = Column(
        Enum(AttributionStatusEnum, name="attribution_status_enum", values_callable=_enum_values),
        nullable=False,
        default=AttributionStatusEnum.unmatched,
    )
    match_method = Column(
        Enum(MatchMethodEnum, name="match_method_enum", values_callable=_enum_values),
        nullable=False,
        default=MatchMethodEnum.none,
    )

    purchased_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    workspace = relationship("Workspace", back_populates="purchases")
    visitor = relationship("VisitorIdentity")
    launch = relationship("Launch", back_populates="purchases")

    def __str__(self):
        return f"{self.platform}:{self.platform_purchase_id} {self.amount} {self.currency}"


# Launches ------------------------------------------------------

class Launch(Base):
    """A bounded promotional period with optional goals and a public recap."""
    __tablename__ = "launches"
    __table_args__ = (
        CheckConstraint("end_date > start_date", name="ck_launch_dates"),
        Index("ix_launches_workspace_dates", "workspace_id", "start_date", "end_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)

    revenue_goal = Column(Numeric(12, 2), nullable=True)
    sales_goal = Column(Integer, nullable=True)

    status = Column(
        Enum(LaunchStatusEnum, name="launch_status_enum", values_callable=_enum_values),
        nullable=False,
        default=LaunchStatusEnum.upcoming,
    )

    # Public sharing
    share_enabled = Column(Boolean, nullable=False, default=False)
    share_token = Column(String(64), nullable=True, unique=True)
    share_password_hash = Column(String(255), nullable=True)
    share_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    workspace = relationship("Workspace", back_populates="launches")
    purchases = relationship("Purchase", back_populates="launch", passive_deletes=True)
    views = relationship("LaunchView", back_populates="launch", cascade="all, delete-orphan")

    def __str__(self):
        return f"{self.title} ({self.status})"


class LaunchView(Base):
    """One visit to a launch's public recap page."""
    __tablename__ = "launch_views"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    launch_id = Column(UUID(as_uuid=True), ForeignKey("launches.id", ondelete="CASCADE"), nullable=False, index=True)
    share_token = Column(String(64), nullable=True)
    referrer = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    viewed_at = Column(DateTime, default=utcnow, nullable=False)

    launch = relationship("Launch", back_populates="views")
