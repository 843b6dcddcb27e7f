"""Touch recorder and identity capture.

WHAT:
    Writes the two inbound tracking streams into the visitor identity store:
    - record_touch(): append one Touch, creating the identity on first sight
    - identify():     attach an email to an identity (monotonic-set)

WHY:
    Purchases are later resolved against these identities (email first,
    fingerprint second) and attributed from their touch log. The first-touch
    snapshot is captured exactly once: the first marketing exposure is what
    top-of-funnel reporting credits, even when it was direct/none.

REFERENCES:
    - coursesignal/routers/tracking.py (HTTP transport)
    - coursesignal/services/identity_resolver.py (reader of identities)
    - coursesignal/services/attribution_calculator.py (reader of touches)
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coursesignal.errors import InvalidIdentity, InvalidTouch, UnknownTenant
from coursesignal.models import Touch, VisitorIdentity, Workspace
from coursesignal.utils.time import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_VISITOR_KEY_LENGTH = 255


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class TouchData:
    """Attribution fields of one tracking ping, before validation.

    The utm fields (`source` through `term`) are untyped: they arrive from
    untrusted page scripts and are validated by the recorder.
    """
    source: Any = None
    medium: Any = None
    campaign: Any = None
    content: Any = None
    term: Any = None
    referrer: Optional[str] = None
    landing_page: Optional[str] = None
    touched_at: Optional[datetime] = None
    device_fingerprint: Optional[str] = None


@dataclass
class IdentifyResult:
    """Outcome of an identify() call.

    outcome is one of:
        - "set":       email stored on the identity
        - "unchanged": identity already carried this email
        - "conflict":  identity carries a different email; left untouched
    """
    visitor: VisitorIdentity
    outcome: str
    created: bool = False

    def to_dict(self) -> dict:
        return {
            "visitor_id": str(self.visitor.id),
            "outcome": self.outcome,
            "created": self.created,
        }


# =============================================================================
# HELPERS
# =============================================================================

def derive_fingerprint(visitor_key: str) -> str:
    """Stable device fingerprint derived from the visitor key."""
    return hashlib.sha256(visitor_key.encode("utf-8")).hexdigest()[:32]


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Trim and lowercase an email; empty values become None."""
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


def resolve_tenant(db: Session, site_key: str) -> Workspace:
    """Find the active workspace registered under a tracking site key.

    Raises:
        UnknownTenant: Site key is unknown or the workspace is inactive.
    """
    workspace = None
    if site_key:
        workspace = db.query(Workspace).filter(Workspace.site_key == site_key).first()
    if not workspace or not workspace.is_active:
        raise UnknownTenant(f"No active site registered for key {site_key!r}")
    return workspace


# =============================================================================
# SERVICE
# =============================================================================

class TouchRecorder:
    """Records tracking pings and identity captures for one database session."""

    def __init__(self, db: Session, max_field_length: int = 255):
        self.db = db
        self.max_field_length = max_field_length

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _clean_field(self, name: str, value: Any) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            raise InvalidTouch(f"{name} must be a string, got {type(value).__name__}")
        value = value.strip()
        if len(value) > self.max_field_length:
            raise InvalidTouch(f"{name} exceeds {self.max_field_length} characters")
        return value or None

    def _validate_visitor_key(self, visitor_key: Any) -> str:
        if not isinstance(visitor_key, str) or not visitor_key.strip():
            raise InvalidTouch("visitor_key is required")
        visitor_key = visitor_key.strip()
        if len(visitor_key) > MAX_VISITOR_KEY_LENGTH:
            raise InvalidTouch("visitor_key is too long")
        return visitor_key

    # -------------------------------------------------------------------------
    # Identity lookup
    # -------------------------------------------------------------------------

    def _find_identity(self, workspace_id: UUID, visitor_key: str) -> Optional[VisitorIdentity]:
        return self.db.query(VisitorIdentity).filter(
            VisitorIdentity.workspace_id == workspace_id,
            VisitorIdentity.visitor_key == visitor_key,
        ).first()

    def _new_identity(
        self,
        workspace_id: UUID,
        visitor_key: str,
        device_fingerprint: Optional[str],
        now: datetime,
    ) -> VisitorIdentity:
        fingerprint = (device_fingerprint or "").strip()[:255] or derive_fingerprint(visitor_key)
        return VisitorIdentity(
            workspace_id=workspace_id,
            visitor_key=visitor_key,
            device_fingerprint=fingerprint,
            created_at=now,
            updated_at=now,
        )

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def record_touch(self, workspace: Workspace, visitor_key: str, touch: TouchData) -> VisitorIdentity:
        """Append a Touch to the visitor, creating the identity if unseen.

        Args:
            workspace: Active tenant (see resolve_tenant)
            visitor_key: Opaque persistent-cookie id from the tracked page
            touch: Attribution fields of this ping

        Returns:
            The (possibly new) VisitorIdentity.

        Raises:
            UnknownTenant: Workspace is inactive
            InvalidTouch: Malformed visitor key or attribution fields
        """
        if not workspace.is_active:
            raise UnknownTenant(f"Workspace {workspace.id} is not active")

        visitor_key = self._validate_visitor_key(visitor_key)
        source = self._clean_field("source", touch.source)
        medium = self._clean_field("medium", touch.medium)
        campaign = self._clean_field("campaign", touch.campaign)
        content = self._clean_field("content", touch.content)
        term = self._clean_field("term", touch.term)

        now = utcnow()
        touched_at = to_naive_utc(touch.touched_at) or now

        visitor = self._find_identity(workspace.id, visitor_key)
        created = visitor is None
        if created:
            visitor = self._new_identity(workspace.id, visitor_key, touch.device_fingerprint, now)
            self.db.add(visitor)

        # Identities created by identify() have no snapshot until their first touch
        if visitor.first_touch_at is None:
            visitor.first_touch_source = source
            visitor.first_touch_medium = medium
            visitor.first_touch_campaign = campaign
            visitor.first_touch_content = content
            visitor.first_touch_term = term
            visitor.first_touch_referrer = touch.referrer
            visitor.first_touch_landing_page = touch.landing_page
            visitor.first_touch_at = touched_at

        visitor.updated_at = now

        try:
            # A concurrent first ping for the same key fails the identity insert here
            self.db.flush()
            self.db.add(Touch(
                workspace_id=workspace.id,
                visitor_id=visitor.id,
                source=source,
                medium=medium,
                campaign=campaign,
                content=content,
                term=term,
                referrer=touch.referrer,
                landing_page=touch.landing_page,
                touched_at=touched_at,
                created_at=now,
            ))
            self.db.commit()
        except IntegrityError:
            # Two first pings for the same key raced; retry as an append
            self.db.rollback()
            if not created:
                raise
            logger.info(f"[TRACK] Concurrent identity creation for {visitor_key}, retrying as append")
            return self.record_touch(workspace, visitor_key, touch)

        self.db.refresh(visitor)
        logger.info(
            f"[TRACK] Recorded touch for visitor {visitor.id}",
            extra={
                "workspace_id": str(workspace.id),
                "source": source or "direct",
                "new_visitor": created,
            },
        )
        return visitor

    def identify(self, workspace: Workspace, visitor_key: str, email: str) -> IdentifyResult:
        """Attach an email to a visitor identity.

        Email is monotonic-set: it only overwrites NULL. A different existing
        email is left in place and reported as a conflict.

        Raises:
            UnknownTenant: Workspace is inactive
            InvalidIdentity: Missing visitor key or malformed email
        """
        if not workspace.is_active:
            raise UnknownTenant(f"Workspace {workspace.id} is not active")
        if not isinstance(visitor_key, str) or not visitor_key.strip():
            raise InvalidIdentity("visitor_key is required")
        visitor_key = visitor_key.strip()[:MAX_VISITOR_KEY_LENGTH]

        normalized = normalize_email(email)
        if not normalized or not _EMAIL_RE.match(normalized):
            raise InvalidIdentity("A valid email is required")

        now = utcnow()
        visitor = self._find_identity(workspace.id, visitor_key)
        created = visitor is None
        if created:
            visitor = self._new_identity(workspace.id, visitor_key, None, now)
            self.db.add(visitor)

        if visitor.email is None:
            visitor.email = normalized
            visitor.updated_at = now
            outcome = "set"
        elif visitor.email == normalized:
            outcome = "unchanged"
        else:
            logger.warning(
                f"[IDENTIFY] Visitor {visitor.id} already identified with a different email; keeping existing",
                extra={"workspace_id": str(workspace.id)},
            )
            outcome = "conflict"

        try:
            self.db.commit()
        except IntegrityError:
            # Two first identify calls for the same key raced; retry against the winner
            self.db.rollback()
            if not created:
                raise
            logger.info(f"[IDENTIFY] Concurrent identity creation for {visitor_key}, retrying")
            return self.identify(workspace, visitor_key, email)

        self.db.refresh(visitor)
        logger.info(f"[IDENTIFY] {outcome} for visitor {visitor.id}", extra={"workspace_id": str(workspace.id)})
        return IdentifyResult(visitor=visitor, outcome=outcome, created=created)
