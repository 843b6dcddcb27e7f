"""Identity resolver: links a purchase to the visitor that produced it.

WHAT:
    Finds the VisitorIdentity for a purchase using a strict precedence:
    1. Case-insensitive email match (tenant scoped)
    2. Device fingerprint match (tenant scoped, only when supplied)
    3. Otherwise unmatched

WHY:
    Email survives cross-device journeys ("saw the ad on a phone, bought on a
    laptop from the emailed link"), so it is tried first. A fingerprint only
    helps when checkout happens in the same browser shortly after the visit.

    Resolution is read-only; the ingestion pipeline persists the outcome.

REFERENCES:
    - coursesignal/services/purchase_ingestion.py (caller)
    - coursesignal/services/touch_recorder.py (writer of identities)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from coursesignal.models import AttributionStatusEnum, MatchMethodEnum, VisitorIdentity

logger = logging.getLogger(__name__)


@dataclass
class ResolutionResult:
    """Outcome of identity resolution for one purchase."""

    visitor: Optional[VisitorIdentity]
    status: AttributionStatusEnum
    method: MatchMethodEnum

    @property
    def visitor_id(self) -> Optional[UUID]:
        return self.visitor.id if self.visitor else None

    @property
    def matched(self) -> bool:
        return self.status == AttributionStatusEnum.matched

    def to_dict(self) -> dict:
        return {
            "visitor_id": str(self.visitor_id) if self.visitor_id else None,
            "status": self.status.value,
            "method": self.method.value,
        }


UNMATCHED = ResolutionResult(
    visitor=None,
    status=AttributionStatusEnum.unmatched,
    method=MatchMethodEnum.none,
)


class IdentityResolver:
    """Resolves purchase emails/fingerprints to visitor identities.

    Args:
        db: Database session
        fingerprint_window_hours: Only identities active within this many
            hours before the purchase can match by fingerprint. 0 or None
            disables the bound.
    """

    def __init__(self, db: Session, fingerprint_window_hours: Optional[int] = 24):
        self.db = db
        self.fingerprint_window_hours = fingerprint_window_hours

    def find_by_email(self, workspace_id: UUID, email: str) -> Optional[VisitorIdentity]:
        """Most recently updated identity carrying this email, if any."""
        normalized = (email or "").strip().lower()
        if not normalized:
            return None
        return (
            self.db.query(VisitorIdentity)
            .filter(
                VisitorIdentity.workspace_id == workspace_id,
                func.lower(VisitorIdentity.email) == normalized,
            )
            .order_by(VisitorIdentity.updated_at.desc(), VisitorIdentity.created_at.desc())
            .first()
        )

    def find_by_fingerprint(
        self,
        workspace_id: UUID,
        fingerprint: str,
        purchased_at: Optional[datetime] = None,
    ) -> Optional[VisitorIdentity]:
        """Most recently updated identity with this fingerprint inside the match window."""
        query = self.db.query(VisitorIdentity).filter(
            VisitorIdentity.workspace_id == workspace_id,
            VisitorIdentity.device_fingerprint == fingerprint,
        )
        if self.fingerprint_window_hours and purchased_at is not None:
            cutoff = purchased_at - timedelta(hours=self.fingerprint_window_hours)
            query = query.filter(VisitorIdentity.updated_at >= cutoff)
        return query.order_by(VisitorIdentity.updated_at.desc(), VisitorIdentity.created_at.desc()).first()

    def resolve(
        self,
        workspace_id: UUID,
        email: Optional[str],
        device_fingerprint: Optional[str] = None,
        purchased_at: Optional[datetime] = None,
    ) -> ResolutionResult:
        """Resolve a purchase to a visitor identity.

        Args:
            workspace_id: Tenant scope
            email: Buyer email from the purchase
            device_fingerprint: Optional fingerprint carried through checkout
            purchased_at: Purchase instant (bounds fingerprint matching)

        Returns:
            ResolutionResult; status is unmatched when nothing qualifies.
        """
        if email:
            visitor = self.find_by_email(workspace_id, email)
            if visitor:
                logger.debug(f"[RESOLVE] Email match -> visitor {visitor.id}")
                return ResolutionResult(visitor, AttributionStatusEnum.matched, MatchMethodEnum.email)

        fingerprint = (device_fingerprint or "").strip()
        if fingerprint:
            visitor = self.find_by_fingerprint(workspace_id, fingerprint, purchased_at)
            if visitor:
                logger.debug(f"[RESOLVE] Fingerprint match -> visitor {visitor.id}")
                return ResolutionResult(visitor, AttributionStatusEnum.matched, MatchMethodEnum.fingerprint)

        logger.debug(f"[RESOLVE] No identity for purchase in workspace {workspace_id}")
        return UNMATCHED
