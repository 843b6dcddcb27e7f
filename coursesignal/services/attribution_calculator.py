"""Attribution calculator: first-touch and last-touch for a purchase.

WHAT:
    Given a resolved visitor and a purchase instant, returns the first-touch
    snapshot (fixed on the identity) and the last touch at or before the
    purchase.

WHY:
    First touch is captured once and never recomputed; last touch is
    recomputed per purchase so it reflects the closing channel.

RULES:
    - Last touch = greatest touched_at <= purchased_at, within the lookback
      window (ATTRIBUTION_LOOKBACK_DAYS, 0 = unbounded)
    - Touches are sorted here; stored order is not trusted (clock skew)
    - Touches exist before the purchase but all fall outside the lookback
      -> last touch is direct
    - No touch at or before the purchase at all (clock skew) -> last touch
      uses the first-touch snapshot
    - Empty touch log -> both are direct (all fields None), still matched

REFERENCES:
    - coursesignal/services/purchase_ingestion.py (caller)
    - coursesignal/services/reattribution_service.py (caller)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from coursesignal.models import Touch, VisitorIdentity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TouchSnapshot:
    """utm (source, medium, campaign, content, term); all None means direct."""

    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    content: Optional[str] = None
    term: Optional[str] = None

    @property
    def is_direct(self) -> bool:
        return self.source is None

    @classmethod
    def from_touch(cls, touch: Touch) -> "TouchSnapshot":
        return cls(
            source=touch.source,
            medium=touch.medium,
            campaign=touch.campaign,
            content=touch.content,
            term=touch.term,
        )

    @classmethod
    def first_touch_of(cls, visitor: VisitorIdentity) -> "TouchSnapshot":
        return cls(
            source=visitor.first_touch_source,
            medium=visitor.first_touch_medium,
            campaign=visitor.first_touch_campaign,
            content=visitor.first_touch_content,
            term=visitor.first_touch_term,
        )

    def to_dict(self) -> dict:
        return {field: getattr(self, field) for field in SNAPSHOT_FIELDS}

    def as_columns(self, prefix: str) -> dict:
        """Column values for a stored snapshot, e.g. prefix="last_touch"."""
        return {f"{prefix}_{field}": getattr(self, field) for field in SNAPSHOT_FIELDS}


SNAPSHOT_FIELDS = ("source", "medium", "campaign", "content", "term")
DIRECT = TouchSnapshot()


@dataclass(frozen=True)
class AttributionResult:
    first_touch: TouchSnapshot
    last_touch: TouchSnapshot

    def columns(self) -> dict:
        """Purchase column values for both snapshots."""
        return {**self.first_touch.as_columns("first_touch"), **self.last_touch.as_columns("last_touch")}


def select_last_touch(
    touches: Iterable[Touch],
    purchased_at: datetime,
    lookback_days: Optional[int] = None,
) -> Optional[Touch]:
    """Latest touch at or before `purchased_at` (inclusive), or None.

    Ties on timestamp resolve to the touch recorded last.
    """
    earliest = purchased_at - timedelta(days=lookback_days) if lookback_days else None

    candidates: List[Touch] = [
        t for t in touches
        if t.touched_at <= purchased_at and (earliest is None or t.touched_at >= earliest)
    ]
    if not candidates:
        return None

    candidates.sort(key=lambda t: (t.touched_at, t.created_at or t.touched_at))
    return candidates[-1]


class AttributionCalculator:
    """Derives first/last touch for purchases of resolved visitors."""

    def __init__(self, db: Session, lookback_days: Optional[int] = 90):
        self.db = db
        self.lookback_days = lookback_days

    def _touches_for(self, visitor: VisitorIdentity, purchased_at: datetime) -> List[Touch]:
        query = self.db.query(Touch).filter(
            Touch.visitor_id == visitor.id,
            Touch.touched_at <= purchased_at,
        )
        if self.lookback_days:
            query = query.filter(Touch.touched_at >= purchased_at - timedelta(days=self.lookback_days))
        return query.all()

    def _has_touch_before(self, visitor: VisitorIdentity, purchased_at: datetime) -> bool:
        return self.db.query(
            self.db.query(Touch.id)
            .filter(Touch.visitor_id == visitor.id, Touch.touched_at <= purchased_at)
            .exists()
        ).scalar()

    def attribute(self, visitor: VisitorIdentity, purchased_at: datetime) -> AttributionResult:
        """Compute first and last touch for a purchase by `visitor` at `purchased_at`."""
        first = TouchSnapshot.first_touch_of(visitor)

        # identify()-only identity: no touches, no snapshot
        if visitor.first_touch_at is None:
            return AttributionResult(first_touch=DIRECT, last_touch=DIRECT)

        last_touch = select_last_touch(
            self._touches_for(visitor, purchased_at),
            purchased_at,
            self.lookback_days,
        )
        if last_touch is None:
            if self._has_touch_before(visitor, purchased_at):
                logger.debug(
                    f"[ATTRIBUTION] All touches before {purchased_at} for visitor {visitor.id} "
                    f"are outside the {self.lookback_days}-day lookback; last touch is direct"
                )
                return AttributionResult(first_touch=first, last_touch=DIRECT)

            logger.debug(
                f"[ATTRIBUTION] No touch at or before {purchased_at} for visitor {visitor.id}; "
                "using first-touch snapshot"
            )
            return AttributionResult(first_touch=first, last_touch=first)

        return AttributionResult(first_touch=first, last_touch=TouchSnapshot.from_touch(last_touch))
