"""Re-attribution (backfill) of historical purchases.

WHAT:
    Re-runs identity resolution and attribution for a set of stored
    purchases, e.g. after a resolver fix or when touches/identify calls
    arrived after the purchase webhook.

WHY:
    Attribution is frozen at ingestion. This is the one explicit path that
    rewrites it, so it must be:
    - Idempotent: re-running over the same purchases yields the same rows
    - Resumable: ids are snapshotted in (purchased_at, id) order and a cursor
      is reported after every committed purchase
    - Non-blocking: one short transaction per purchase, never one giant one

REFERENCES:
    - coursesignal/workers/arq_worker.py (reattribute_purchases_job)
    - coursesignal/routers/analytics.py (POST /reattribute enqueues the job)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from coursesignal.models import AttributionStatusEnum, MatchMethodEnum, Purchase
from coursesignal.services.attribution_calculator import DIRECT, AttributionCalculator, AttributionResult
from coursesignal.services.identity_resolver import IdentityResolver
from coursesignal.telemetry import capture_exception
from coursesignal.utils.time import to_naive_utc

logger = logging.getLogger(__name__)


@dataclass
class ReattributionReport:
    """Progress of one backfill run.

    `cursor` is (purchased_at, id) of the last processed purchase; pass it as
    `start_after` to resume.
    """
    scanned: int = 0
    updated: int = 0
    newly_matched: int = 0
    failed: int = 0
    cursor: Optional[tuple] = None
    failed_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        cursor = None
        if self.cursor:
            cursor = {"purchased_at": self.cursor[0].isoformat(), "id": str(self.cursor[1])}
        return {
            "scanned": self.scanned,
            "updated": self.updated,
            "newly_matched": self.newly_matched,
            "failed": self.failed,
            "cursor": cursor,
            "failed_ids": self.failed_ids,
        }


_UNATTRIBUTED = AttributionResult(first_touch=DIRECT, last_touch=DIRECT).columns()
_ATTRIBUTION_COLUMNS = ("visitor_id", "attribution_status", "match_method", *_UNATTRIBUTED)


class ReattributionService:
    """Recomputes stored attribution for one workspace."""

    def __init__(
        self,
        db: Session,
        workspace_id: UUID,
        lookback_days: Optional[int] = 90,
        fingerprint_window_hours: Optional[int] = 24,
    ):
        self.db = db
        self.workspace_id = workspace_id
        self.resolver = IdentityResolver(db, fingerprint_window_hours=fingerprint_window_hours)
        self.calculator = AttributionCalculator(db, lookback_days=lookback_days)

    def _snapshot_ids(
        self,
        since: Optional[datetime],
        until: Optional[datetime],
        only_unmatched: bool,
        start_after: Optional[tuple],
        limit: Optional[int],
    ) -> List[tuple]:
        query = self.db.query(Purchase.purchased_at, Purchase.id).filter(
            Purchase.workspace_id == self.workspace_id,
        )
        if since is not None:
            query = query.filter(Purchase.purchased_at >= since)
        if until is not None:
            query = query.filter(Purchase.purchased_at < until)
        if only_unmatched:
            query = query.filter(Purchase.attribution_status == AttributionStatusEnum.unmatched)
        if start_after is not None:
            after_at, after_id = start_after
            query = query.filter(or_(
                Purchase.purchased_at > after_at,
                and_(Purchase.purchased_at == after_at, Purchase.id > after_id),
            ))
        query = query.order_by(Purchase.purchased_at.asc(), Purchase.id.asc())
        if limit:
            query = query.limit(limit)
        return [(row[0], row[1]) for row in query.all()]

    def _computed_fields(self, purchase: Purchase) -> dict:
        # Device fingerprints are not stored on purchases; backfills resolve by email
        resolution = self.resolver.resolve(self.workspace_id, purchase.email, None, purchase.purchased_at)
        values = {
            "visitor_id": resolution.visitor_id,
            "attribution_status": resolution.status,
            "match_method": resolution.method,
            **_UNATTRIBUTED,
        }
        if resolution.matched:
            result = self.calculator.attribute(resolution.visitor, purchase.purchased_at)
            values.update(result.columns())
        return values

    def reattribute_purchase(self, purchase: Purchase) -> bool:
        """Recompute one purchase in its own transaction.

        A purchase previously matched by fingerprint keeps its match when
        email resolution now finds nothing.

        Returns:
            True if any attribution column changed.
        """
        values = self._computed_fields(purchase)
        if (
            values["attribution_status"] == AttributionStatusEnum.unmatched
            and purchase.attribution_status == AttributionStatusEnum.matched
            and purchase.match_method == MatchMethodEnum.fingerprint
        ):
            return False

        changed = any(getattr(purchase, column) != values[column] for column in _ATTRIBUTION_COLUMNS)
        if changed:
            for column, value in values.items():
                setattr(purchase, column, value)
            self.db.commit()
        return changed

    def run(
        self,
        since=None,
        until=None,
        only_unmatched: bool = False,
        start_after: Optional[tuple] = None,
        limit: Optional[int] = None,
    ) -> ReattributionReport:
        """Backfill purchases in [since, until), resuming after `start_after`.

        Args:
            since/until: Optional bounds on purchased_at (datetime or ISO string)
            only_unmatched: Only retry purchases currently unmatched
            start_after: Resume cursor (purchased_at, id) from a previous report
            limit: Max purchases to process in this run
        """
        report = ReattributionReport(cursor=start_after)
        ids = self._snapshot_ids(to_naive_utc(since), to_naive_utc(until), only_unmatched, start_after, limit)

        logger.info(
            f"[REATTRIBUTE] Starting backfill of {len(ids)} purchases",
            extra={"workspace_id": str(self.workspace_id), "only_unmatched": only_unmatched},
        )

        for purchased_at, purchase_id in ids:
            purchase = self.db.query(Purchase).filter(Purchase.id == purchase_id).first()
            report.scanned += 1
            if purchase is None:
                # Deleted since the snapshot was taken
                report.cursor = (purchased_at, purchase_id)
                continue

            was_unmatched = purchase.attribution_status == AttributionStatusEnum.unmatched
            try:
                if self.reattribute_purchase(purchase):
                    report.updated += 1
                    if was_unmatched and purchase.attribution_status == AttributionStatusEnum.matched:
                        report.newly_matched += 1
            except Exception as e:
                self.db.rollback()
                report.failed += 1
                report.failed_ids.append(str(purchase_id))
                capture_exception(e, extra={"purchase_id": str(purchase_id), "workspace_id": str(self.workspace_id)})
            report.cursor = (purchased_at, purchase_id)

        logger.info(
            f"[REATTRIBUTE] Done: scanned={report.scanned} updated={report.updated} "
            f"newly_matched={report.newly_matched} failed={report.failed}",
            extra={"workspace_id": str(self.workspace_id)},
        )
        return report
