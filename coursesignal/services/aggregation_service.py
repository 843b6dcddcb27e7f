"""Aggregation engine: revenue, source, match-rate and launch metrics.

WHAT:
    Read-only reductions over a workspace's purchases and touches:
    - summarize():         revenue / buyers / AOV / purchases + trends
    - by_source():         per-source revenue and conversion (last touch default)
    - match_rate():        matched / total purchases
    - recent_purchases():  reverse-chronological feed
    - source_drilldown():  one source split by campaign and medium
    - export_csv():        by_source as CSV
    - launch_analytics():  all of the above scoped to a launch window
    - compare_launches():  side-by-side metrics for up to 3 launches

WHY:
    Dashboards must always render: every ratio has a zero guard and an empty
    window yields zeros, never exceptions.

RECONCILIATION:
    summarize().total_revenue == sum(by_source revenue) + unmatched revenue.
    Unmatched purchases count in summaries and match rate, never in by_source.

REFERENCES:
    - coursesignal/routers/analytics.py
    - coursesignal/routers/launches.py
"""

from __future__ import annotations

import csv
import io
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from coursesignal.models import AttributionStatusEnum, Launch, LaunchView, Purchase, Touch, VisitorIdentity
from coursesignal.services.launch_service import compute_status

logger = logging.getLogger(__name__)

DIRECT_SOURCE = "direct"
UNMATCHED_SOURCE = "unmatched"
ATTRIBUTION_MODELS = ("last_touch", "first_touch")
MAX_COMPARED_LAUNCHES = 3

ZERO = Decimal("0")


# =============================================================================
# WINDOWS
# =============================================================================

@dataclass(frozen=True)
class TimeWindow:
    """Half-open [since, until) window, or closed [since, until] when inclusive_end."""

    since: datetime
    until: datetime
    inclusive_end: bool = False

    @property
    def length(self) -> timedelta:
        return self.until - self.since

    def previous(self) -> "TimeWindow":
        """Immediately preceding window of identical length (always half-open)."""
        return TimeWindow(since=self.since - self.length, until=self.since)

    def contains(self, instant: datetime) -> bool:
        if instant < self.since:
            return False
        return instant <= self.until if self.inclusive_end else instant < self.until

    @classmethod
    def last_days(cls, days: int, now: datetime) -> "TimeWindow":
        return cls(since=now - timedelta(days=days), until=now)

    @classmethod
    def for_launch(cls, launch: Launch) -> "TimeWindow":
        return cls(since=launch.start_date, until=launch.end_date, inclusive_end=True)


# =============================================================================
# RESULT TYPES
# =============================================================================

def _pct(numerator, denominator) -> float:
    """numerator / denominator * 100, or 0 when the denominator is 0."""
    return float(numerator) / float(denominator) * 100 if denominator else 0.0


def _trend(current, previous) -> float:
    """Period-over-period change in percent, one decimal; 0 when previous is 0."""
    return round(_pct(Decimal(str(current)) - Decimal(str(previous)), previous), 1)


def _money(value: Decimal) -> float:
    return float(Decimal(value).quantize(Decimal("0.01")))


@dataclass
class MetricValue:
    """Single metric value with comparison to the previous window."""
    value: float
    previous: float = 0.0
    delta_pct: float = 0.0

    def to_dict(self) -> dict:
        return {"value": self.value, "previous": self.previous, "delta_pct": self.delta_pct}


@dataclass
class Summary:
    total_revenue: Decimal
    total_buyers: int
    avg_order_value: Decimal
    total_purchases: int
    trends: Dict[str, MetricValue] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total_revenue": _money(self.total_revenue),
            "total_buyers": self.total_buyers,
            "avg_order_value": _money(self.avg_order_value),
            "total_purchases": self.total_purchases,
            "trends": {name: trend.to_dict() for name, trend in self.trends.items()},
        }


@dataclass
class SourceMetrics:
    source: str
    visitors: int
    revenue: Decimal
    buyers: int
    purchases: int
    conversion_rate: float
    avg_order_value: Decimal
    revenue_per_visitor: Decimal

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "visitors": self.visitors,
            "revenue": _money(self.revenue),
            "buyers": self.buyers,
            "purchases": self.purchases,
            "conversion_rate": round(self.conversion_rate, 1),
            "avg_order_value": _money(self.avg_order_value),
            "revenue_per_visitor": _money(self.revenue_per_visitor),
        }


@dataclass
class MatchRate:
    total: int
    matched: int
    unmatched: int
    rate: float
    target: float = 85.0

    @property
    def meets_target(self) -> bool:
        return self.total > 0 and self.rate >= self.target

    def to_dict(self) -> dict:
        return {
            "total_purchases": self.total,
            "matched_purchases": self.matched,
            "unmatched_purchases": self.unmatched,
            "match_rate": round(self.rate, 1),
            "target": self.target,
            "meets_target": self.meets_target,
        }


@dataclass
class DailyRevenue:
    day: date
    revenue: Decimal
    purchases: int

    def to_dict(self) -> dict:
        return {"date": self.day.isoformat(), "revenue": _money(self.revenue), "purchases": self.purchases}


@dataclass
class LaunchAnalytics:
    launch: Launch
    summary: Summary
    by_source: List[SourceMetrics]
    match_rate: MatchRate
    visitors: int
    conversion_rate: float
    duration_days: int
    revenue_per_day: Decimal
    revenue_goal_progress: float
    sales_goal_progress: float
    daily_revenue: List[DailyRevenue]
    view_count: int = 0

    def to_dict(self) -> dict:
        launch = self.launch
        return {
            "launch": {
                "id": str(launch.id),
                "title": launch.title,
                "description": launch.description,
                "start_date": launch.start_date.isoformat(),
                "end_date": launch.end_date.isoformat(),
                "status": compute_status(launch).value,
                "revenue_goal": _money(launch.revenue_goal) if launch.revenue_goal is not None else None,
                "sales_goal": launch.sales_goal,
            },
            "summary": self.summary.to_dict(),
            "by_source": [s.to_dict() for s in self.by_source],
            "match_rate": self.match_rate.to_dict(),
            "visitors": self.visitors,
            "conversion_rate": round(self.conversion_rate, 1),
            "duration_days": self.duration_days,
            "revenue_per_day": _money(self.revenue_per_day),
            "goal_progress": {
                "revenue_percentage": round(self.revenue_goal_progress, 1),
                "sales_percentage": round(self.sales_goal_progress, 1),
            },
            "daily_revenue": [d.to_dict() for d in self.daily_revenue],
            "view_count": self.view_count,
        }


def launch_duration_days(launch: Launch) -> int:
    """Whole days covered by a launch, at least 1."""
    seconds = (launch.end_date - launch.start_date).total_seconds()
    return max(1, math.ceil(seconds / 86400))


# =============================================================================
# SERVICE
# =============================================================================

class AggregationService:
    """Read-only metrics for one workspace."""

    def __init__(self, db: Session, workspace_id: UUID, match_rate_target: float = 85.0):
        self.db = db
        self.workspace_id = workspace_id
        self.match_rate_target = match_rate_target

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def _purchases(self, window: TimeWindow) -> List[Purchase]:
        query = self.db.query(Purchase).filter(
            Purchase.workspace_id == self.workspace_id,
            Purchase.purchased_at >= window.since,
        )
        if window.inclusive_end:
            query = query.filter(Purchase.purchased_at <= window.until)
        else:
            query = query.filter(Purchase.purchased_at < window.until)
        return query.all()

    def _touches(self, window: TimeWindow) -> List[Touch]:
        query = self.db.query(Touch).filter(
            Touch.workspace_id == self.workspace_id,
            Touch.touched_at >= window.since,
        )
        if window.inclusive_end:
            query = query.filter(Touch.touched_at <= window.until)
        else:
            query = query.filter(Touch.touched_at < window.until)
        return query.all()

    @staticmethod
    def _source_of(purchase: Purchase, model: str) -> str:
        source = purchase.first_touch_source if model == "first_touch" else purchase.last_touch_source
        return source or DIRECT_SOURCE

    def _visitors_by_source(self, window: TimeWindow, model: str) -> Dict[str, int]:
        """Distinct visitors per source within the window.

        last_touch:  source of each visitor's latest in-window touch
        first_touch: first-touch source of visitors first seen in the window
        """
        counts: Dict[str, int] = defaultdict(int)

        if model == "first_touch":
            query = self.db.query(VisitorIdentity).filter(
                VisitorIdentity.workspace_id == self.workspace_id,
                VisitorIdentity.first_touch_at.isnot(None),
                VisitorIdentity.first_touch_at >= window.since,
            )
            if window.inclusive_end:
                query = query.filter(VisitorIdentity.first_touch_at <= window.until)
            else:
                query = query.filter(VisitorIdentity.first_touch_at < window.until)
            for visitor in query.all():
                counts[visitor.first_touch_source or DIRECT_SOURCE] += 1
            return counts

        latest: Dict[UUID, Touch] = {}
        for touch in self._touches(window):
            current = latest.get(touch.visitor_id)
            if current is None or (touch.touched_at, touch.created_at) > (current.touched_at, current.created_at):
                latest[touch.visitor_id] = touch
        for touch in latest.values():
            counts[touch.source or DIRECT_SOURCE] += 1
        return counts

    @staticmethod
    def _totals(purchases: Sequence[Purchase]) -> Dict[str, Decimal]:
        revenue = sum((Decimal(p.amount) for p in purchases), ZERO)
        count = len(purchases)
        buyers = len({p.email.lower() for p in purchases})
        aov = revenue / count if count else ZERO
        return {"revenue": revenue, "buyers": buyers, "purchases": count, "avg_order_value": aov}

    # -------------------------------------------------------------------------
    # Core aggregates
    # -------------------------------------------------------------------------

    def _credited_to(self, purchases: Iterable[Purchase], source: Optional[str], model: str) -> List[Purchase]:
        """Matched purchases credited to `source`; no filter for None or "all"."""
        if not source or source == "all":
            return list(purchases)
        return [
            p for p in purchases
            if p.attribution_status == AttributionStatusEnum.matched and self._source_of(p, model) == source
        ]

    def summarize(self, window: TimeWindow, source: Optional[str] = None, model: str = "last_touch") -> Summary:
        """Totals over all purchases (matched and unmatched) with trends.

        With `source`, both periods only count matched purchases credited to
        that source under `model`.
        """
        if model not in ATTRIBUTION_MODELS:
            raise ValueError(f"Unknown attribution model {model!r}")

        current = self._totals(self._credited_to(self._purchases(window), source, model))
        previous = self._totals(self._credited_to(self._purchases(window.previous()), source, model))

        trends = {
            name: MetricValue(
                value=float(current[name]),
                previous=float(previous[name]),
                delta_pct=_trend(current[name], previous[name]),
            )
            for name in ("revenue", "buyers", "avg_order_value", "purchases")
        }

        return Summary(
            total_revenue=current["revenue"],
            total_buyers=current["buyers"],
            avg_order_value=current["avg_order_value"],
            total_purchases=current["purchases"],
            trends=trends,
        )

    def by_source(self, window: TimeWindow, model: str = "last_touch") -> List[SourceMetrics]:
        """Per-source metrics for matched purchases, sorted by revenue.

        Sources that drew visitors but no sales are included with zero revenue.
        """
        if model not in ATTRIBUTION_MODELS:
            raise ValueError(f"Unknown attribution model {model!r}")

        grouped: Dict[str, List[Purchase]] = defaultdict(list)
        for purchase in self._purchases(window):
            if purchase.attribution_status != AttributionStatusEnum.matched:
                continue
            grouped[self._source_of(purchase, model)].append(purchase)

        visitors = self._visitors_by_source(window, model)

        results: List[SourceMetrics] = []
        for source in set(grouped) | set(visitors):
            totals = self._totals(grouped.get(source, []))
            source_visitors = visitors.get(source, 0)
            results.append(SourceMetrics(
                source=source,
                visitors=source_visitors,
                revenue=totals["revenue"],
                buyers=totals["buyers"],
                purchases=totals["purchases"],
                conversion_rate=_pct(totals["buyers"], source_visitors),
                avg_order_value=totals["avg_order_value"],
                revenue_per_visitor=totals["revenue"] / source_visitors if source_visitors else ZERO,
            ))

        results.sort(key=lambda s: (-s.revenue, -s.visitors, s.source))
        return results

    def match_rate(self, window: TimeWindow) -> MatchRate:
        purchases = self._purchases(window)
        matched = sum(1 for p in purchases if p.attribution_status == AttributionStatusEnum.matched)
        total = len(purchases)
        return MatchRate(
            total=total,
            matched=matched,
            unmatched=total - matched,
            rate=_pct(matched, total),
            target=self.match_rate_target,
        )

    def recent_purchases(self, limit: int = 10) -> List[Purchase]:
        limit = max(1, min(limit, 100))
        return (
            self.db.query(Purchase)
            .filter(Purchase.workspace_id == self.workspace_id)
            .order_by(Purchase.purchased_at.desc(), Purchase.created_at.desc())
            .limit(limit)
            .all()
        )

    # -------------------------------------------------------------------------
    # Reporting extras
    # -------------------------------------------------------------------------

    def source_drilldown(self, window: TimeWindow, source: str, model: str = "last_touch") -> List[dict]:
        """Split one source's matched purchases by (campaign, medium)."""
        if model not in ATTRIBUTION_MODELS:
            raise ValueError(f"Unknown attribution model {model!r}")

        grouped: Dict[tuple, List[Purchase]] = defaultdict(list)
        for purchase in self._purchases(window):
            if purchase.attribution_status != AttributionStatusEnum.matched:
                continue
            if self._source_of(purchase, model) != source:
                continue
            if model == "first_touch":
                key = (purchase.first_touch_campaign, purchase.first_touch_medium)
            else:
                key = (purchase.last_touch_campaign, purchase.last_touch_medium)
            grouped[key].append(purchase)

        rows = []
        for (campaign, medium), purchases in grouped.items():
            totals = self._totals(purchases)
            rows.append({
                "campaign": campaign or "(none)",
                "medium": medium or "none",
                "revenue": _money(totals["revenue"]),
                "buyers": totals["buyers"],
                "purchases": totals["purchases"],
            })
        rows.sort(key=lambda r: (-r["revenue"], r["campaign"], r["medium"]))
        return rows

    def export_csv(self, window: TimeWindow, model: str = "last_touch") -> str:
        """by_source as CSV text, plus an unmatched row when present."""
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow([
            "Source", "Visitors", "Revenue", "Buyers", "Purchases",
            "Conversion Rate (%)", "Avg Order Value", "Revenue per Visitor",
        ])
        for row in self.by_source(window, model):
            writer.writerow([
                row.source,
                row.visitors,
                f"{row.revenue:.2f}",
                row.buyers,
                row.purchases,
                f"{row.conversion_rate:.1f}",
                f"{row.avg_order_value:.2f}",
                f"{row.revenue_per_visitor:.2f}",
            ])

        unmatched = [
            p for p in self._purchases(window)
            if p.attribution_status == AttributionStatusEnum.unmatched
        ]
        if unmatched:
            totals = self._totals(unmatched)
            writer.writerow([
                UNMATCHED_SOURCE, 0, f"{totals['revenue']:.2f}", totals["buyers"], totals["purchases"],
                "0.0", f"{totals['avg_order_value']:.2f}", "0.00",
            ])
        return buffer.getvalue()

    # -------------------------------------------------------------------------
    # Launches
    # -------------------------------------------------------------------------

    def daily_revenue(self, window: TimeWindow) -> List[DailyRevenue]:
        """Revenue per calendar day (UTC), zero-filled across the window."""
        per_day: Dict[date, List[Purchase]] = defaultdict(list)
        for purchase in self._purchases(window):
            per_day[purchase.purchased_at.date()].append(purchase)

        days: List[DailyRevenue] = []
        day = window.since.date()
        last = window.until.date()
        if not window.inclusive_end and window.until == datetime.combine(last, datetime.min.time()):
            last -= timedelta(days=1)
        while day <= last:
            purchases = per_day.get(day, [])
            days.append(DailyRevenue(
                day=day,
                revenue=sum((Decimal(p.amount) for p in purchases), ZERO),
                purchases=len(purchases),
            ))
            day += timedelta(days=1)
        return days

    def launch_analytics(self, launch: Launch) -> LaunchAnalytics:
        """Aggregates for purchases inside the launch's [start_date, end_date]."""
        if launch.workspace_id != self.workspace_id:
            raise ValueError("Launch belongs to another workspace")

        window = TimeWindow.for_launch(launch)
        summary = self.summarize(window)
        visitors = len({t.visitor_id for t in self._touches(window)})
        duration = launch_duration_days(launch)

        revenue_goal = Decimal(launch.revenue_goal) if launch.revenue_goal else ZERO
        view_count = self.db.query(LaunchView).filter(LaunchView.launch_id == launch.id).count()

        return LaunchAnalytics(
            launch=launch,
            summary=summary,
            by_source=self.by_source(window),
            match_rate=self.match_rate(window),
            visitors=visitors,
            conversion_rate=_pct(summary.total_buyers, visitors),
            duration_days=duration,
            revenue_per_day=summary.total_revenue / duration,
            revenue_goal_progress=_pct(summary.total_revenue, revenue_goal),
            sales_goal_progress=_pct(summary.total_buyers, launch.sales_goal or 0),
            daily_revenue=self.daily_revenue(window),
            view_count=view_count,
        )

    def compare_launches(self, launches: Iterable[Launch]) -> List[dict]:
        """Headline metrics for 1 to 3 launches, in the order given."""
        launches = list(launches)
        if not 1 <= len(launches) <= MAX_COMPARED_LAUNCHES:
            raise ValueError(f"Compare between 1 and {MAX_COMPARED_LAUNCHES} launches")

        rows = []
        for launch in launches:
            analytics = self.launch_analytics(launch)
            rows.append({
                "id": str(launch.id),
                "title": launch.title,
                "start_date": launch.start_date.isoformat(),
                "end_date": launch.end_date.isoformat(),
                "status": compute_status(launch).value,
                "revenue": _money(analytics.summary.total_revenue),
                "buyers": analytics.summary.total_buyers,
                "purchases": analytics.summary.total_purchases,
                "avg_order_value": _money(analytics.summary.avg_order_value),
                "conversion_rate": round(analytics.conversion_rate, 1),
                "match_rate": round(analytics.match_rate.rate, 1),
                "duration_days": analytics.duration_days,
                "revenue_per_day": _money(analytics.revenue_per_day),
                "revenue_goal_progress": round(analytics.revenue_goal_progress, 1),
                "sales_goal_progress": round(analytics.sales_goal_progress, 1),
            })
        return rows

    def shared_recap(self, launch: Launch) -> dict:
        """Public recap payload: no emails, no purchase-level data."""
        analytics = self.launch_analytics(launch)
        return {
            "launch": {
                "title": launch.title,
                "description": launch.description,
                "start_date": launch.start_date.isoformat(),
                "end_date": launch.end_date.isoformat(),
                "status": compute_status(launch).value,
            },
            "metrics": {
                "revenue": _money(analytics.summary.total_revenue),
                "students": analytics.summary.total_buyers,
                "purchases": analytics.summary.total_purchases,
                "conversion_rate": round(analytics.conversion_rate, 1),
                "avg_order_value": _money(analytics.summary.avg_order_value),
            },
            "top_sources": [
                {"source": s.source, "revenue": _money(s.revenue), "students": s.buyers}
                for s in analytics.by_source
                if s.purchases
            ][:3],
            "daily_revenue": [d.to_dict() for d in analytics.daily_revenue],
        }
