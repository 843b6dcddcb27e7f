"""Tests for dashboard aggregates.

WHAT: Revenue reconciles across views, match rate partitions purchases,
      every ratio survives a zero denominator.
REFERENCES:
  - coursesignal/services/aggregation_service.py
"""

from datetime import datetime
from decimal import Decimal

import pytest

from coursesignal.services.aggregation_service import AggregationService, TimeWindow, _trend

NOV = TimeWindow(since=datetime(2024, 11, 1), until=datetime(2024, 12, 1))


@pytest.fixture
def seeded(workspace, track, recorder, buy):
    """Two matched buyers (facebook, google) and one unmatched buyer in November."""
    track(workspace, "v1", "facebook", "paid", "launch_nov", at=datetime(2024, 11, 1, 10))
    recorder.identify(workspace, "v1", "a@x.com")
    track(workspace, "v2", "google", "cpc", "brand", at=datetime(2024, 11, 2, 10))
    recorder.identify(workspace, "v2", "b@x.com")
    track(workspace, "v3", "facebook", "paid", "retarget", at=datetime(2024, 11, 3, 10))

    buy(workspace, "ord_1", "a@x.com", 297, datetime(2024, 11, 5))
    buy(workspace, "ord_2", "a@x.com", 100, datetime(2024, 11, 6))
    buy(workspace, "ord_3", "b@x.com", 200, datetime(2024, 11, 7))
    buy(workspace, "ord_4", "unknown@nowhere.com", 50, datetime(2024, 11, 8))
    return workspace


class TestSummary:

    def test_totals(self, test_db_session, seeded):
        summary = AggregationService(test_db_session, seeded.id).summarize(NOV)

        assert summary.total_revenue == Decimal("647.00")
        assert summary.total_purchases == 4
        assert summary.total_buyers == 3
        assert summary.avg_order_value == Decimal("647.00") / 4

    def test_empty_window_is_all_zeros(self, test_db_session, workspace):
        summary = AggregationService(test_db_session, workspace.id).summarize(NOV).to_dict()

        assert summary["total_revenue"] == 0
        assert summary["avg_order_value"] == 0
        assert summary["trends"]["revenue"]["delta_pct"] == 0

    def test_trend_against_previous_window(self, test_db_session, seeded, buy):
        buy(seeded, "oct_1", "a@x.com", 100, datetime(2024, 10, 15))

        summary = AggregationService(test_db_session, seeded.id).summarize(NOV)

        assert summary.trends["revenue"].previous == 100
        assert summary.trends["revenue"].delta_pct == 547.0

    def test_trend_helper(self):
        assert _trend(150, 100) == 50.0
        assert _trend(50, 0) == 0.0

    def test_source_filter(self, test_db_session, seeded):
        service = AggregationService(test_db_session, seeded.id)

        facebook = service.summarize(NOV, source="facebook")

        assert facebook.total_revenue == Decimal("397.00")
        assert facebook.total_purchases == 2
        assert facebook.total_buyers == 1
        assert service.summarize(NOV, source="all").total_revenue == Decimal("647.00")

    def test_source_filter_applies_to_previous_window(self, test_db_session, seeded, buy):
        buy(seeded, "oct_1", "a@x.com", 100, datetime(2024, 10, 15))
        buy(seeded, "oct_2", "b@x.com", 900, datetime(2024, 10, 16))

        summary = AggregationService(test_db_session, seeded.id).summarize(NOV, source="facebook")

        assert summary.trends["revenue"].previous == 100
        assert summary.trends["revenue"].delta_pct == 297.0

    def test_direct_source_excludes_unmatched(self, test_db_session, seeded):
        summary = AggregationService(test_db_session, seeded.id).summarize(NOV, source="direct")

        assert summary.total_revenue == 0
        assert summary.total_purchases == 0


class TestBySource:

    def test_revenue_reconciles_with_summary(self, test_db_session, seeded):
        service = AggregationService(test_db_session, seeded.id)

        summary = service.summarize(NOV)
        sources = service.by_source(NOV)
        unmatched = Decimal("50.00")

        assert sum(s.revenue for s in sources) + unmatched == summary.total_revenue

    def test_last_touch_breakdown(self, test_db_session, seeded):
        rows = {s.source: s for s in AggregationService(test_db_session, seeded.id).by_source(NOV)}

        assert rows["facebook"].revenue == Decimal("397.00")
        assert rows["facebook"].buyers == 1
        assert rows["facebook"].purchases == 2
        assert rows["facebook"].visitors == 2
        assert rows["facebook"].conversion_rate == 50.0
        assert rows["google"].revenue == Decimal("200.00")

    def test_sorted_by_revenue(self, test_db_session, seeded):
        sources = AggregationService(test_db_session, seeded.id).by_source(NOV)
        assert [s.source for s in sources] == ["facebook", "google"]

    def test_unmatched_never_appears(self, test_db_session, seeded):
        sources = AggregationService(test_db_session, seeded.id).by_source(NOV)
        assert "unmatched" not in {s.source for s in sources}

    def test_source_with_visitors_but_no_sales(self, test_db_session, workspace, track):
        track(workspace, "v1", "tiktok", at=datetime(2024, 11, 3))

        rows = AggregationService(test_db_session, workspace.id).by_source(NOV)

        assert rows[0].source == "tiktok"
        assert rows[0].revenue == 0
        assert rows[0].conversion_rate == 0

    def test_direct_source_label(self, test_db_session, workspace, recorder, buy):
        recorder.identify(workspace, "v1", "a@x.com")
        buy(workspace, "ord_1", "a@x.com", 10, datetime(2024, 11, 6))

        rows = AggregationService(test_db_session, workspace.id).by_source(NOV)

        assert rows[0].source == "direct"
        assert rows[0].visitors == 0
        assert rows[0].revenue_per_visitor == 0

    def test_first_touch_model(self, test_db_session, workspace, track, recorder, buy):
        track(workspace, "v1", "facebook", at=datetime(2024, 11, 1))
        track(workspace, "v1", "google", at=datetime(2024, 11, 4))
        recorder.identify(workspace, "v1", "a@x.com")
        buy(workspace, "ord_1", "a@x.com", 100, datetime(2024, 11, 5))

        service = AggregationService(test_db_session, workspace.id)

        assert [s.source for s in service.by_source(NOV, model="first_touch") if s.revenue] == ["facebook"]
        assert [s.source for s in service.by_source(NOV, model="last_touch") if s.revenue] == ["google"]

    def test_unknown_model(self, test_db_session, workspace):
        with pytest.raises(ValueError):
            AggregationService(test_db_session, workspace.id).by_source(NOV, model="linear")


class TestMatchRate:

    def test_partition(self, test_db_session, seeded):
        rate = AggregationService(test_db_session, seeded.id).match_rate(NOV)

        assert rate.matched + rate.unmatched == rate.total == 4
        assert rate.rate == 75.0
        assert rate.meets_target is False

    def test_zero_purchases(self, test_db_session, workspace):
        rate = AggregationService(test_db_session, workspace.id).match_rate(NOV)

        assert rate.rate == 0
        assert rate.meets_target is False


class TestReporting:

    def test_recent_purchases_order_and_clamp(self, test_db_session, seeded):
        service = AggregationService(test_db_session, seeded.id)

        recent = service.recent_purchases(limit=2)
        assert [p.platform_purchase_id for p in recent] == ["ord_4", "ord_3"]
        assert len(service.recent_purchases(limit=0)) == 1

    def test_drilldown(self, test_db_session, seeded):
        rows = AggregationService(test_db_session, seeded.id).source_drilldown(NOV, "facebook")

        assert rows == [{
            "campaign": "launch_nov",
            "medium": "paid",
            "revenue": 397.0,
            "buyers": 1,
            "purchases": 2,
        }]

    def test_export_csv(self, test_db_session, seeded):
        content = AggregationService(test_db_session, seeded.id).export_csv(NOV)
        lines = content.strip().splitlines()

        assert lines[0].startswith("Source,Visitors,Revenue")
        assert lines[1].startswith("facebook,2,397.00")
        assert lines[-1].startswith("unmatched,0,50.00")

    def test_daily_revenue_is_zero_filled(self, test_db_session, seeded):
        window = TimeWindow(since=datetime(2024, 11, 5), until=datetime(2024, 11, 9))
        days = AggregationService(test_db_session, seeded.id).daily_revenue(window)

        assert [d.day.day for d in days] == [5, 6, 7, 8]
        assert [d.revenue for d in days] == [Decimal("297.00"), Decimal("100.00"), Decimal("200.00"), Decimal("50.00")]

    def test_tenant_isolation(self, test_db_session, seeded, workspace_b):
        service = AggregationService(test_db_session, workspace_b.id)

        assert service.summarize(NOV).total_purchases == 0
        assert service.by_source(NOV) == []
