"""HTTP tests for the analytics endpoints.

REFERENCES:
  - coursesignal/routers/analytics.py
"""

from datetime import datetime
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

NOV = {"since": "2024-11-01T00:00:00", "until": "2024-12-01T00:00:00"}


@pytest.fixture
def seeded(workspace, track, recorder, buy):
    track(workspace, "v1", "facebook", "paid", "launch_nov", at=datetime(2024, 11, 1, 10))
    recorder.identify(workspace, "v1", "a@x.com")
    track(workspace, "v2", "google", "cpc", "brand", at=datetime(2024, 11, 2, 10))
    recorder.identify(workspace, "v2", "b@x.com")

    buy(workspace, "ord_1", "a@x.com", 297, datetime(2024, 11, 5))
    buy(workspace, "ord_2", "b@x.com", 200, datetime(2024, 11, 7))
    buy(workspace, "ord_3", "unknown@nowhere.com", 50, datetime(2024, 11, 8))
    return workspace


def _url(workspace, path):
    return f"/workspaces/{workspace.id}/analytics/{path}"


class TestAnalyticsEndpoints:

    def test_summary(self, client, seeded):
        response = client.get(_url(seeded, "summary"), params=NOV)

        assert response.status_code == 200
        body = response.json()
        assert body["total_revenue"] == 547.0
        assert body["total_purchases"] == 3
        assert body["total_buyers"] == 3
        assert set(body["trends"]) == {"revenue", "buyers", "avg_order_value", "purchases"}

    def test_summary_for_one_source(self, client, seeded):
        body = client.get(_url(seeded, "summary"), params={**NOV, "source": "google"}).json()

        assert body["source"] == "google"
        assert body["total_revenue"] == 200.0
        assert body["total_purchases"] == 1

    def test_summary_source_by_first_touch(self, client, seeded):
        params = {**NOV, "source": "facebook", "model": "first_touch"}
        body = client.get(_url(seeded, "summary"), params=params).json()

        assert body["total_revenue"] == 297.0

    def test_sources(self, client, seeded):
        response = client.get(_url(seeded, "sources"), params=NOV)

        assert response.status_code == 200
        rows = response.json()
        assert [r["source"] for r in rows] == ["facebook", "google"]
        assert rows[0]["revenue"] == 297.0
        assert rows[0]["conversion_rate"] == 100.0

    def test_sources_first_touch_model(self, client, seeded):
        response = client.get(_url(seeded, "sources"), params={**NOV, "model": "first_touch"})
        assert response.status_code == 200

    def test_sources_rejects_unknown_model(self, client, seeded):
        response = client.get(_url(seeded, "sources"), params={**NOV, "model": "linear"})
        assert response.status_code == 422

    def test_match_rate(self, client, seeded):
        body = client.get(_url(seeded, "match-rate"), params=NOV).json()

        assert body["total_purchases"] == 3
        assert body["matched_purchases"] == 2
        assert body["match_rate"] == pytest.approx(66.7)
        assert body["target"] == 85.0
        assert body["meets_target"] is False

    def test_recent_purchases(self, client, seeded):
        response = client.get(_url(seeded, "recent-purchases"), params={"limit": 2})

        assert response.status_code == 200
        assert [p["platform_purchase_id"] for p in response.json()] == ["ord_3", "ord_2"]

    def test_drilldown(self, client, seeded):
        body = client.get(_url(seeded, "drilldown"), params={**NOV, "source": "google"}).json()

        assert body["source"] == "google"
        assert body["rows"][0]["campaign"] == "brand"

    def test_export_csv(self, client, seeded):
        response = client.get(_url(seeded, "export"), params=NOV)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment" in response.headers["content-disposition"]
        assert response.text.startswith("Source,Visitors,Revenue")

    def test_invalid_window(self, client, seeded):
        response = client.get(_url(seeded, "summary"), params={"since": NOV["until"], "until": NOV["since"]})
        assert response.status_code == 400

    def test_empty_workspace(self, client, workspace):
        body = client.get(_url(workspace, "summary")).json()
        assert body["total_revenue"] == 0
        assert body["avg_order_value"] == 0

    def test_unknown_workspace(self, client):
        response = client.get(f"/workspaces/{uuid4()}/analytics/summary")
        assert response.status_code == 404


class TestReattributeEndpoint:

    def test_enqueues_job(self, client, workspace):
        enqueue = AsyncMock(return_value={"job_id": "reattribute:abc", "status": "queued"})

        with patch("coursesignal.routers.analytics.enqueue_reattribution_job", enqueue):
            response = client.post(
                f"/workspaces/{workspace.id}/analytics/reattribute",
                json={"since": "2024-11-01T00:00:00Z", "only_unmatched": True},
            )

        assert response.status_code == 202
        assert response.json() == {"job_id": "reattribute:abc", "status": "queued"}

        args, kwargs = enqueue.call_args
        assert args[0] == workspace.id
        assert kwargs["since"] == datetime(2024, 11, 1)
        assert kwargs["until"] is None
        assert kwargs["only_unmatched"] is True

    def test_rejects_inverted_window(self, client, workspace):
        response = client.post(
            f"/workspaces/{workspace.id}/analytics/reattribute",
            json={"since": "2024-12-01T00:00:00Z", "until": "2024-11-01T00:00:00Z"},
        )
        assert response.status_code == 422
