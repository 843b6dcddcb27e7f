"""Tests for re-attribution backfills.

WHAT: Late identity data upgrades unmatched purchases; runs are idempotent
      and resumable.
REFERENCES:
  - coursesignal/services/reattribution_service.py
  - coursesignal/workers/arq_worker.py (run_reattribution)
"""

from datetime import datetime
from uuid import uuid4

from coursesignal.models import AttributionStatusEnum, MatchMethodEnum, Purchase
from coursesignal.services.reattribution_service import ReattributionService
from coursesignal.utils.time import utcnow
from coursesignal.workers.arq_worker import run_launch_status_refresh, run_reattribution


def _late_identify_setup(workspace, track, recorder, buy):
    """Purchase arrives before the visitor is identified."""
    track(workspace, "v1", "facebook", "paid", "launch_nov", at=datetime(2024, 11, 1))
    purchase = buy(workspace, "ord_1", "a@x.com", 297, datetime(2024, 11, 6)).purchase
    recorder.identify(workspace, "v1", "a@x.com")
    return purchase


class TestReattributionService:

    def test_late_identify_is_matched(self, test_db_session, workspace, track, recorder, buy):
        purchase = _late_identify_setup(workspace, track, recorder, buy)
        assert purchase.attribution_status == AttributionStatusEnum.unmatched

        report = ReattributionService(test_db_session, workspace.id).run()

        test_db_session.refresh(purchase)
        assert report.scanned == 1
        assert report.updated == 1
        assert report.newly_matched == 1
        assert purchase.attribution_status == AttributionStatusEnum.matched
        assert purchase.match_method == MatchMethodEnum.email
        assert purchase.last_touch_source == "facebook"

    def test_idempotent(self, test_db_session, workspace, track, recorder, buy):
        _late_identify_setup(workspace, track, recorder, buy)
        service = ReattributionService(test_db_session, workspace.id)

        service.run()
        second = service.run()

        assert second.scanned == 1
        assert second.updated == 0

    def test_only_unmatched_skips_matched(self, test_db_session, workspace, track, recorder, buy):
        recorder.identify(workspace, "v0", "b@x.com")
        buy(workspace, "ord_0", "b@x.com", 10, datetime(2024, 11, 2))
        _late_identify_setup(workspace, track, recorder, buy)

        report = ReattributionService(test_db_session, workspace.id).run(only_unmatched=True)

        assert report.scanned == 1

    def test_fingerprint_match_is_kept(self, test_db_session, workspace, track, buy):
        track(workspace, "v1", "youtube", fingerprint="fp-1")
        purchase = buy(
            workspace, "ord_1", "other@gmail.com", 49, utcnow(), device_fingerprint="fp-1"
        ).purchase

        report = ReattributionService(test_db_session, workspace.id).run()

        test_db_session.refresh(purchase)
        assert report.updated == 0
        assert purchase.match_method == MatchMethodEnum.fingerprint

    def test_resume_from_cursor(self, test_db_session, workspace, buy):
        for i in range(5):
            buy(workspace, f"ord_{i}", f"buyer{i}@x.com", 10, datetime(2024, 11, 1 + i))
        service = ReattributionService(test_db_session, workspace.id)

        first = service.run(limit=2)
        rest = service.run(start_after=first.cursor)

        assert first.scanned == 2
        assert rest.scanned == 3
        assert first.cursor[0] == datetime(2024, 11, 2)

    def test_window_bounds(self, test_db_session, workspace, buy):
        buy(workspace, "ord_1", "a@x.com", 10, datetime(2024, 10, 31))
        buy(workspace, "ord_2", "a@x.com", 10, datetime(2024, 11, 15))

        report = ReattributionService(test_db_session, workspace.id).run(
            since="2024-11-01T00:00:00Z", until="2024-12-01T00:00:00Z"
        )

        assert report.scanned == 1

    def test_failure_is_recorded_and_run_continues(self, test_db_session, workspace, buy, monkeypatch):
        buy(workspace, "ord_1", "a@x.com", 10, datetime(2024, 11, 1))
        buy(workspace, "ord_2", "b@x.com", 10, datetime(2024, 11, 2))
        service = ReattributionService(test_db_session, workspace.id)

        original = service.reattribute_purchase

        def flaky(purchase):
            if purchase.platform_purchase_id == "ord_1":
                raise RuntimeError("boom")
            return original(purchase)

        monkeypatch.setattr(service, "reattribute_purchase", flaky)

        report = service.run()

        assert report.scanned == 2
        assert report.failed == 1
        assert len(report.failed_ids) == 1


class TestWorkerEntryPoints:

    def test_run_reattribution_batches(self, session_factory, test_db_session, workspace, track, recorder, buy):
        _late_identify_setup(workspace, track, recorder, buy)
        buy(workspace, "ord_2", "nobody@x.com", 10, datetime(2024, 11, 7))
        buy(workspace, "ord_3", "nobody@x.com", 10, datetime(2024, 11, 8))

        result = run_reattribution(str(workspace.id), batch_size=2, session_factory=session_factory)

        assert result["success"] is True
        assert result["scanned"] == 3
        assert result["newly_matched"] == 1
        assert result["batches"] == 2

        matched = test_db_session.query(Purchase).filter(
            Purchase.attribution_status == AttributionStatusEnum.matched
        ).count()
        assert matched == 1

    def test_run_reattribution_unknown_workspace(self, session_factory):
        result = run_reattribution(str(uuid4()), session_factory=session_factory)
        assert result == {"success": False, "error": "Workspace not found"}

    def test_run_launch_status_refresh(self, session_factory, workspace):
        assert run_launch_status_refresh(session_factory) == {"checked": 0, "changed": 0}
