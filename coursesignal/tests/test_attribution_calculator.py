"""Tests for first/last touch attribution rules."""

from datetime import datetime, timedelta
from types import SimpleNamespace

from coursesignal.services.attribution_calculator import (
    DIRECT,
    AttributionCalculator,
    TouchSnapshot,
    select_last_touch,
)


def _touch(source, touched_at, created_at=None):
    return SimpleNamespace(
        source=source,
        medium=None,
        campaign=None,
        touched_at=touched_at,
        created_at=created_at or touched_at,
    )


class TestSelectLastTouch:
    """Pure selection over in-memory touches."""

    def test_picks_latest_at_or_before_purchase(self):
        purchase = datetime(2024, 11, 10, 12)
        touches = [
            _touch("facebook", datetime(2024, 11, 1)),
            _touch("google", datetime(2024, 11, 9)),
            _touch("youtube", datetime(2024, 11, 11)),  # after purchase
        ]
        assert select_last_touch(touches, purchase).source == "google"

    def test_touch_at_purchase_instant_qualifies(self):
        purchase = datetime(2024, 11, 10, 12)
        touches = [_touch("facebook", datetime(2024, 11, 1)), _touch("email", purchase)]
        assert select_last_touch(touches, purchase).source == "email"

    def test_out_of_order_input_is_sorted(self):
        purchase = datetime(2024, 11, 10)
        touches = [
            _touch("google", datetime(2024, 11, 9)),
            _touch("facebook", datetime(2024, 11, 2)),
        ]
        assert select_last_touch(touches, purchase).source == "google"

    def test_tie_resolves_to_last_recorded(self):
        at = datetime(2024, 11, 9)
        touches = [
            _touch("second", at, created_at=at + timedelta(seconds=5)),
            _touch("first", at, created_at=at),
        ]
        assert select_last_touch(touches, datetime(2024, 11, 10)).source == "second"

    def test_lookback_excludes_old_touches(self):
        purchase = datetime(2024, 11, 10)
        touches = [_touch("facebook", purchase - timedelta(days=120))]
        assert select_last_touch(touches, purchase, lookback_days=90) is None
        assert select_last_touch(touches, purchase, lookback_days=0).source == "facebook"

    def test_no_candidates(self):
        assert select_last_touch([], datetime(2024, 11, 10)) is None


class TestAttributionCalculator:

    def test_first_and_last_touch(self, test_db_session, workspace, track):
        track(workspace, "v1", "facebook", "paid", "launch_nov", at=datetime(2024, 11, 1))
        visitor = track(workspace, "v1", "google", "cpc", "brand", at=datetime(2024, 11, 5))

        result = AttributionCalculator(test_db_session).attribute(visitor, datetime(2024, 11, 6))

        assert result.first_touch == TouchSnapshot("facebook", "paid", "launch_nov")
        assert result.last_touch == TouchSnapshot("google", "cpc", "brand")

    def test_single_touch_is_first_and_last(self, test_db_session, workspace, track):
        visitor = track(workspace, "v1", "facebook", "paid", "launch_nov", at=datetime(2024, 11, 1))

        result = AttributionCalculator(test_db_session).attribute(visitor, datetime(2024, 11, 2))

        assert result.first_touch == result.last_touch
        assert result.last_touch.source == "facebook"

    def test_purchase_before_every_touch_uses_first_touch(self, test_db_session, workspace, track):
        visitor = track(workspace, "v1", "facebook", "paid", at=datetime(2024, 11, 5))

        result = AttributionCalculator(test_db_session).attribute(visitor, datetime(2024, 11, 1))

        assert result.last_touch == result.first_touch == TouchSnapshot("facebook", "paid", None)

    def test_identity_without_touches_is_direct(self, test_db_session, workspace, recorder):
        visitor = recorder.identify(workspace, "v1", "a@x.com").visitor

        result = AttributionCalculator(test_db_session).attribute(visitor, datetime(2024, 11, 1))

        assert result.first_touch == DIRECT
        assert result.last_touch.is_direct

    def test_touches_outside_lookback_make_last_touch_direct(self, test_db_session, workspace, track):
        purchase = datetime(2024, 11, 10)
        track(workspace, "v1", "google", "cpc", at=purchase - timedelta(days=100))
        visitor = track(workspace, "v1", "email", "newsletter", at=purchase - timedelta(days=95))

        result = AttributionCalculator(test_db_session, lookback_days=90).attribute(visitor, purchase)

        assert result.first_touch.source == "google"
        assert result.last_touch == DIRECT

    def test_unbounded_lookback_keeps_old_last_touch(self, test_db_session, workspace, track):
        purchase = datetime(2024, 11, 10)
        track(workspace, "v1", "google", "cpc", at=purchase - timedelta(days=100))
        visitor = track(workspace, "v1", "email", "newsletter", at=purchase - timedelta(days=95))

        result = AttributionCalculator(test_db_session, lookback_days=0).attribute(visitor, purchase)

        assert result.last_touch.source == "email"

    def test_content_and_term_are_carried(self, test_db_session, workspace, track):
        visitor = track(
            workspace, "v1", "facebook", "paid", "bf",
            at=datetime(2024, 11, 1), content="video_a", term="course launch",
        )

        result = AttributionCalculator(test_db_session).attribute(visitor, datetime(2024, 11, 2))

        assert result.first_touch.content == "video_a"
        assert result.last_touch.term == "course launch"
        assert result.columns()["last_touch_content"] == "video_a"
