"""Tests for the purchase ingestion pipeline.

WHAT: Idempotency, validation, resolution + attribution, launch association
REFERENCES:
  - coursesignal/services/purchase_ingestion.py
"""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from coursesignal.errors import InvalidPurchase
from coursesignal.models import AttributionStatusEnum, MatchMethodEnum, Purchase
from coursesignal.services import purchase_ingestion
from coursesignal.services.launch_service import LaunchService


class TestMatchedPurchase:

    def test_full_match(self, test_db_session, workspace, track, recorder, buy):
        """Facebook first touch, Google last touch, identified by email."""
        track(workspace, "v1", "facebook", "paid", "launch_nov", at=datetime(2024, 11, 1, 10))
        visitor = track(workspace, "v1", "google", "cpc", "brand", at=datetime(2024, 11, 5, 10))
        recorder.identify(workspace, "v1", "a@x.com")

        result = buy(workspace, "ord_1", "A@x.com", 297, datetime(2024, 11, 6, 9))
        purchase = result.purchase

        assert result.created is True
        assert purchase.attribution_status == AttributionStatusEnum.matched
        assert purchase.match_method == MatchMethodEnum.email
        assert purchase.visitor_id == visitor.id
        assert purchase.email == "a@x.com"
        assert purchase.amount == Decimal("297.00")
        assert (purchase.first_touch_source, purchase.first_touch_campaign) == ("facebook", "launch_nov")
        assert (purchase.last_touch_source, purchase.last_touch_medium) == ("google", "cpc")

    def test_fingerprint_match(self, workspace, track, buy):
        track(workspace, "v1", "youtube", "organic", fingerprint="fp-1")

        purchase = buy(
            workspace, "ord_1", "other@gmail.com", 49, datetime.now(timezone.utc), device_fingerprint="fp-1"
        ).purchase

        assert purchase.match_method == MatchMethodEnum.fingerprint
        assert purchase.last_touch_source == "youtube"

    def test_matched_without_touches_is_direct(self, workspace, recorder, buy):
        recorder.identify(workspace, "v1", "a@x.com")

        purchase = buy(workspace, "ord_1", "a@x.com", 100, datetime(2024, 11, 6)).purchase

        assert purchase.attribution_status == AttributionStatusEnum.matched
        assert purchase.first_touch_source is None
        assert purchase.last_touch_source is None


class TestUnmatchedPurchase:

    def test_unknown_buyer_is_persisted_unmatched(self, test_db_session, workspace, buy):
        purchase = buy(workspace, "ord_1", "unknown@nowhere.com", 97, datetime(2024, 11, 6)).purchase

        assert purchase.attribution_status == AttributionStatusEnum.unmatched
        assert purchase.match_method == MatchMethodEnum.none
        assert purchase.visitor_id is None
        assert purchase.first_touch_source is None
        assert purchase.last_touch_source is None
        assert test_db_session.query(Purchase).count() == 1


class TestIdempotency:

    def test_redelivery_returns_existing(self, test_db_session, workspace, buy):
        first = buy(workspace, "ord_1", "a@x.com", 297, datetime(2024, 11, 6))
        second = buy(workspace, "ord_1", "a@x.com", 297, datetime(2024, 11, 6))

        assert first.created is True
        assert second.created is False
        assert second.purchase.id == first.purchase.id
        assert test_db_session.query(Purchase).count() == 1

    def test_same_id_on_different_platforms(self, test_db_session, workspace, buy):
        buy(workspace, "1001", "a@x.com", 10, datetime(2024, 11, 6), platform="kajabi")
        buy(workspace, "1001", "a@x.com", 10, datetime(2024, 11, 6), platform="teachable")

        assert test_db_session.query(Purchase).count() == 2

    def test_platform_is_case_insensitive(self, test_db_session, workspace, buy):
        buy(workspace, "1001", "a@x.com", 10, datetime(2024, 11, 6), platform="Kajabi")
        result = buy(workspace, "1001", "a@x.com", 10, datetime(2024, 11, 6), platform="kajabi")

        assert result.created is False

    def test_lost_insert_race_returns_winner(self, test_db_session, workspace, buy):
        """The unique constraint decides when the pre-insert lookup misses the winner."""
        winner = buy(workspace, "ord_1", "a@x.com", 297, datetime(2024, 11, 6)).purchase
        real_find = purchase_ingestion.find_existing_purchase
        lookups = []

        def find_after_race(*args, **kwargs):
            lookups.append(args)
            if len(lookups) == 1:
                return None
            return real_find(*args, **kwargs)

        with patch.object(purchase_ingestion, "find_existing_purchase", side_effect=find_after_race):
            result = buy(workspace, "ord_1", "a@x.com", 297, datetime(2024, 11, 6))

        assert len(lookups) == 2
        assert result.created is False
        assert result.purchase.id == winner.id
        assert test_db_session.query(Purchase).count() == 1

    def test_integrity_error_without_existing_row_propagates(self, workspace, buy):
        buy(workspace, "ord_1", "a@x.com", 297, datetime(2024, 11, 6))

        with patch.object(purchase_ingestion, "find_existing_purchase", return_value=None):
            with pytest.raises(IntegrityError):
                buy(workspace, "ord_1", "a@x.com", 297, datetime(2024, 11, 6))


class TestValidation:

    @pytest.mark.parametrize("overrides", [
        {"email": ""},
        {"email": "no-at-sign"},
        {"amount": 0},
        {"amount": -5},
        {"amount": "abc"},
        {"purchase_id": " "},
        {"currency": "DOLLARS"},
        {"at": "yesterday"},
    ])
    def test_rejects_malformed_events(self, test_db_session, workspace, buy, overrides):
        kwargs = {
            "purchase_id": "ord_1",
            "email": "a@x.com",
            "amount": 10,
            "at": datetime(2024, 11, 6),
        }
        currency = overrides.pop("currency", "USD")
        kwargs.update(overrides)

        with pytest.raises(InvalidPurchase):
            buy(workspace, kwargs["purchase_id"], kwargs["email"], kwargs["amount"], kwargs["at"], currency=currency)
        assert test_db_session.query(Purchase).count() == 0

    def test_timezone_aware_timestamp_is_normalized(self, workspace, buy):
        purchase = buy(workspace, "ord_1", "a@x.com", 10, "2024-11-06T10:00:00-05:00").purchase
        assert purchase.purchased_at == datetime(2024, 11, 6, 15, 0)


class TestLaunchAssociation:

    def test_purchase_in_window_is_linked(self, test_db_session, workspace, buy):
        launch = LaunchService(test_db_session, workspace.id).create(
            "Black Friday", datetime(2024, 11, 24), datetime(2024, 11, 27, 23, 59, 59)
        )

        inside = buy(workspace, "ord_1", "a@x.com", 10, datetime(2024, 11, 26)).purchase
        outside = buy(workspace, "ord_2", "a@x.com", 10, datetime(2024, 11, 28)).purchase

        assert inside.launch_id == launch.id
        assert outside.launch_id is None

    def test_explicit_launch_hint(self, test_db_session, workspace, buy):
        launch = LaunchService(test_db_session, workspace.id).create(
            "Evergreen", datetime(2024, 1, 1), datetime(2024, 1, 2)
        )

        purchase = buy(workspace, "ord_1", "a@x.com", 10, datetime(2024, 11, 26), launch_hint=launch.id).purchase

        assert purchase.launch_id == launch.id

    def test_foreign_launch_hint_rejected(self, test_db_session, workspace, workspace_b, buy):
        foreign = LaunchService(test_db_session, workspace_b.id).create(
            "Theirs", datetime(2024, 11, 24), datetime(2024, 11, 27)
        )

        with pytest.raises(InvalidPurchase):
            buy(workspace, "ord_1", "a@x.com", 10, datetime(2024, 11, 26), launch_hint=foreign.id)

    def test_unknown_launch_hint_rejected(self, workspace, buy):
        with pytest.raises(InvalidPurchase):
            buy(workspace, "ord_1", "a@x.com", 10, datetime(2024, 11, 26), launch_hint=uuid4())
