"""Tests for the tracking event store.

WHAT: Idempotent upsert, partial updates, delivery bookkeeping and matcher queries
WHY: (store_id, event_id) must stay a single row no matter how often an
     event is delivered.

REFERENCES:
    - signalmatch/services/event_store.py
"""

from datetime import datetime, timedelta

import pytest

from signalmatch.models import TrackingEvent
from signalmatch.services.event_store import META_ERROR_MAX_LENGTH


BASE_TIME = datetime(2025, 6, 1, 12, 0, 0)


class TestUpsert:
    def test_first_insert_reports_inserted(self, event_store, test_store, store_id):
        result = event_store.insert({
            "store_id": store_id,
            "event_name": "Purchase",
            "event_id": "e-1",
            "occurred_at": BASE_TIME,
            "value": 10.0,
        })
        assert result.inserted is True
        assert result.updated is False

    def test_duplicate_keeps_one_row_with_latest_value(self, event_store, test_db_session, test_store, store_id):
        event = {"store_id": store_id, "event_name": "Purchase", "event_id": "e-1", "occurred_at": BASE_TIME}
        event_store.insert({**event, "value": 10.0})
        result = event_store.insert({**event, "value": 25.0})

        assert result.inserted is False
        assert result.updated is True
        rows = test_db_session.query(TrackingEvent).filter(TrackingEvent.event_id == "e-1").all()
        assert len(rows) == 1
        assert rows[0].value == pytest.approx(25.0)

    def test_duplicate_never_overwrites_identity_signals(self, event_store, test_store, store_id):
        event = {"store_id": store_id, "event_name": "PageView", "event_id": "e-2", "occurred_at": BASE_TIME}
        event_store.insert({**event, "fbp": "fb.1.1.original"})
        event_store.insert({**event, "fbp": "fb.1.1.replaced", "campaign_id": "c-9"})

        row = event_store.get(store_id, "e-2")
        assert row.fbp == "fb.1.1.original"
        assert row.campaign_id == "c-9"

    def test_duplicate_with_only_null_fields_is_a_no_op(self, event_store, test_store, store_id):
        event = {"store_id": store_id, "event_name": "PageView", "event_id": "e-3", "occurred_at": BASE_TIME}
        event_store.insert(event)
        result = event_store.insert(event)
        assert result.inserted is False
        assert result.updated is False

    def test_defaults_source_and_occurred_at(self, event_store, test_store, store_id):
        event_store.insert({"store_id": store_id, "event_name": "PageView", "event_id": "e-4"})
        row = event_store.get(store_id, "e-4")
        assert row.source == "browser"
        assert row.occurred_at is not None


class TestDeliveryBookkeeping:
    def test_mark_meta_delivery_truncates_error(self, event_store, add_event, store_id):
        event_id = add_event()
        event_store.mark_meta_delivery(store_id, event_id, forwarded=False, error="x" * 2000)

        row = event_store.get(store_id, event_id)
        assert row.meta_forwarded is False
        assert len(row.meta_last_error) == META_ERROR_MAX_LENGTH
        assert row.meta_last_attempt_at is not None

    def test_mark_meta_delivery_success_clears_error(self, event_store, add_event, store_id):
        event_id = add_event()
        event_store.mark_meta_delivery(store_id, event_id, forwarded=False, error="boom")
        event_store.mark_meta_delivery(store_id, event_id, forwarded=True)

        row = event_store.get(store_id, event_id)
        assert row.meta_forwarded is True
        assert row.meta_last_error is None


class TestMatcherQueries:
    def test_query_by_signal_returns_only_mapped_non_refund_rows(self, event_store, add_event, store_id):
        add_event(event_id="mapped", event_name="PageView", click_id="abc", campaign_id="c-1")
        add_event(event_id="unmapped", event_name="PageView", click_id="abc")
        add_event(event_id="refund", event_name="Refund", click_id="abc", campaign_id="c-1")
        add_event(event_id="other", event_name="PageView", click_id="zzz", campaign_id="c-2")

        rows = event_store.query_by_signal(store_id, {"click_id": "abc"})
        assert [row.event_id for row in rows] == ["mapped"]

    def test_query_by_signal_respects_before_and_exclusion(self, event_store, add_event, store_id):
        add_event(event_id="early", fbp="fbp-1", campaign_id="c-1", occurred_at=BASE_TIME)
        add_event(event_id="late", fbp="fbp-1", campaign_id="c-1", occurred_at=BASE_TIME + timedelta(hours=2))

        rows = event_store.query_by_signal(
            store_id,
            {"fbp": "fbp-1"},
            before=BASE_TIME + timedelta(hours=1),
        )
        assert [row.event_id for row in rows] == ["early"]

        rows = event_store.query_by_signal(store_id, {"fbp": "fbp-1"}, exclude_event_id="late")
        assert [row.event_id for row in rows] == ["early"]

    def test_query_by_time_window_is_newest_first(self, event_store, add_event, store_id):
        add_event(event_id="a", campaign_id="c-1", occurred_at=BASE_TIME - timedelta(minutes=5))
        add_event(event_id="b", campaign_id="c-1", occurred_at=BASE_TIME + timedelta(minutes=3))
        add_event(event_id="outside", campaign_id="c-1", occurred_at=BASE_TIME + timedelta(hours=3))

        rows = event_store.query_by_time_window(
            store_id,
            "Purchase",
            BASE_TIME - timedelta(minutes=10),
            BASE_TIME + timedelta(minutes=10),
        )
        assert [row.event_id for row in rows] == ["b", "a"]

    def test_find_order_purchase_only_matches_shopify_rows(self, event_store, add_event, store_id):
        add_event(event_id="pixel-purchase", order_id="1001", source="browser")
        assert event_store.find_order_purchase(store_id, "1001") is None

        add_event(event_id="shopify-order-1001", order_id="1001", source="shopify")
        assert event_store.find_shopify_purchase_event_id(store_id, "1001") == "shopify-order-1001"

    def test_list_unmapped_purchases_with_signal(self, event_store, add_event, store_id):
        add_event(event_id="with-signal", email_hash="h1")
        add_event(event_id="no-signal")
        add_event(event_id="mapped", email_hash="h1", campaign_id="c-1")
        add_event(event_id="pageview", event_name="PageView", email_hash="h1")

        rows = event_store.list_unmapped_purchases_with_signal(store_id, BASE_TIME - timedelta(days=1))
        assert [row.event_id for row in rows] == ["with-signal"]
