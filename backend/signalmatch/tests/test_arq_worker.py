"""Tests for the scheduled maintenance jobs.

WHAT: Per-store isolation of the hourly remap and the daily order backfill
WHY: One broken store must not stop attribution upkeep for every other store.

REFERENCES:
    - signalmatch/workers/arq_worker.py
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from signalmatch.models import Store
from signalmatch.services.bulk_remapper import BulkRemapper
from signalmatch.services.shopify_orders_client import ShopifyAPIError
from signalmatch.utils.dates import utcnow
from signalmatch.workers import arq_worker


@pytest.fixture
def broken_store(test_db_session, test_store):
    store = Store(
        id="store-broken",
        name="Broken Shop",
        domain="broken-shop.myshopify.com",
        platform="shopify",
        access_token_encrypted=test_store.access_token_encrypted,
        created_at=datetime.utcnow(),
    )
    test_db_session.add(store)
    test_db_session.commit()
    return store


class TestRemapAllStores:
    def test_failing_store_does_not_stop_the_others(
        self, test_db_session, broken_store, add_event, event_store, monkeypatch, store_id
    ):
        now = utcnow()
        add_event(event_name="PageView", fbp="fbp-1", campaign_id="c-1", occurred_at=now - timedelta(hours=3))
        add_event(event_id="order", fbp="fbp-1", occurred_at=now - timedelta(hours=1))

        original_run = BulkRemapper.run

        def run(self, store, lookback_days=7, now=None):
            if store == "store-broken":
                raise RuntimeError("remap exploded")
            return original_run(self, store, lookback_days=lookback_days, now=now)

        captured = []
        monkeypatch.setattr(BulkRemapper, "run", run)
        monkeypatch.setattr(arq_worker, "capture_exception", lambda e, extra=None: captured.append(extra))

        totals = arq_worker.remap_all_stores(test_db_session)

        assert totals["errors"] == 1
        assert totals["stores"] == 1
        assert totals["scanned"] == 1
        assert totals["updated"] == 1
        assert captured == [{"operation": "scheduled_bulk_remap", "store_id": "store-broken"}]

        test_db_session.expire_all()
        assert event_store.get(store_id, "order").campaign_id == "c-1"


class TestScheduledOrderBackfill:
    def test_failing_store_does_not_stop_the_others(
        self, session_factory, broken_store, monkeypatch, store_id
    ):
        seen = []

        async def fake_backfill(db, store, days, settings, name_cache=None, transport=None):
            seen.append((store.id, days))
            if store.id == "store-broken":
                raise ShopifyAPIError("Shopify API error 401: Unauthorized", status_code=401)
            return {"scannedOrders": 4}

        monkeypatch.setattr(arq_worker, "SessionLocal", session_factory)
        monkeypatch.setattr("signalmatch.routers.tracking.run_order_backfill", fake_backfill)
        monkeypatch.setattr(arq_worker, "capture_exception", lambda e, extra=None: None)

        results = asyncio.run(arq_worker.scheduled_order_backfill({}))

        assert sorted(seen) == [("store-broken", 1), (store_id, 1)]
        assert results == {"stores": 2, "succeeded": 1, "errors": 1, "scanned_orders": 4}
