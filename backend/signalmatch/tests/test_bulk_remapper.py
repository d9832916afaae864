"""Tests for retroactive remapping of unmapped purchases.

REFERENCES:
    - signalmatch/services/bulk_remapper.py
    - signalmatch/routers/tracking.py (POST /tracking/remap)
"""

from datetime import timedelta

from sqlalchemy.exc import OperationalError

from signalmatch.services.bulk_remapper import BulkRemapper
from signalmatch.utils.dates import utcnow


class TestBulkRemapper:
    def test_click_id_match_wins_over_fbp_match(self, event_store, add_event, store_id):
        now = utcnow()
        add_event(event_name="PageView", event_id="by-fbp", fbp="fbp-1", campaign_id="c-fbp",
                  occurred_at=now - timedelta(hours=3))
        add_event(event_name="PageView", event_id="by-click", click_id="clk-1", campaign_id="c-click",
                  adset_id="as-click", occurred_at=now - timedelta(hours=2))
        add_event(event_id="order", click_id="clk-1", fbp="fbp-1", occurred_at=now - timedelta(hours=1))

        result = BulkRemapper(event_store).run(store_id, lookback_days=7, now=now)

        assert result.scanned == 1
        assert result.matched == 1
        assert result.updated == 1
        assert result.failed == 0
        row = event_store.get(store_id, "order")
        assert row.campaign_id == "c-click"
        assert row.adset_id == "as-click"

    def test_earliest_mapped_row_wins_for_a_signal(self, event_store, add_event, store_id):
        now = utcnow()
        add_event(event_name="PageView", email_hash="h1", campaign_id="c-first", occurred_at=now - timedelta(hours=5))
        add_event(event_name="PageView", email_hash="h1", campaign_id="c-second", occurred_at=now - timedelta(hours=4))
        add_event(event_id="order", email_hash="h1", occurred_at=now - timedelta(hours=1))

        BulkRemapper(event_store).run(store_id, now=now)

        assert event_store.get(store_id, "order").campaign_id == "c-first"

    def test_rows_outside_lookback_are_not_scanned(self, event_store, add_event, store_id):
        now = utcnow()
        add_event(event_name="PageView", fbp="fbp-1", campaign_id="c-1", occurred_at=now - timedelta(days=1))
        add_event(event_id="old-order", fbp="fbp-1", occurred_at=now - timedelta(days=20))

        result = BulkRemapper(event_store).run(store_id, lookback_days=7, now=now)

        assert result.scanned == 0
        assert event_store.get(store_id, "old-order").campaign_id is None

    def test_no_mapped_rows_means_no_updates(self, event_store, add_event, store_id):
        now = utcnow()
        add_event(event_id="order", fbp="fbp-1", occurred_at=now - timedelta(hours=1))

        result = BulkRemapper(event_store).run(store_id, now=now)

        assert result.scanned == 1
        assert result.matched == 0
        assert result.updated == 0

    def test_failing_row_is_counted_and_batch_continues(self, event_store, add_event, monkeypatch, store_id):
        now = utcnow()
        add_event(event_name="PageView", fbp="fbp-1", campaign_id="c-1", occurred_at=now - timedelta(hours=5))
        add_event(event_id="order-a", fbp="fbp-1", occurred_at=now - timedelta(hours=2))
        add_event(event_id="order-b", fbp="fbp-1", occurred_at=now - timedelta(hours=1))

        original_update = event_store.update

        def flaky_update(store, event_id, fields):
            if event_id == "order-b":
                raise OperationalError("UPDATE tracking_events", {}, Exception("database is locked"))
            return original_update(store, event_id, fields)

        monkeypatch.setattr(event_store, "update", flaky_update)

        result = BulkRemapper(event_store).run(store_id, now=now)

        assert result.scanned == 2
        assert result.matched == 2
        assert result.updated == 1
        assert result.failed == 1
        assert "database is locked" in result.last_error
        assert result.to_dict()["lastError"] == result.last_error


class TestRemapEndpoint:
    def test_requires_store_id(self, client):
        response = client.post("/tracking/remap")
        assert response.status_code == 400

    def test_runs_remap(self, client, add_event, store_id):
        now = utcnow()
        add_event(event_name="PageView", fbc="fb.1.1.x", campaign_id="c-1", occurred_at=now - timedelta(hours=2))
        add_event(event_id="order", fbc="fb.1.1.x", occurred_at=now - timedelta(hours=1))

        response = client.post("/tracking/remap", params={"storeId": store_id, "days": "3"})

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["data"]["days"] == 3
        assert body["data"]["updated"] == 1

    def test_cron_secret_is_enforced_when_configured(self, client, settings, store_id):
        settings.CRON_SECRET = "s3cret"

        assert client.post("/tracking/remap", params={"storeId": store_id}).status_code == 401
        response = client.post(
            "/tracking/remap",
            params={"storeId": store_id},
            headers={"Authorization": "Bearer s3cret"},
        )
        assert response.status_code == 200
