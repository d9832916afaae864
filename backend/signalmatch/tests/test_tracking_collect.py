"""Tests for POST /tracking/collect.

WHAT: Store resolution, identity hashing, entity id aliases, source header,
      idempotency and the forwarding hand-off
REFERENCES:
    - signalmatch/routers/tracking.py
"""

import hashlib

import pytest

from signalmatch.routers.tracking import CollectEventRequest, collect_entity_ids


def _sha(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class TestStoreResolution:
    def test_missing_store_and_pixel_returns_400(self, client):
        response = client.post("/tracking/collect", json={"eventName": "PageView"})
        assert response.status_code == 400
        assert response.json()["detail"] == "storeId or pixelId is required"

    def test_unknown_pixel_returns_404(self, client, tracking_config):
        response = client.post("/tracking/collect", json={"eventName": "PageView", "pixelId": "nope"})
        assert response.status_code == 404

    def test_pixel_id_resolves_store(self, client, tracking_config, event_store, store_id):
        response = client.post(
            "/tracking/collect",
            json={"eventName": "PageView", "eventId": "pv-1", "pixelId": "pixel-123"},
        )
        assert response.status_code == 200
        assert event_store.get(store_id, "pv-1") is not None

    def test_query_store_id_wins_over_body(self, client, test_store, event_store, store_id):
        response = client.post(
            "/tracking/collect",
            params={"storeId": store_id},
            json={"eventName": "PageView", "eventId": "pv-2", "storeId": "other-store"},
        )
        assert response.status_code == 200
        assert event_store.get(store_id, "pv-2") is not None

    def test_missing_event_name_is_rejected(self, client, test_store, store_id):
        response = client.post("/tracking/collect", json={"storeId": store_id})
        assert response.status_code == 422


class TestStoredEvent:
    def test_identity_fields_are_hashed(self, client, test_store, event_store, store_id):
        response = client.post(
            "/tracking/collect",
            headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "User-Agent": "pytest-agent"},
            json={
                "storeId": store_id,
                "eventName": "AddToCart",
                "eventId": "atc-1",
                "email": "  Buyer@Example.com ",
                "phone": "+1 (555) 010-0000",
                "value": 19.5,
                "currency": "EUR",
            },
        )
        assert response.status_code == 200

        row = event_store.get(store_id, "atc-1")
        assert row.email_hash == _sha("buyer@example.com")
        assert row.phone_hash == _sha("+15550100000")
        assert row.ip_hash == _sha("203.0.113.7")
        assert row.user_agent == "pytest-agent"
        assert row.value == pytest.approx(19.5)
        assert row.source == "browser"

    def test_click_id_and_entity_ids_come_from_page_url(self, client, test_store, event_store, store_id):
        client.post(
            "/tracking/collect",
            json={
                "storeId": store_id,
                "eventName": "PageView",
                "eventId": "pv-url",
                "pageUrl": "https://shop.example.com/?fbclid=abc&campaign_id=111&hsa_ad=333",
            },
        )
        row = event_store.get(store_id, "pv-url")
        assert row.click_id == "abc"
        assert row.campaign_id == "111"
        assert row.ad_id == "333"
        assert row.adset_id is None

    def test_server_source_header(self, client, test_store, event_store, store_id):
        client.post(
            "/tracking/collect",
            headers={"X-Event-Source": "Server"},
            json={"storeId": store_id, "eventName": "Purchase", "eventId": "srv-1"},
        )
        assert event_store.get(store_id, "srv-1").source == "server"

    def test_properties_are_kept_as_payload(self, client, test_store, event_store, store_id):
        client.post(
            "/tracking/collect",
            json={
                "storeId": store_id,
                "eventName": "PageView",
                "eventId": "pv-props",
                "properties": {"firstTouchAdSetId": "as-9", "page": "home"},
            },
        )
        row = event_store.get(store_id, "pv-props")
        assert row.adset_id == "as-9"
        assert row.payload_json == {"firstTouchAdSetId": "as-9", "page": "home"}


class TestResponse:
    def test_generated_event_id_is_returned(self, client, test_store, store_id):
        response = client.post("/tracking/collect", json={"storeId": store_id, "eventName": "PageView"})
        body = response.json()
        assert body["ok"] is True
        assert body["inserted"] is True
        assert len(body["eventId"]) == 36

    def test_duplicate_delivery_is_not_inserted_twice(self, client, test_store, store_id):
        payload = {"storeId": store_id, "eventName": "Purchase", "eventId": "dup-1", "value": 5}
        client.post("/tracking/collect", json=payload)
        response = client.post("/tracking/collect", json={**payload, "value": 7})

        body = response.json()
        assert body["inserted"] is False
        assert body["updated"] is True
        assert body["eventId"] == "dup-1"


class TestEntityIdAliases:
    def test_body_field_beats_properties_and_url(self):
        body = CollectEventRequest(
            event_name="PageView",
            campaign_id="from-body",
            page_url="/?campaign_id=from-url",
            properties={"campaignId": "from-props"},
        )
        assert collect_entity_ids(body)["campaign_id"] == "from-body"

    def test_properties_beat_url(self):
        body = CollectEventRequest(
            event_name="PageView",
            page_url="/?adset_id=from-url",
            properties={"fbAdsetId": "from-props"},
        )
        assert collect_entity_ids(body)["adset_id"] == "from-props"

    def test_camel_case_aliases_are_accepted(self):
        body = CollectEventRequest.model_validate({"eventName": "PageView", "adId": "ad-1"})
        assert collect_entity_ids(body)["ad_id"] == "ad-1"


class TestForwardingHandOff:
    @pytest.fixture
    def forwarded(self, monkeypatch):
        calls = []

        async def fake_forward(session_factory, store_id, event_id, settings, user_data=None):
            calls.append({"store_id": store_id, "event_id": event_id, "user_data": user_data})

        monkeypatch.setattr("signalmatch.routers.tracking.forward_tracking_event", fake_forward)
        return calls

    def test_forwardable_event_is_scheduled(self, client, tracking_config, settings, forwarded, store_id):
        settings.ENABLE_META_CAPI_FORWARDING = True

        client.post(
            "/tracking/collect",
            headers={"X-Forwarded-For": "198.51.100.4"},
            json={"storeId": store_id, "eventName": "Purchase", "eventId": "fw-1", "phone": "555"},
        )

        assert forwarded == [{
            "store_id": store_id,
            "event_id": "fw-1",
            "user_data": {"client_ip": "198.51.100.4", "phone": "555"},
        }]

    def test_custom_event_is_not_forwarded(self, client, tracking_config, settings, forwarded, store_id):
        settings.ENABLE_META_CAPI_FORWARDING = True
        client.post("/tracking/collect", json={"storeId": store_id, "eventName": "ScrollDepth"})
        assert forwarded == []

    def test_flag_off_disables_forwarding(self, client, tracking_config, settings, forwarded, store_id):
        settings.ENABLE_META_CAPI_FORWARDING = False
        client.post("/tracking/collect", json={"storeId": store_id, "eventName": "Purchase"})
        assert forwarded == []

    def test_duplicate_is_not_forwarded_again(self, client, tracking_config, settings, forwarded, store_id):
        settings.ENABLE_META_CAPI_FORWARDING = True
        payload = {"storeId": store_id, "eventName": "Purchase", "eventId": "fw-dup"}
        client.post("/tracking/collect", json=payload)
        client.post("/tracking/collect", json=payload)
        assert len(forwarded) == 1
