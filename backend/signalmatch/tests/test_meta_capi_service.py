"""Tests for the Conversions API client and background forwarder.

WHAT: Payload building, HTTP error handling and delivery bookkeeping
REFERENCES:
    - signalmatch/services/meta_capi_service.py
"""

import asyncio
import hashlib
import json
from datetime import datetime

import httpx
import pytest

from signalmatch.services.meta_capi_service import (
    MetaCAPIError,
    MetaCAPIService,
    forward_tracking_event,
)


def _sha(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class Recorder:
    """httpx handler that records requests and returns a fixed response."""

    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self.body = body if body is not None else {"events_received": 1, "fbtrace_id": "trace"}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)

    @property
    def last_json(self):
        return json.loads(self.requests[-1].content)


class TestBuildEvent:
    def test_user_data_hashing(self):
        service = MetaCAPIService(pixel_id="px", access_token="t")
        email_hash = _sha("buyer@example.com")

        event = service.build_event(
            "Purchase",
            "shopify-order-1",
            datetime(2025, 6, 1, 12, 0, 0),
            fbp="fb.1.1.1",
            client_ip="203.0.113.7",
            value=49,
            currency="EUR",
            email_hash=email_hash,
            first_name=" Ada ",
        )

        user_data = event["user_data"]
        assert user_data["em"] == email_hash
        assert user_data["fn"] == _sha("ada")
        assert user_data["fbp"] == "fb.1.1.1"
        assert user_data["client_ip_address"] == "203.0.113.7"
        assert "ph" not in user_data
        assert event["event_time"] == 1748779200
        assert event["action_source"] == "website"
        assert event["custom_data"] == {"value": 49.0, "currency": "EUR"}

    def test_no_custom_data_when_empty(self):
        event = MetaCAPIService(pixel_id="px", access_token="t").build_event("PageView", "pv-1")
        assert "custom_data" not in event
        assert event["user_data"] == {}


class TestSendEvents:
    def test_posts_to_pixel_endpoint(self):
        recorder = Recorder()
        service = MetaCAPIService(
            pixel_id="px-1",
            access_token="secret-token",
            api_version="v21.0",
            transport=httpx.MockTransport(recorder),
        )
        event = service.build_event("Purchase", "e-1")

        result = asyncio.run(service.send_events([event], test_event_code="TEST123"))

        assert result["events_received"] == 1
        request = recorder.requests[0]
        assert request.url.path == "/v21.0/px-1/events"
        assert request.url.params["access_token"] == "secret-token"
        assert recorder.last_json["test_event_code"] == "TEST123"
        assert recorder.last_json["data"][0]["event_id"] == "e-1"

    def test_error_status_raises(self):
        service = MetaCAPIService(
            pixel_id="px-1",
            access_token="t",
            transport=httpx.MockTransport(Recorder(status_code=400, body={"error": {"message": "bad"}})),
        )
        with pytest.raises(MetaCAPIError, match="400"):
            asyncio.run(service.send_events([service.build_event("Purchase", "e-1")]))

    def test_network_error_raises(self):
        def broken(request):
            raise httpx.ConnectError("connection refused", request=request)

        service = MetaCAPIService(pixel_id="px-1", access_token="t", transport=httpx.MockTransport(broken))
        with pytest.raises(MetaCAPIError, match="Network error"):
            asyncio.run(service.send_events([service.build_event("Purchase", "e-1")]))


class TestForwardTrackingEvent:
    def _forward(self, session_factory, settings, store_id, event_id, recorder, user_data=None):
        return asyncio.run(
            forward_tracking_event(
                session_factory,
                store_id,
                event_id,
                settings,
                user_data=user_data,
                transport=httpx.MockTransport(recorder),
            )
        )

    def test_success_marks_row_forwarded(
        self, session_factory, settings, tracking_config, add_event, event_store, test_db_session, store_id
    ):
        event_id = add_event(event_id="shopify-order-1", fbp="fb.1.1.1", value=20.0, order_id="1")
        recorder = Recorder()

        result = self._forward(
            session_factory, settings, store_id, event_id, recorder,
            user_data={"client_ip": "203.0.113.7", "phone": "+1 555", "first_name": "Ada"},
        )

        assert result.ok is True
        sent = recorder.last_json["data"][0]
        assert sent["event_id"] == "shopify-order-1"
        assert sent["user_data"]["client_ip_address"] == "203.0.113.7"
        assert sent["user_data"]["ph"] == _sha("+1555")
        assert sent["custom_data"]["order_id"] == "1"
        assert recorder.requests[0].url.params["access_token"] == "capi-token"

        test_db_session.expire_all()
        row = event_store.get(store_id, event_id)
        assert row.meta_forwarded is True
        assert row.meta_last_error is None
        assert row.meta_last_attempt_at is not None

    def test_failure_is_recorded_not_raised(
        self, session_factory, settings, tracking_config, add_event, event_store, test_db_session, store_id
    ):
        event_id = add_event()

        result = self._forward(session_factory, settings, store_id, event_id, Recorder(status_code=500, body={}))

        assert result.ok is False
        test_db_session.expire_all()
        row = event_store.get(store_id, event_id)
        assert row.meta_forwarded is False
        assert "500" in row.meta_last_error

    def test_missing_config_is_skipped(self, session_factory, settings, add_event, store_id):
        event_id = add_event()
        recorder = Recorder()

        result = self._forward(session_factory, settings, store_id, event_id, recorder)

        assert result.skipped is True
        assert recorder.requests == []

    def test_missing_event_is_skipped(self, session_factory, settings, tracking_config, store_id):
        result = self._forward(session_factory, settings, store_id, "does-not-exist", Recorder())
        assert result.skipped is True
