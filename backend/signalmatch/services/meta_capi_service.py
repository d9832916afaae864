"""Meta Conversions API (CAPI) forwarding.

WHAT:
    Sends stored tracking events to Meta's Conversions API and records the
    delivery outcome on the event row.

WHY:
    Server-side events survive ad blockers and browser privacy limits, and
    share event_id with the browser pixel so Meta deduplicates them.

HOW:
    POST https://graph.facebook.com/{version}/{pixel_id}/events?access_token=...
    body: {"data": [event]}

    user_data: fbp / fbc raw; external_id, em, ph, fn, ln, ct, st, zp, country
    SHA-256 hashed unless already a 64-hex digest; client IP and user agent raw.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api
    - signalmatch/routers/shopify_webhooks.py, signalmatch/routers/tracking.py
      (schedule forward_tracking_event as a background task)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from signalmatch.models import TrackingConfig, TrackingEvent
from signalmatch.security import decrypt_secret, hash_if_plain, hash_phone
from signalmatch.services.event_store import TrackingEventStore
from signalmatch.telemetry import capture_exception

logger = logging.getLogger(__name__)

META_GRAPH_HOST = "https://graph.facebook.com"
DEFAULT_API_VERSION = "v21.0"
DEFAULT_TIMEOUT_SECONDS = 10.0

FORWARDABLE_EVENTS = ("PageView", "ViewContent", "AddToCart", "InitiateCheckout", "Purchase")

# user_data keys hashed before sending
HASHED_USER_FIELDS = (
    ("external_id", "external_id"),
    ("em", "email_hash"),
    ("ph", "phone_hash"),
    ("fn", "first_name"),
    ("ln", "last_name"),
    ("ct", "city"),
    ("st", "state"),
    ("zp", "zip"),
    ("country", "country"),
)


class MetaCAPIError(Exception):
    """Raised when Meta rejects a request or cannot be reached."""
    pass


@dataclass
class ForwardResult:
    ok: bool
    error: Optional[str] = None
    skipped: bool = False


def to_unix_seconds(value: Optional[datetime]) -> int:
    """Naive UTC (or aware) datetime -> unix seconds; now when missing."""
    if value is None:
        return int(datetime.now(timezone.utc).timestamp())
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


class MetaCAPIService:
    """Client for one pixel's Conversions API endpoint.

    Usage:
        service = MetaCAPIService(pixel_id="123456", access_token="token")
        event = service.build_event("Purchase", "shopify-order-1", occurred_at, value=49.0)
        await service.send_events([event])
    """

    def __init__(
        self,
        pixel_id: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.timeout = timeout
        self.transport = transport
        self.events_url = f"{META_GRAPH_HOST}/{api_version}/{pixel_id}/events"

    def build_event(
        self,
        event_name: str,
        event_id: str,
        event_time: Optional[datetime] = None,
        event_source_url: Optional[str] = None,
        fbp: Optional[str] = None,
        fbc: Optional[str] = None,
        client_ip: Optional[str] = None,
        client_user_agent: Optional[str] = None,
        value: Optional[float] = None,
        currency: Optional[str] = None,
        order_id: Optional[str] = None,
        **identity: Optional[str],
    ) -> Dict[str, Any]:
        """Build one event payload.

        Args:
            identity: any of external_id, email_hash, phone_hash, first_name,
                last_name, city, state, zip, country. Plain values are hashed.
        """
        user_data: Dict[str, Any] = {}
        if fbp:
            user_data["fbp"] = fbp
        if fbc:
            user_data["fbc"] = fbc
        for key, name in HASHED_USER_FIELDS:
            hashed = hash_if_plain(identity.get(name))
            if hashed:
                user_data[key] = hashed
        # IP and user agent go raw; Meta hashes them server-side
        if client_ip:
            user_data["client_ip_address"] = client_ip
        if client_user_agent:
            user_data["client_user_agent"] = client_user_agent

        custom_data: Dict[str, Any] = {}
        if value is not None:
            custom_data["value"] = float(value)
        if currency:
            custom_data["currency"] = currency
        if order_id:
            custom_data["order_id"] = order_id

        event: Dict[str, Any] = {
            "event_name": event_name.strip(),
            "event_time": to_unix_seconds(event_time),
            "event_id": event_id,  # shared with the browser pixel for dedup
            "action_source": "website",
            "user_data": user_data,
        }
        if event_source_url:
            event["event_source_url"] = event_source_url
        if custom_data:
            event["custom_data"] = custom_data
        return event

    async def send_events(
        self,
        events: List[Dict[str, Any]],
        test_event_code: Optional[str] = None,
    ) -> Dict[str, Any]:
        """POST events to the Conversions API.

        Raises:
            MetaCAPIError: non-2xx response or network failure
        """
        payload: Dict[str, Any] = {"data": events}
        if test_event_code:
            payload["test_event_code"] = test_event_code

        logger.info(
            f"[META_CAPI] Sending {len(events)} event(s) to pixel {self.pixel_id}",
            extra={
                "event_names": [e["event_name"] for e in events],
                "event_ids": [e["event_id"] for e in events],
                "test_mode": bool(test_event_code),
            },
        )

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.events_url,
                    params={"access_token": self.access_token},
                    json=payload,
                )
        except httpx.RequestError as e:
            logger.error(f"[META_CAPI] Network error: {e}")
            raise MetaCAPIError(f"Network error sending to Meta CAPI: {e}") from e

        if not response.is_success:
            logger.error(f"[META_CAPI] API error: {response.status_code} - {response.text[:200]}")
            raise MetaCAPIError(f"Meta CAPI failed ({response.status_code}): {response.text}")

        result = response.json() if response.content else {}
        logger.info(
            f"[META_CAPI] Success: {result.get('events_received', 0)} event(s) received",
            extra={"fbtrace_id": result.get("fbtrace_id", "")},
        )
        return result


# =============================================================================
# BACKGROUND FORWARDING
# =============================================================================

def event_from_row(
    service: MetaCAPIService,
    row: TrackingEvent,
    user_data: Optional[Dict[str, Optional[str]]] = None,
) -> Dict[str, Any]:
    """Event payload for a stored row.

    `user_data` carries request-time fields that are never stored (raw IP,
    customer name and address); non-empty values override the row.
    """
    fields: Dict[str, Any] = dict(
        event_name=row.event_name,
        event_id=row.event_id,
        event_time=row.occurred_at,
        event_source_url=row.page_url,
        fbp=row.fbp,
        fbc=row.fbc,
        client_user_agent=row.user_agent,
        value=row.value,
        currency=row.currency,
        order_id=row.order_id,
        external_id=row.external_id,
        email_hash=row.email_hash,
        phone_hash=row.phone_hash,
    )
    extra = {key: value for key, value in (user_data or {}).items() if value}
    phone = extra.pop("phone", None)
    if phone and not fields["phone_hash"]:
        fields["phone_hash"] = hash_phone(phone)
    fields.update(extra)
    return service.build_event(**fields)


async def forward_tracking_event(
    session_factory,
    store_id: str,
    event_id: str,
    settings,
    user_data: Optional[Dict[str, Optional[str]]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ForwardResult:
    """Forward one stored event and record the outcome on its row.

    Runs after the HTTP response (FastAPI BackgroundTasks), so it opens its
    own session. Never raises: failures are persisted on the row, logged and
    reported to Sentry.
    """
    db = session_factory()
    try:
        event_store = TrackingEventStore(db)
        row = event_store.get(store_id, event_id)
        if row is None:
            return ForwardResult(ok=False, error="event not found", skipped=True)

        config = db.query(TrackingConfig).filter(TrackingConfig.store_id == store_id).first()
        if not config or not config.pixel_id or not config.capi_access_token_encrypted:
            logger.debug(f"[META_CAPI] No pixel/token configured for store {store_id}")
            return ForwardResult(ok=False, error="pixel or access token not configured", skipped=True)

        try:
            access_token = decrypt_secret(
                config.capi_access_token_encrypted,
                context=f"tracking_config:{store_id}:capi",
            )
            service = MetaCAPIService(
                pixel_id=config.pixel_id,
                access_token=access_token,
                api_version=settings.META_GRAPH_API_VERSION,
                timeout=settings.META_CAPI_TIMEOUT_SECONDS,
                transport=transport,
            )
            await service.send_events(
                [event_from_row(service, row, user_data=user_data)],
                test_event_code=settings.META_CAPI_TEST_EVENT_CODE,
            )
        except (MetaCAPIError, ValueError) as e:
            event_store.mark_meta_delivery(store_id, event_id, forwarded=False, error=str(e))
            logger.warning(
                f"[META_CAPI] Forwarding failed for {event_id}: {e}",
                extra={"store_id": store_id, "event_id": event_id},
            )
            capture_exception(e, extra={"operation": "meta_capi_forward", "store_id": store_id})
            return ForwardResult(ok=False, error=str(e))

        event_store.mark_meta_delivery(store_id, event_id, forwarded=True)
        return ForwardResult(ok=True)

    except Exception as e:
        logger.exception(f"[META_CAPI] Unexpected forwarding failure for {event_id}: {e}")
        capture_exception(e, extra={"operation": "meta_capi_forward", "store_id": store_id})
        return ForwardResult(ok=False, error=str(e))
    finally:
        db.close()
