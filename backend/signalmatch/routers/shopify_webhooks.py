"""Commerce order webhooks.

WHAT:
    Single signed endpoint for Shopify order and refund topics. Each
    delivery is verified, turned into a Purchase / Refund tracking event with
    resolved campaign / ad set / ad ids, and (for new purchases) optionally
    forwarded to the Conversions API after the response is sent.

WHY:
    Orders are the revenue truth. Matching them to the ad entities seen in
    browser events is what the coverage dashboard reports on.

WEBHOOKS:
    orders/create, orders/updated  -> Purchase
    refunds/create                 -> Refund
    anything else                  -> acknowledged, ignored

STATUS CODES:
    400  missing shop / hmac headers, malformed JSON
    401  unknown store, no webhook secret, invalid signature
    200  {"ok": true, ...}

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https#step-5-verify-the-webhook
    - signalmatch/services/order_ingestion.py
    - signalmatch/services/meta_capi_service.py
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session, sessionmaker

from signalmatch.database import get_db, get_session_factory
from signalmatch.deps import Settings, get_name_cache, get_settings
from signalmatch.models import Store, TrackingConfig
from signalmatch.security import decrypt_secret, verify_webhook_hmac
from signalmatch.services.attribution_resolver import AttributionResolver
from signalmatch.services.cache import NameCache
from signalmatch.services.event_store import TrackingEventStore
from signalmatch.services.meta_capi_service import forward_tracking_event
from signalmatch.services.order_ingestion import (
    ORDER_TOPICS,
    REFUND_TOPIC,
    WEBHOOK_SOURCE_TAG,
    OrderIngestionService,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Shopify Webhooks"])


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _load_webhook_secret(db: Session, shop_domain: str) -> Optional[tuple]:
    """(store, plaintext secret) for a shop domain, or None."""
    store = db.query(Store).filter(Store.domain == shop_domain).first()
    if not store or not store.api_secret_encrypted:
        return None
    try:
        secret = decrypt_secret(store.api_secret_encrypted, context=f"store:{store.id}:webhook")
    except ValueError:
        return None
    return store, secret


def _forwarding_enabled(db: Session, store_id: str, settings: Settings) -> bool:
    if not settings.ENABLE_META_CAPI_FORWARDING:
        return False
    config = db.query(TrackingConfig).filter(TrackingConfig.store_id == store_id).first()
    return bool(config and config.server_side_enabled)


# =============================================================================
# WEBHOOK ENDPOINT
# =============================================================================

@router.post("/shopify")
async def handle_shopify_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    name_cache: NameCache = Depends(get_name_cache),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Verify, parse and ingest one webhook delivery.

    FLOW:
        1. Read raw body + headers (signature is over the raw bytes)
        2. Find the store by shop domain and decrypt its webhook secret
        3. Verify HMAC; only then parse JSON
        4. Dispatch by topic to the ingestion service
        5. Schedule Conversions API forwarding for newly inserted purchases
    """
    body = await request.body()
    topic = (request.headers.get("X-Shopify-Topic") or "").strip().lower()
    shop_domain = (request.headers.get("X-Shopify-Shop-Domain") or "").strip().lower()
    hmac_header = (request.headers.get("X-Shopify-Hmac-Sha256") or "").strip()

    if not shop_domain or not hmac_header:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Shopify webhook headers",
        )

    loaded = _load_webhook_secret(db, shop_domain)
    if loaded is None:
        logger.warning(f"[SHOPIFY_WEBHOOK] Unknown store or missing secret: {shop_domain}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown store or missing webhook secret",
        )
    store, secret = loaded

    if not verify_webhook_hmac(secret, body, hmac_header):
        logger.warning(f"[SHOPIFY_WEBHOOK] {topic} - Invalid signature for {shop_domain}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )

    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        logger.error(f"[SHOPIFY_WEBHOOK] Failed to parse JSON: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook payload",
        )
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook payload",
        )

    logger.info(
        f"[SHOPIFY_WEBHOOK] {topic} received",
        extra={"shop_domain": shop_domain, "store_id": store.id, "order_id": payload.get("id")},
    )

    if topic not in ORDER_TOPICS and topic != REFUND_TOPIC:
        return {"ok": True, "ignored": True}

    resolver = AttributionResolver.from_settings(db, settings, name_cache)
    ingestion = OrderIngestionService(TrackingEventStore(db), resolver)

    if topic == REFUND_TOPIC:
        ingestion.ingest_refund(store.id, payload, topic=topic, source_tag=WEBHOOK_SOURCE_TAG)
        return {"ok": True}

    result = ingestion.ingest_order(store.id, payload, topic=topic, source_tag=WEBHOOK_SOURCE_TAG)
    if result.ignored:
        return {"ok": True, "ignored": True}

    if result.forwardable and _forwarding_enabled(db, store.id, settings):
        background_tasks.add_task(
            forward_tracking_event,
            session_factory,
            store.id,
            result.event_id,
            settings,
            user_data=result.forward_user_data,
        )

    return {"ok": True}
