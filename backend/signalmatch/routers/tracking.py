"""Tracking endpoints: event collection, coverage and maintenance.

WHAT:
    POST /tracking/collect              browser pixel / server events
    GET  /tracking/coverage             purchase mapping coverage
    GET  /tracking/coverage-dashboard   coverage + top entities + diagnostics
    GET  /tracking/entity-metrics       results / purchases / value per campaign, ad set, ad
    GET  /tracking/attribution          touch-backed vs mapped-only purchase counts
    POST /tracking/remap                retroactive mapping of unmapped purchases
    POST /tracking/backfill-orders      re-ingest recent orders from the store API

WHY:
    Browser events carry the ad ids (URL params, pixel properties) that orders
    lack. Collecting them next to orders lets the resolver and the remapper
    join the two, and the coverage endpoints show how well that works.

REFERENCES:
    - signalmatch/services/coverage_service.py
    - signalmatch/services/bulk_remapper.py
    - signalmatch/services/order_ingestion.py
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from signalmatch.database import get_db, get_session_factory
from signalmatch.deps import Settings, get_name_cache, get_settings, require_cron_secret
from signalmatch.models import EventSourceEnum, Store, TrackingConfig
from signalmatch.security import decrypt_secret, hash_email, hash_phone, sha256_hex
from signalmatch.services.attribution_resolver import AttributionResolver
from signalmatch.services.bulk_remapper import BulkRemapper
from signalmatch.services.cache import NameCache
from signalmatch.services.coverage_service import CoverageService, clamp_days
from signalmatch.services.entity_lookup import EntityNameLookup
from signalmatch.services.event_store import TrackingEventStore
from signalmatch.services.meta_capi_service import FORWARDABLE_EVENTS, forward_tracking_event
from signalmatch.services.order_ingestion import OrderIngestionService, new_backfill_summary
from signalmatch.services.shopify_orders_client import ShopifyAPIError, ShopifyOrdersClient
from signalmatch.services.signal_extractor import ENTITY_FIELDS, clean_str, lookup_url
from signalmatch.telemetry import capture_exception
from signalmatch.utils.dates import parse_iso_datetime, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tracking", tags=["Tracking"])


# Pixel property keys that may carry entity ids, in lookup order
PROPERTY_ENTITY_ALIASES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("campaign_id", ("campaignId", "campaign_id", "firstTouchCampaignId", "fbCampaignId")),
    ("adset_id", ("adsetId", "adSetId", "adset_id", "firstTouchAdSetId", "firstTouchAdsetId", "fbAdsetId")),
    ("ad_id", ("adId", "ad_id", "firstTouchAdId", "fbAdId")),
)


# =============================================================================
# REQUEST/RESPONSE SCHEMAS
# =============================================================================

class CollectEventRequest(BaseModel):
    """Body of POST /tracking/collect.

    Example:
        {
            "storeId": "store-uuid",
            "eventName": "PageView",
            "eventId": "evt_123",
            "pageUrl": "https://shop.example.com/?fbclid=abc&campaign_id=123",
            "fbp": "fb.1.1700000000000.123",
            "properties": {"firstTouchCampaignId": "123"}
        }
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event_name: str = Field(..., min_length=1, description="PageView, AddToCart, Purchase, ...")
    event_id: Optional[str] = Field(None, description="Client dedup id; generated when missing")
    store_id: Optional[str] = Field(None, description="Store id (or resolved from pixelId)")
    pixel_id: Optional[str] = Field(None, description="Pixel id from the store's tracking config")
    occurred_at: Optional[str] = Field(None, description="ISO-8601 event time")
    page_url: Optional[str] = None
    referrer: Optional[str] = None
    session_id: Optional[str] = None
    click_id: Optional[str] = None
    fbclid: Optional[str] = None
    fbp: Optional[str] = None
    fbc: Optional[str] = None
    external_id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    value: Optional[float] = None
    currency: Optional[str] = None
    order_id: Optional[str] = None
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)


class CollectEventResponse(BaseModel):
    ok: bool
    inserted: bool
    updated: bool
    event_id: str = Field(..., serialization_alias="eventId")


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _require_store_id(store_id: Optional[str]) -> str:
    store_id = clean_str(store_id)
    if not store_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="storeId is required")
    return store_id


def _resolve_collect_store_id(db: Session, body: CollectEventRequest, query_store_id: Optional[str]) -> str:
    store_id = clean_str(query_store_id) or clean_str(body.store_id)
    if store_id:
        return store_id

    pixel_id = clean_str(body.pixel_id)
    if not pixel_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="storeId or pixelId is required",
        )
    config = db.query(TrackingConfig).filter(TrackingConfig.pixel_id == pixel_id).first()
    if not config:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown pixelId")
    return config.store_id


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def _property_entity_id(properties: Dict[str, Any], aliases: Tuple[str, ...]) -> Optional[str]:
    for key in aliases:
        value = clean_str(properties.get(key))
        if value:
            return value
    return None


def collect_entity_ids(body: CollectEventRequest) -> Dict[str, Optional[str]]:
    """Entity ids from the body, then property aliases, then page URL params."""
    properties = body.properties or {}
    aliases = dict(PROPERTY_ENTITY_ALIASES)
    return {
        name: (
            clean_str(getattr(body, name))
            or _property_entity_id(properties, aliases[name])
            or lookup_url(name, [body.page_url])
        )
        for name in ENTITY_FIELDS
    }


def _load_store(db: Session, store_id: str) -> Store:
    store = db.query(Store).filter(Store.id == store_id).first()
    if not store:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Store not found")
    return store


# =============================================================================
# EVENT COLLECTION
# =============================================================================

@router.post("/collect", response_model=CollectEventResponse, response_model_by_alias=True)
async def collect_event(
    body: CollectEventRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    store_id: Optional[str] = Query(None, alias="storeId"),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Store one browser or server event.

    Identity fields are normalized and hashed before storage; the raw client
    IP and phone are only handed to the forwarder.
    """
    resolved_store_id = _resolve_collect_store_id(db, body, store_id)
    event_id = clean_str(body.event_id) or str(uuid.uuid4())
    event_name = body.event_name.strip()

    source_header = (request.headers.get("X-Event-Source") or "").strip().lower()
    source = EventSourceEnum.server.value if source_header == "server" else EventSourceEnum.browser.value

    client_ip = _client_ip(request)
    user_agent = request.headers.get("User-Agent")
    page_url = clean_str(body.page_url)

    event: Dict[str, Any] = {
        "store_id": resolved_store_id,
        "event_name": event_name,
        "event_id": event_id,
        "source": source,
        "occurred_at": parse_iso_datetime(body.occurred_at) or utcnow(),
        "page_url": page_url,
        "referrer": clean_str(body.referrer),
        "session_id": clean_str(body.session_id),
        "click_id": clean_str(body.click_id) or clean_str(body.fbclid) or lookup_url("click_id", [page_url]),
        "fbp": clean_str(body.fbp),
        "fbc": clean_str(body.fbc),
        "external_id": clean_str(body.external_id),
        "email_hash": hash_email(body.email),
        "phone_hash": hash_phone(body.phone),
        "ip_hash": sha256_hex(client_ip) if client_ip else None,
        "user_agent": user_agent,
        "value": body.value,
        "currency": clean_str(body.currency),
        "order_id": clean_str(body.order_id),
        **collect_entity_ids(body),
        "payload_json": body.properties or None,
    }

    try:
        result = TrackingEventStore(db).insert(event)
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception(f"[TRACKING] Failed to store {event_name} {event_id}: {e}")
        capture_exception(e, extra={"operation": "tracking_collect", "store_id": resolved_store_id})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    if result.inserted and event_name in FORWARDABLE_EVENTS and settings.ENABLE_META_CAPI_FORWARDING:
        config = db.query(TrackingConfig).filter(TrackingConfig.store_id == resolved_store_id).first()
        if config and config.server_side_enabled:
            background_tasks.add_task(
                forward_tracking_event,
                session_factory,
                resolved_store_id,
                event_id,
                settings,
                user_data={"client_ip": client_ip, "phone": clean_str(body.phone)},
            )

    return CollectEventResponse(ok=True, inserted=result.inserted, updated=result.updated, event_id=event_id)


# =============================================================================
# COVERAGE
# =============================================================================

@router.get("/coverage")
def get_coverage(
    store_id: Optional[str] = Query(None, alias="storeId"),
    days: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """Share of de-duplicated purchases mapped to a campaign, ad set or ad."""
    store_id = _require_store_id(store_id)
    try:
        data = CoverageService(TrackingEventStore(db)).get_coverage(store_id, days)
    except SQLAlchemyError as e:
        logger.exception(f"[TRACKING] Coverage query failed for store {store_id}: {e}")
        capture_exception(e, extra={"operation": "tracking_coverage", "store_id": store_id})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return {"data": data}


@router.get("/coverage-dashboard")
def get_coverage_dashboard(
    store_id: Optional[str] = Query(None, alias="storeId"),
    days: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    unattributed_limit: Optional[str] = Query(None, alias="unattributedLimit"),
    db: Session = Depends(get_db),
    name_cache: NameCache = Depends(get_name_cache),
):
    """Coverage, top campaigns / ad sets / ads, and why purchases stay unmapped."""
    store_id = _require_store_id(store_id)
    service = CoverageService(TrackingEventStore(db), EntityNameLookup(db, name_cache))
    try:
        data = service.get_dashboard(store_id, days=days, limit=limit, unattributed_limit=unattributed_limit)
    except SQLAlchemyError as e:
        logger.exception(f"[TRACKING] Coverage dashboard failed for store {store_id}: {e}")
        capture_exception(e, extra={"operation": "tracking_coverage_dashboard", "store_id": store_id})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return {"data": data}


@router.get("/entity-metrics")
def get_entity_metrics(
    response: Response,
    store_id: Optional[str] = Query(None, alias="storeId"),
    since: Optional[str] = Query(None),
    until: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    name_cache: NameCache = Depends(get_name_cache),
):
    """Results, purchases and purchase value per campaign / ad set / ad for a day range."""
    store_id = _require_store_id(store_id)
    service = CoverageService(TrackingEventStore(db), EntityNameLookup(db, name_cache))
    try:
        data = service.get_entity_metrics(store_id, since=since, until=until)
    except SQLAlchemyError as e:
        logger.exception(f"[TRACKING] Entity metrics failed for store {store_id}: {e}")
        capture_exception(e, extra={"operation": "tracking_entity_metrics", "store_id": store_id})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, proxy-revalidate"
    return {"data": data}


@router.get("/attribution")
def get_attribution_summary(
    store_id: Optional[str] = Query(None, alias="storeId"),
    db: Session = Depends(get_db),
):
    """Purchases in the store's attribution window: touch-backed, mapped-only, unattributed."""
    store_id = _require_store_id(store_id)
    try:
        config = db.query(TrackingConfig).filter(TrackingConfig.store_id == store_id).first()
        data = CoverageService(TrackingEventStore(db)).get_attribution_summary(
            store_id,
            window_days=config.attribution_window if config else None,
            attribution_model=config.attribution_model if config else None,
        )
    except SQLAlchemyError as e:
        logger.exception(f"[TRACKING] Attribution summary failed for store {store_id}: {e}")
        capture_exception(e, extra={"operation": "tracking_attribution_summary", "store_id": store_id})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return {"data": data}


# =============================================================================
# MAINTENANCE
# =============================================================================

@router.post("/remap", dependencies=[Depends(require_cron_secret)])
def remap_unmapped_purchases(
    store_id: Optional[str] = Query(None, alias="storeId"),
    days: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Copy entity ids onto unmapped purchases that share a signal with a mapped event."""
    store_id = _require_store_id(store_id)
    lookback_days = clamp_days(days) if days is not None else settings.REMAP_LOOKBACK_DAYS
    remapper = BulkRemapper(
        TrackingEventStore(db),
        unmapped_limit=settings.REMAP_UNMAPPED_LIMIT,
        mapped_limit=settings.REMAP_MAPPED_LIMIT,
    )
    try:
        result = remapper.run(store_id, lookback_days=lookback_days)
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception(f"[REMAP] Remap failed for store {store_id}: {e}")
        capture_exception(e, extra={"operation": "tracking_remap", "store_id": store_id})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return {"ok": True, "data": {"days": lookback_days, **result.to_dict()}}


async def run_order_backfill(
    db: Session,
    store: Store,
    days: int,
    settings: Settings,
    name_cache: Optional[NameCache] = None,
    transport=None,
) -> Dict[str, Any]:
    """Page through recent orders and ingest them. Shared with the arq job.

    Raises:
        ValueError: the store has no usable access token
        ShopifyAPIError: the orders API failed
    """
    access_token = decrypt_secret(
        store.access_token_encrypted or "",
        context=f"store:{store.id}:access_token",
    )
    created_at_min = utcnow() - timedelta(days=days)
    summary = new_backfill_summary(days, created_at_min)

    ingestion = OrderIngestionService(
        TrackingEventStore(db),
        AttributionResolver.from_settings(db, settings, name_cache),
    )
    client = ShopifyOrdersClient(shop_domain=store.domain, access_token=access_token, transport=transport)
    memo: Dict[str, Any] = {}

    async for orders in client.iter_order_pages(created_at_min=summary.created_at_min):
        ingestion.backfill_orders(store.id, orders, summary, memo)

    logger.info(
        f"[BACKFILL] Store {store.id}: scanned={summary.scanned_orders} "
        f"inserted={summary.inserted_purchase_events} mapped={summary.mapped_purchase_events}",
        extra={"store_id": store.id, "shop_domain": store.domain},
    )
    return {**summary.to_dict(), "shopDomain": store.domain}


@router.post("/backfill-orders", dependencies=[Depends(require_cron_secret)])
async def backfill_orders(
    store_id: Optional[str] = Query(None, alias="storeId"),
    days: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    name_cache: NameCache = Depends(get_name_cache),
):
    """Re-ingest the last `days` of orders (and their refunds). No forwarding."""
    store_id = _require_store_id(store_id)
    store = _load_store(db, store_id)
    if not store.access_token_encrypted or not store.domain:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Store access token is not configured",
        )

    try:
        data = await run_order_backfill(db, store, clamp_days(days), settings, name_cache)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Store access token is not configured",
        )
    except ShopifyAPIError as e:
        logger.error(f"[BACKFILL] Orders API failed for store {store_id}: {e}")
        capture_exception(e, extra={"operation": "order_backfill", "store_id": store_id})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception(f"[BACKFILL] Backfill failed for store {store_id}: {e}")
        capture_exception(e, extra={"operation": "order_backfill", "store_id": store_id})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    return {"ok": True, "data": data}
