"""Order / refund ingestion into the tracking event store.

WHAT:
    Turns commerce order and refund records into `Purchase` / `Refund`
    tracking events with resolved campaign / ad set / ad ids.

WHY:
    The webhook handler and the order backfill must write identical rows for
    the same order, so both go through this service.

EVENT IDS:
    Purchase  existing shopify Purchase event id for the order, else
              "shopify-order-<order id>"
    Refund    "shopify-refund-<refund id>" (webhook falls back to order id,
              then a timestamp; backfill to "<order id>-<n>")

REFERENCES:
    - signalmatch/routers/shopify_webhooks.py
    - signalmatch/routers/tracking.py (POST /tracking/backfill-orders)
    - signalmatch/services/attribution_resolver.py
"""

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from signalmatch.models import AttributionMethodEnum, EventSourceEnum
from signalmatch.services.attribution_resolver import AttributionResolver, Resolution
from signalmatch.services.attribution_types import AttributionCandidate, EntityIds
from signalmatch.services.event_store import TrackingEventStore, UpsertResult
from signalmatch.services.signal_extractor import (
    ExtractedSignals,
    as_note_list,
    clean_str,
    extract_order_signals,
    get_nested,
    parse_amount,
)
from signalmatch.utils.dates import isoformat_utc, parse_iso_datetime, utcnow

logger = logging.getLogger(__name__)


ORDER_TOPICS = ("orders/create", "orders/updated")
REFUND_TOPIC = "refunds/create"

WEBHOOK_SOURCE_TAG = "shopify_webhook"
DEFAULT_CURRENCY = "USD"


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class IngestResult:
    event_name: str
    event_id: Optional[str] = None
    inserted: bool = False
    updated: bool = False
    mapped: bool = False
    ignored: bool = False
    forwardable: bool = False
    # Extra user_data for conversions forwarding (never persisted)
    forward_user_data: Dict[str, Optional[str]] = field(default_factory=dict)

    @classmethod
    def from_upsert(cls, event_name: str, event_id: str, upsert: UpsertResult, mapped: bool) -> "IngestResult":
        return cls(
            event_name=event_name,
            event_id=event_id,
            inserted=upsert.inserted,
            updated=upsert.updated,
            mapped=mapped,
        )


@dataclass
class BackfillSummary:
    days: int
    created_at_min: str
    scanned_orders: int = 0
    pages_scanned: int = 0
    inserted_purchase_events: int = 0
    inserted_refund_events: int = 0
    updated_purchase_events: int = 0
    updated_refund_events: int = 0
    mapped_purchase_events: int = 0
    mapped_refund_events: int = 0
    mapped_updated_purchases: int = 0
    mapped_updated_refunds: int = 0

    def record_purchase(self, result: IngestResult) -> None:
        if result.inserted:
            self.inserted_purchase_events += 1
            if result.mapped:
                self.mapped_purchase_events += 1
        elif result.updated:
            self.updated_purchase_events += 1
            if result.mapped:
                self.mapped_updated_purchases += 1

    def record_refund(self, result: IngestResult) -> None:
        if result.inserted:
            self.inserted_refund_events += 1
            if result.mapped:
                self.mapped_refund_events += 1
        elif result.updated:
            self.updated_refund_events += 1
            if result.mapped:
                self.mapped_updated_refunds += 1

    @property
    def mapping_rate_purchases(self) -> float:
        if self.inserted_purchase_events <= 0:
            return 0.0
        return math.floor(self.mapped_purchase_events / self.inserted_purchase_events * 10000 + 0.5) / 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "days": self.days,
            "createdAtMin": self.created_at_min,
            "scannedOrders": self.scanned_orders,
            "pagesScanned": self.pages_scanned,
            "insertedPurchaseEvents": self.inserted_purchase_events,
            "insertedRefundEvents": self.inserted_refund_events,
            "updatedPurchaseEvents": self.updated_purchase_events,
            "updatedRefundEvents": self.updated_refund_events,
            "mappedPurchaseEvents": self.mapped_purchase_events,
            "mappedRefundEvents": self.mapped_refund_events,
            "mappedUpdatedPurchases": self.mapped_updated_purchases,
            "mappedUpdatedRefunds": self.mapped_updated_refunds,
            "mappingRatePurchases": self.mapping_rate_purchases,
            "effectiveMappedPurchases": self.mapped_purchase_events + self.mapped_updated_purchases,
        }


# =============================================================================
# PAYLOAD HELPERS
# =============================================================================

def get_refund_amount(refund: Dict[str, Any]) -> float:
    """Refund transactions first, else refund line item subtotals; never negative."""
    transactions = refund.get("transactions") if isinstance(refund.get("transactions"), list) else []
    from_transactions = sum(
        parse_amount(txn.get("amount"))
        for txn in transactions
        if isinstance(txn, dict) and str(txn.get("kind") or "").lower() == "refund"
    )
    if from_transactions > 0:
        return from_transactions

    line_items = refund.get("refund_line_items") if isinstance(refund.get("refund_line_items"), list) else []
    from_lines = sum(parse_amount(item.get("subtotal")) for item in line_items if isinstance(item, dict))
    return from_lines if from_lines > 0 else 0.0


def order_occurred_at(record: Dict[str, Any]) -> datetime:
    return (
        parse_iso_datetime(record.get("created_at"))
        or parse_iso_datetime(record.get("updated_at"))
        or utcnow()
    )


def url_context(record: Dict[str, Any]) -> Dict[str, Optional[str]]:
    return {
        "landingSite": clean_str(record.get("landing_site")),
        "landingSiteRef": clean_str(record.get("landing_site_ref")),
        "referringSite": clean_str(record.get("referring_site")),
        "orderStatusUrl": clean_str(record.get("order_status_url")),
    }


def utm_context(signals: ExtractedSignals) -> Dict[str, Optional[str]]:
    return {
        "utmCampaign": signals.utm_campaign,
        "utmMedium": signals.utm_medium,
        "utmContent": signals.utm_content,
    }


def order_forward_user_data(order: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Customer fields used to raise conversions match quality."""
    customer = order.get("customer") if isinstance(order.get("customer"), dict) else {}
    address = order.get("billing_address") or order.get("shipping_address")
    address = address if isinstance(address, dict) else {}
    order_id = clean_str(order.get("id"))

    return {
        "external_id": clean_str(customer.get("id")) or order_id,
        "phone": clean_str(customer.get("phone")) or clean_str(order.get("phone")),
        "first_name": clean_str(customer.get("first_name")) or clean_str(address.get("first_name")),
        "last_name": clean_str(customer.get("last_name")) or clean_str(address.get("last_name")),
        "city": clean_str(address.get("city")),
        "state": clean_str(address.get("province_code")) or clean_str(address.get("province")),
        "zip": clean_str(address.get("zip")),
        "country": clean_str(address.get("country_code")) or clean_str(address.get("country")),
        "client_ip": clean_str(order.get("browser_ip")) or clean_str(get_nested(order, "client_details.browser_ip")),
        "client_user_agent": clean_str(get_nested(order, "client_details.user_agent")),
        "event_source_url": clean_str(order.get("order_status_url")),
    }


def _signal_columns(signals: ExtractedSignals) -> Dict[str, Optional[str]]:
    return {
        "click_id": signals.click_id,
        "fbc": signals.fbc,
        "fbp": signals.fbp,
        "email_hash": signals.email_hash,
    }


# =============================================================================
# SERVICE
# =============================================================================

class OrderIngestionService:
    """Usage:
        service = OrderIngestionService(TrackingEventStore(db), resolver)
        result = service.ingest_order(store_id, order, "orders/create")
    """

    def __init__(self, event_store: TrackingEventStore, resolver: AttributionResolver):
        self.event_store = event_store
        self.resolver = resolver

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    def _ingest_purchase(
        self,
        store_id: str,
        order: Dict[str, Any],
        topic: Optional[str],
        source_tag: str,
        memo: Optional[Dict[str, Optional[AttributionCandidate]]] = None,
        now: Optional[float] = None,
    ) -> Tuple[IngestResult, Optional[ExtractedSignals], Optional[Resolution]]:
        order_id = clean_str(order.get("id"))
        if not order_id:
            return IngestResult(event_name="Purchase", ignored=True), None, None

        financial_status = (clean_str(order.get("financial_status")) or "").lower()
        occurred_at = order_occurred_at(order)
        signals = extract_order_signals(order, now=now)

        event_id = (
            self.event_store.find_shopify_purchase_event_id(store_id, order_id)
            or f"shopify-order-{order_id}"
        )
        resolution = self.resolver.resolve(
            store_id,
            signals,
            occurred_at,
            exclude_event_id=event_id,
            memo=memo,
        )

        payload: Dict[str, Any] = {
            "source": source_tag,
            "topic": topic,
            "financialStatus": financial_status or None,
            **url_context(order),
            **utm_context(signals),
            "firstTouch": signals.first_touch or None,
            "noteAttributes": as_note_list(order.get("note_attributes")) or None,
            **resolution.payload_fields(),
        }

        upsert = self.event_store.insert({
            "store_id": store_id,
            "event_name": "Purchase",
            "event_id": event_id,
            "source": EventSourceEnum.shopify.value,
            "occurred_at": occurred_at,
            "page_url": clean_str(order.get("landing_site")),
            "referrer": clean_str(order.get("referring_site")),
            **_signal_columns(signals),
            "value": parse_amount(order.get("total_price")),
            "currency": clean_str(order.get("currency")) or DEFAULT_CURRENCY,
            "order_id": order_id,
            **resolution.entity_ids.to_dict(),
            "payload_json": payload,
        })

        result = IngestResult.from_upsert("Purchase", event_id, upsert, resolution.is_mapped)
        result.forwardable = upsert.inserted and financial_status != "refunded"
        if result.forwardable:
            result.forward_user_data = order_forward_user_data(order)
        return result, signals, resolution

    def ingest_order(
        self,
        store_id: str,
        order: Dict[str, Any],
        topic: Optional[str] = None,
        source_tag: str = WEBHOOK_SOURCE_TAG,
        now: Optional[float] = None,
    ) -> IngestResult:
        """Upsert the Purchase event for one order record."""
        result, _signals, resolution = self._ingest_purchase(store_id, order, topic, source_tag, now=now)
        if not result.ignored:
            logger.info(
                f"[ORDER_INGEST] Order purchase {result.event_id} for store {store_id}: "
                f"inserted={result.inserted} updated={result.updated} "
                f"method={resolution.method if resolution else None}",
                extra={"store_id": store_id, "event_id": result.event_id},
            )
        return result

    # -------------------------------------------------------------------------
    # Refunds
    # -------------------------------------------------------------------------

    def ingest_refund(
        self,
        store_id: str,
        refund: Dict[str, Any],
        topic: Optional[str] = REFUND_TOPIC,
        source_tag: str = WEBHOOK_SOURCE_TAG,
        now: Optional[float] = None,
    ) -> IngestResult:
        """Upsert a Refund event from a refund record.

        Attribution is copied from the order's stored Purchase when that row
        is mapped; otherwise the refund's own signals are resolved.
        """
        order_id = clean_str(refund.get("order_id"))
        refund_id = clean_str(refund.get("id"))
        event_id = f"shopify-refund-{refund_id or order_id or int(time.time() * 1000)}"
        occurred_at = order_occurred_at(refund)
        signals = extract_order_signals(refund, now=now)

        purchase = self.event_store.find_order_purchase(store_id, order_id) if order_id else None
        if purchase is not None and purchase.is_mapped:
            purchase_payload = purchase.payload_json if isinstance(purchase.payload_json, dict) else {}
            resolution = Resolution(
                entity_ids=EntityIds.from_row(purchase),
                method=purchase_payload.get("attributionMethod") or AttributionMethodEnum.deterministic.value,
            )
        else:
            resolution = self.resolver.resolve(store_id, signals, occurred_at, exclude_event_id=event_id)

        currency = (
            clean_str(refund.get("currency"))
            or (purchase.currency if purchase is not None else None)
            or DEFAULT_CURRENCY
        )

        upsert = self.event_store.insert({
            "store_id": store_id,
            "event_name": "Refund",
            "event_id": event_id,
            "source": EventSourceEnum.shopify.value,
            "occurred_at": occurred_at,
            **_signal_columns(signals),
            "value": get_refund_amount(refund),
            "currency": currency,
            "order_id": order_id,
            **resolution.entity_ids.to_dict(),
            "payload_json": {
                "source": source_tag,
                "topic": topic,
                "orderId": order_id,
                "refundId": refund_id,
                **url_context(refund),
                **utm_context(signals),
                "firstTouch": signals.first_touch or None,
                **resolution.payload_fields(),
            },
        })

        logger.info(
            f"[ORDER_INGEST] Refund {event_id} for store {store_id}: "
            f"inserted={upsert.inserted} mapped={resolution.is_mapped}",
            extra={"store_id": store_id, "event_id": event_id},
        )
        return IngestResult.from_upsert("Refund", event_id, upsert, resolution.is_mapped)

    # -------------------------------------------------------------------------
    # Backfill
    # -------------------------------------------------------------------------

    def _ingest_order_refunds(
        self,
        store_id: str,
        order: Dict[str, Any],
        signals: ExtractedSignals,
        resolution: Resolution,
        source_tag: str,
    ) -> List[IngestResult]:
        """Refund events embedded in an order record (backfill only)."""
        order_id = clean_str(order.get("id"))
        financial_status = (clean_str(order.get("financial_status")) or "").lower()
        order_value = parse_amount(order.get("total_price"))
        occurred_at = order_occurred_at(order)

        refunds = [r for r in (order.get("refunds") or []) if isinstance(r, dict)]
        if not refunds and financial_status == "refunded":
            refunds = [{
                "id": f"{order_id}-status",
                "created_at": order.get("updated_at"),
                "transactions": [{"kind": "refund", "amount": order_value}],
            }]

        results = []
        for index, refund in enumerate(refunds):
            amount = get_refund_amount(refund)
            if amount <= 0:
                continue
            refund_id = clean_str(refund.get("id")) or f"{order_id}-{index + 1}"
            event_id = f"shopify-refund-{refund_id}"

            upsert = self.event_store.insert({
                "store_id": store_id,
                "event_name": "Refund",
                "event_id": event_id,
                "source": EventSourceEnum.shopify.value,
                "occurred_at": (
                    parse_iso_datetime(refund.get("created_at"))
                    or parse_iso_datetime(order.get("updated_at"))
                    or occurred_at
                ),
                **_signal_columns(signals),
                "value": amount,
                "currency": clean_str(order.get("currency")) or DEFAULT_CURRENCY,
                "order_id": order_id,
                **resolution.entity_ids.to_dict(),
                "payload_json": {
                    "source": source_tag.replace("_order", "_refund"),
                    "orderId": order_id,
                    "refundId": refund_id,
                    **url_context(order),
                    **utm_context(signals),
                    "firstTouch": signals.first_touch or None,
                    **resolution.payload_fields(),
                },
            })
            results.append(IngestResult.from_upsert("Refund", event_id, upsert, resolution.is_mapped))
        return results

    def backfill_orders(
        self,
        store_id: str,
        orders: List[Dict[str, Any]],
        summary: BackfillSummary,
        memo: Dict[str, Optional[AttributionCandidate]],
        now: Optional[float] = None,
    ) -> BackfillSummary:
        """Ingest one page of orders (and their refunds) into `summary`.

        `memo` is shared across pages so equal signals on the same day are
        resolved once.
        """
        source_tag = f"backfill_{summary.days}d_order"
        summary.pages_scanned += 1

        for order in orders:
            summary.scanned_orders += 1
            result, signals, resolution = self._ingest_purchase(
                store_id, order, topic=None, source_tag=source_tag, memo=memo, now=now
            )
            if result.ignored:
                continue
            summary.record_purchase(result)

            for refund_result in self._ingest_order_refunds(store_id, order, signals, resolution, source_tag):
                summary.record_refund(refund_result)

        return summary


def new_backfill_summary(days: int, created_at_min: datetime) -> BackfillSummary:
    return BackfillSummary(days=days, created_at_min=isoformat_utc(created_at_min))
