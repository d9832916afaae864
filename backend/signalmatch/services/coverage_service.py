"""Attribution coverage and unmapped-purchase diagnostics.

WHAT:
    - Coverage: how many purchases in a window carry campaign / ad set / ad ids
    - Top entities: purchases and revenue per mapped entity, with names
    - Diagnostics: why unmapped purchases stayed unmapped
    - Entity metrics: result events, purchases and value per campaign / ad set / ad
    - Attribution summary: touch-backed vs mapped-only vs unattributed purchases

WHY:
    The same order is often recorded three times (pixel, server call, order
    webhook). Coverage is computed over one row per order so the percentage
    reflects orders, not events.

DEDUP RULE:
    Group rows by event name and order_id (event_id when there is none); keep
    the row with the best source (shopify < server < browser), ties to the
    most recent occurred_at.

REFERENCES:
    - signalmatch/routers/tracking.py (coverage, coverage-dashboard, entity-metrics, attribution)
    - signalmatch/services/entity_lookup.py (entity names)
"""

import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from signalmatch.models import EntityLevelEnum, EventSourceEnum, TrackingEvent
from signalmatch.services.entity_lookup import EntityNameLookup
from signalmatch.services.event_store import TrackingEventStore
from signalmatch.services.signal_extractor import (
    as_note_list,
    clean_str,
    read_nested_string,
    read_note_attribute,
    read_query_param,
)
from signalmatch.utils.dates import isoformat_utc, utcnow

logger = logging.getLogger(__name__)


DEFAULT_DAYS = 7
MIN_DAYS = 1
MAX_DAYS = 30

DEFAULT_TOP_LIMIT = 12
MAX_TOP_LIMIT = 100
DEFAULT_UNATTRIBUTED_LIMIT = 30
MAX_UNATTRIBUTED_LIMIT = 200
DIAGNOSTIC_SAMPLE_SIZE = 30

SOURCE_RANK = {
    EventSourceEnum.shopify.value: 0,
    EventSourceEnum.server.value: 1,
    EventSourceEnum.browser.value: 2,
}

# (code, label) in precedence order
REASONS: Tuple[Tuple[str, str], ...] = (
    ("no_signal", "No signal captured"),
    ("utm_only", "UTM present, click/session signal missing"),
    ("signal_only", "Click/session signal present, UTM missing"),
    ("first_touch_only", "First-touch found, no current click/session signal"),
    ("unresolved_mapping", "Signal present but mapping unresolved"),
)
REASON_LABELS = dict(REASONS)

UTM_PAYLOAD_PATHS = (
    "utmCampaign", "utm_campaign", "properties.utmCampaign", "properties.utm_campaign",
    "utmMedium", "utm_medium", "properties.utmMedium", "properties.utm_medium",
    "utmContent", "utm_content", "properties.utmContent", "properties.utm_content",
)
LANDING_URL_PATHS = (
    "landing_site", "landingSite",
    "landing_site_ref", "landingSiteRef",
    "referring_site", "referringSite",
    "pageUrl",
    "order_status_url", "orderStatusUrl",
)
UTM_PARAMS = ("utm_campaign", "utm_medium", "utm_content")
UTM_NOTE_KEYS = tuple(
    f"{prefix}{param}"
    for prefix in ("_tw_", "_tw_ft_", "_tw_first_")
    for param in UTM_PARAMS
)

FIRST_TOUCH_PAYLOAD_PATHS = (
    "firstTouchCampaignId",
    "firstTouchAdSetId",
    "firstTouchAdId",
    "firstTouchClickId",
    "firstTouchUtmCampaign",
    "firstTouchUtmMedium",
    "firstTouchUtmContent",
    "properties.firstTouchCampaignId",
    "properties.firstTouchAdSetId",
    "properties.firstTouchAdId",
    "properties.firstTouchClickId",
)
FIRST_TOUCH_NOTE_KEYS = tuple(
    f"{prefix}{name}"
    for prefix in ("_tw_ft_", "_tw_first_")
    for name in ("campaign_id", "adset_id", "ad_id", "click_id") + UTM_PARAMS
)

LEVEL_COLUMNS = (
    (EntityLevelEnum.campaign.value, "campaign_id"),
    (EntityLevelEnum.adset.value, "adset_id"),
    (EntityLevelEnum.ad.value, "ad_id"),
)


# =============================================================================
# CLAMPS
# =============================================================================

def _clamp_int(raw: Any, default: int, low: int, high: int) -> int:
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except (TypeError, ValueError):
        return default
    if math.isnan(parsed) or math.isinf(parsed):
        return default
    return max(low, min(high, math.floor(parsed)))


def clamp_days(raw: Any) -> int:
    return _clamp_int(raw, DEFAULT_DAYS, MIN_DAYS, MAX_DAYS)


def clamp_top_limit(raw: Any) -> int:
    return _clamp_int(raw, DEFAULT_TOP_LIMIT, 1, MAX_TOP_LIMIT)


def clamp_unattributed_limit(raw: Any) -> int:
    return _clamp_int(raw, DEFAULT_UNATTRIBUTED_LIMIT, 1, MAX_UNATTRIBUTED_LIMIT)


# =============================================================================
# DEDUP / COUNTS
# =============================================================================

def _source_rank(source: Optional[str]) -> int:
    return SOURCE_RANK.get(source or "", len(SOURCE_RANK))


def dedup_events(rows: Iterable[TrackingEvent]) -> List[TrackingEvent]:
    """One row per (event name, order), newest first.

    A refund shares its order_id with the purchase; keying on the event name
    keeps both.
    """
    best: Dict[Tuple[str, str], TrackingEvent] = {}
    for row in rows:
        key = (row.event_name, row.order_id or row.event_id)
        current = best.get(key)
        if current is None:
            best[key] = row
            continue
        rank, current_rank = _source_rank(row.source), _source_rank(current.source)
        if rank < current_rank or (rank == current_rank and row.occurred_at > current.occurred_at):
            best[key] = row
    return sorted(best.values(), key=lambda r: r.occurred_at, reverse=True)


def dedup_purchases(rows: Iterable[TrackingEvent]) -> List[TrackingEvent]:
    """One row per order, newest first."""
    return dedup_events(rows)


def coverage_percent(mapped: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return math.floor(mapped / total * 10000 + 0.5) / 100


@dataclass
class CoverageCounts:
    total_purchases: int = 0
    mapped_purchases: int = 0
    mapped_campaign: int = 0
    mapped_adset: int = 0
    mapped_ad: int = 0

    @property
    def percent(self) -> float:
        return coverage_percent(self.mapped_purchases, self.total_purchases)

    @property
    def unattributed_purchases(self) -> int:
        return max(self.total_purchases - self.mapped_purchases, 0)


def compute_coverage(purchases: Sequence[TrackingEvent]) -> CoverageCounts:
    """Counts over already-deduplicated purchase rows."""
    counts = CoverageCounts(total_purchases=len(purchases))
    for row in purchases:
        if row.is_mapped:
            counts.mapped_purchases += 1
        if row.campaign_id:
            counts.mapped_campaign += 1
        if row.adset_id:
            counts.mapped_adset += 1
        if row.ad_id:
            counts.mapped_ad += 1
    return counts


# =============================================================================
# UNMAPPED REASONS
# =============================================================================

@dataclass
class UnmappedSummary:
    has_signal: bool
    has_utm: bool
    has_first_touch: bool
    reason_code: str

    @property
    def reason_label(self) -> str:
        return REASON_LABELS[self.reason_code]


def _payload_notes(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    return as_note_list(payload.get("note_attributes") or payload.get("noteAttributes"))


def payload_has_utm(payload: Dict[str, Any], page_url: Optional[str] = None) -> bool:
    if read_nested_string(payload, UTM_PAYLOAD_PATHS):
        return True
    landing_url = read_nested_string(payload, LANDING_URL_PATHS)
    for url in (landing_url, clean_str(page_url)):
        if read_query_param(url, UTM_PARAMS):
            return True
    return bool(read_note_attribute(_payload_notes(payload), UTM_NOTE_KEYS))


def payload_has_first_touch(payload: Dict[str, Any]) -> bool:
    first_touch = payload.get("firstTouch")
    if isinstance(first_touch, dict) and any(clean_str(value) for value in first_touch.values()):
        return True
    if read_nested_string(payload, FIRST_TOUCH_PAYLOAD_PATHS):
        return True
    return bool(read_note_attribute(_payload_notes(payload), FIRST_TOUCH_NOTE_KEYS))


def reason_code_for(has_signal: bool, has_utm: bool, has_first_touch: bool) -> str:
    if not has_signal and not has_utm and not has_first_touch:
        return "no_signal"
    if has_utm and not has_signal:
        return "utm_only"
    if has_signal and not has_utm:
        return "signal_only"
    if has_first_touch and not has_signal:
        return "first_touch_only"
    return "unresolved_mapping"


def classify_unmapped(row: TrackingEvent) -> UnmappedSummary:
    payload = row.payload_json if isinstance(row.payload_json, dict) else {}
    has_signal = bool(row.click_id or row.fbc or row.fbp or row.email_hash)
    has_utm = payload_has_utm(payload, row.page_url)
    has_first_touch = payload_has_first_touch(payload)
    return UnmappedSummary(
        has_signal=has_signal,
        has_utm=has_utm,
        has_first_touch=has_first_touch,
        reason_code=reason_code_for(has_signal, has_utm, has_first_touch),
    )


# =============================================================================
# TOP ENTITIES
# =============================================================================

@dataclass
class EntityRow:
    id: str
    name: str
    purchases: int = 0
    purchase_value: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "purchases": self.purchases,
            "purchaseValue": round(self.purchase_value, 2),
        }


def top_entities(
    purchases: Sequence[TrackingEvent],
    column: str,
    limit: int,
    names: Optional[Dict[str, str]] = None,
) -> List[EntityRow]:
    """Bucket mapped purchases by entity id; count desc, then value desc."""
    names = names or {}
    buckets: Dict[str, EntityRow] = {}
    for row in purchases:
        entity_id = getattr(row, column)
        if not entity_id:
            continue
        bucket = buckets.get(entity_id)
        if bucket is None:
            bucket = buckets[entity_id] = EntityRow(id=entity_id, name=names.get(entity_id) or entity_id)
        bucket.purchases += 1
        bucket.purchase_value += float(row.value or 0)

    ranked = sorted(buckets.values(), key=lambda b: (-b.purchases, -b.purchase_value))
    return ranked[:limit]


def _purchase_row(row: TrackingEvent) -> Dict[str, Any]:
    return {
        "eventId": row.event_id,
        "orderId": row.order_id,
        "occurredAt": isoformat_utc(row.occurred_at),
        "value": float(row.value or 0),
        "currency": row.currency or "USD",
    }


# =============================================================================
# ENTITY METRICS
# =============================================================================

RESULT_EVENTS = frozenset({
    "Purchase",
    "Lead",
    "CompleteRegistration",
    "Contact",
    "SubmitApplication",
    "Subscribe",
    "StartTrial",
    "AddPaymentInfo",
    "InitiateCheckout",
    "AddToCart",
})

ISO_DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_day(raw: Any, fallback: date) -> date:
    """`YYYY-MM-DD` as a date; anything else gives `fallback`."""
    if not isinstance(raw, str) or not ISO_DAY_RE.match(raw):
        return fallback
    try:
        return date.fromisoformat(raw)
    except ValueError:
        return fallback


def day_bounds(since_raw: Any, until_raw: Any, today: date) -> Tuple[date, date]:
    """Inclusive (since, until) days; until never precedes since."""
    since = parse_day(since_raw, today)
    until = parse_day(until_raw, since)
    return since, max(since, until)


@dataclass
class EntityMetric:
    results: int = 0
    purchases: int = 0
    purchase_value: float = 0.0

    def add(self, other: "EntityMetric") -> None:
        self.results += other.results
        self.purchases += other.purchases
        self.purchase_value += other.purchase_value

    def to_dict(self, name: Optional[str] = None) -> Dict[str, Any]:
        data = {
            "results": self.results,
            "purchases": self.purchases,
            "purchaseValue": round(self.purchase_value, 2),
        }
        if name:
            data["name"] = name
        return data


def entity_triple_metrics(rows: Iterable[TrackingEvent]) -> Dict[Tuple[Optional[str], ...], EntityMetric]:
    """Result / purchase counts per (campaign, adset, ad) over deduplicated mapped rows."""
    buckets: Dict[Tuple[Optional[str], ...], EntityMetric] = {}
    for row in dedup_events(row for row in rows if row.is_mapped):
        triple = (row.campaign_id, row.adset_id, row.ad_id)
        bucket = buckets.setdefault(triple, EntityMetric())
        if row.event_name in RESULT_EVENTS:
            bucket.results += 1
        if row.event_name == "Purchase":
            bucket.purchases += 1
            bucket.purchase_value += float(row.value or 0)
    return buckets


def roll_up_by_level(
    triples: Dict[Tuple[Optional[str], ...], EntityMetric],
) -> Dict[str, Dict[str, EntityMetric]]:
    """Sum triple buckets into one bucket per campaign, per ad set and per ad."""
    levels: Dict[str, Dict[str, EntityMetric]] = {level: {} for level, _column in LEVEL_COLUMNS}
    for triple, metric in triples.items():
        for (level, _column), entity_id in zip(LEVEL_COLUMNS, triple):
            if not entity_id:
                continue
            levels[level].setdefault(entity_id, EntityMetric()).add(metric)
    return levels


# =============================================================================
# ATTRIBUTION SUMMARY
# =============================================================================

ATTRIBUTION_WINDOWS = (1, 7, 28)
DEFAULT_ATTRIBUTION_WINDOW = 7
TOUCH_SIGNALS = ("session_id", "click_id", "fbc", "fbp", "email_hash")


def attribution_window_days(configured: Any) -> int:
    return configured if configured in ATTRIBUTION_WINDOWS else DEFAULT_ATTRIBUTION_WINDOW


def earliest_touch_index(touches: Iterable[TrackingEvent]) -> Dict[Tuple[str, str], datetime]:
    """(signal, value) -> earliest occurred_at among non-purchase touches."""
    index: Dict[Tuple[str, str], datetime] = {}
    for touch in touches:
        for signal in TOUCH_SIGNALS:
            value = getattr(touch, signal, None)
            if not value:
                continue
            key = (signal, value)
            if key not in index or touch.occurred_at < index[key]:
                index[key] = touch.occurred_at
    return index


def has_prior_touch(purchase: TrackingEvent, index: Dict[Tuple[str, str], datetime]) -> bool:
    """True when a touch sharing any signal with `purchase` happened at or before it."""
    for signal in TOUCH_SIGNALS:
        value = getattr(purchase, signal, None)
        if not value:
            continue
        first_seen = index.get((signal, value))
        if first_seen is not None and first_seen <= purchase.occurred_at:
            return True
    return False


@dataclass
class AttributionSummary:
    purchase_count: int = 0
    purchase_revenue: float = 0.0
    attributed_revenue: float = 0.0
    deterministic_count: int = 0
    modeled_count: int = 0
    entity_mapped_count: int = 0
    unattributed_count: int = 0

    @property
    def attributed_count(self) -> int:
        return self.deterministic_count + self.modeled_count


def summarize_attribution(
    purchases: Sequence[TrackingEvent],
    touches: Iterable[TrackingEvent],
) -> AttributionSummary:
    """Split purchases into touch-backed (deterministic), mapped-only (modeled) and unattributed."""
    index = earliest_touch_index(touches)
    summary = AttributionSummary(purchase_count=len(purchases))
    for purchase in purchases:
        value = float(purchase.value or 0)
        summary.purchase_revenue += value
        if purchase.is_mapped:
            summary.entity_mapped_count += 1

        if has_prior_touch(purchase, index):
            summary.deterministic_count += 1
        elif purchase.is_mapped:
            summary.modeled_count += 1
        else:
            summary.unattributed_count += 1
            continue
        summary.attributed_revenue += value
    return summary


# =============================================================================
# SERVICE
# =============================================================================

@dataclass
class CoverageWindow:
    days: int
    since: datetime
    until: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "windowDays": self.days,
            "sinceIso": isoformat_utc(self.since),
            "untilIso": isoformat_utc(self.until),
        }


class CoverageService:
    """Read-only aggregation over the tracking event store.

    Usage:
        service = CoverageService(TrackingEventStore(db), EntityNameLookup(db, cache))
        data = service.get_dashboard(store_id, days=7)
    """

    def __init__(self, event_store: TrackingEventStore, name_lookup: Optional[EntityNameLookup] = None):
        self.event_store = event_store
        self.name_lookup = name_lookup

    def window(self, days: Any, now: Optional[datetime] = None) -> CoverageWindow:
        clamped = clamp_days(days)
        until = now or utcnow()
        return CoverageWindow(days=clamped, since=until - timedelta(days=clamped), until=until)

    def load_purchases(self, store_id: str, window: CoverageWindow) -> List[TrackingEvent]:
        rows = self.event_store.query_range(
            store_id,
            window.since,
            window.until,
            event_name="Purchase",
        )
        return dedup_purchases(rows)

    def get_coverage(self, store_id: str, days: Any = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        window = self.window(days, now)
        counts = compute_coverage(self.load_purchases(store_id, window))
        return {
            **window.to_dict(),
            "percent": counts.percent,
            "total_purchases": counts.total_purchases,
            "mapped_purchases": counts.mapped_purchases,
            "mapped_campaign": counts.mapped_campaign,
            "mapped_adset": counts.mapped_adset,
            "mapped_ad": counts.mapped_ad,
        }

    def _names(self, store_id: str, level: str) -> Dict[str, str]:
        if self.name_lookup is None:
            return {}
        return self.name_lookup.names_for(store_id, level)

    def get_dashboard(
        self,
        store_id: str,
        days: Any = None,
        limit: Any = None,
        unattributed_limit: Any = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        window = self.window(days, now)
        top_limit = clamp_top_limit(limit)
        recent_limit = clamp_unattributed_limit(unattributed_limit)

        purchases = self.load_purchases(store_id, window)
        counts = compute_coverage(purchases)

        top = {}
        for level, column in LEVEL_COLUMNS:
            rows = top_entities(purchases, column, top_limit, self._names(store_id, level))
            top[level] = [row.to_dict() for row in rows]

        # purchases are newest first
        unmapped = [row for row in purchases if not row.is_mapped]
        sample_limit = max(300, min(10_000, counts.total_purchases or 1_000))
        sampled = purchases[:sample_limit]
        sampled_unmapped = [row for row in sampled if not row.is_mapped]

        reason_counts = {code: 0 for code, _label in REASONS}
        sample = []
        for index, row in enumerate(sampled_unmapped):
            summary = classify_unmapped(row)
            reason_counts[summary.reason_code] += 1
            if index < DIAGNOSTIC_SAMPLE_SIZE:
                sample.append({
                    **_purchase_row(row),
                    "reasonCode": summary.reason_code,
                    "reasonLabel": summary.reason_label,
                    "hasSignal": summary.has_signal,
                    "hasUtm": summary.has_utm,
                    "hasFirstTouch": summary.has_first_touch,
                })

        return {
            **window.to_dict(),
            "coverage": {
                "totalPurchases": counts.total_purchases,
                "mappedPurchases": counts.mapped_purchases,
                "mappedCampaign": counts.mapped_campaign,
                "mappedAdSet": counts.mapped_adset,
                "mappedAd": counts.mapped_ad,
                "percent": counts.percent,
                "unattributedPurchases": counts.unattributed_purchases,
            },
            "topCampaigns": top[EntityLevelEnum.campaign.value],
            "topAdSets": top[EntityLevelEnum.adset.value],
            "topAds": top[EntityLevelEnum.ad.value],
            "recentUnattributedPurchases": [_purchase_row(row) for row in unmapped[:recent_limit]],
            "diagnostics": {
                "sampledPurchases": len(sampled),
                "sampledUnmappedPurchases": len(sampled_unmapped),
                "reasonCounts": [
                    {"code": code, "label": label, "count": reason_counts[code]}
                    for code, label in REASONS
                ],
                "sample": sample,
            },
        }

    def get_entity_metrics(
        self,
        store_id: str,
        since: Any = None,
        until: Any = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Results, purchases and purchase value per campaign / ad set / ad.

        `since` / `until` are inclusive UTC days (`YYYY-MM-DD`); both default
        to today.
        """
        now = now or utcnow()
        since_day, until_day = day_bounds(since, until, now.date())
        rows = self.event_store.query_range(
            store_id,
            datetime.combine(since_day, datetime.min.time()),
            datetime.combine(until_day, datetime.max.time()),
            mapped=True,
        )
        levels = roll_up_by_level(entity_triple_metrics(rows))

        data: Dict[str, Any] = {
            "since": since_day.isoformat(),
            "until": until_day.isoformat(),
            "timezone": "UTC",
        }
        for (level, _column), key in zip(LEVEL_COLUMNS, ("campaigns", "adSets", "ads")):
            names = self._names(store_id, level)
            data[key] = {
                entity_id: metric.to_dict(names.get(entity_id))
                for entity_id, metric in levels[level].items()
            }
        data["fetchedAt"] = isoformat_utc(now)
        return data

    def get_attribution_summary(
        self,
        store_id: str,
        window_days: Any = None,
        attribution_model: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Purchases in the attribution window split by how they are attributed.

        deterministic: a non-purchase touch sharing a signal precedes the purchase
        modeled:       no such touch, but the purchase carries entity ids
        """
        days = attribution_window_days(window_days)
        until = now or utcnow()
        since = until - timedelta(days=days)

        rows = self.event_store.query_range(store_id, since, until)
        purchases = dedup_purchases(row for row in rows if row.event_name == "Purchase")
        touches = [row for row in rows if row.event_name != "Purchase"]
        summary = summarize_attribution(purchases, touches)

        total = summary.purchase_count
        attributed_revenue = round(summary.attributed_revenue, 2)
        return {
            "windowDays": days,
            "attributionModel": attribution_model or "last_click",
            "purchaseCount": total,
            "purchaseRevenue": round(summary.purchase_revenue, 2),
            "attributedRevenue": {
                "firstClick": attributed_revenue,
                "lastClick": attributed_revenue,
            },
            "attributedCount": summary.attributed_count,
            "deterministicCount": summary.deterministic_count,
            "modeledCount": summary.modeled_count,
            "entityMappedCount": summary.entity_mapped_count,
            "unattributedPurchaseCount": summary.unattributed_count,
            "unattributedShare": summary.unattributed_count / total if total else 0,
            "attributionRate": coverage_percent(summary.attributed_count, total),
        }
