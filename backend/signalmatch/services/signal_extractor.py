"""Identity-signal extraction from commerce order / refund payloads.

WHAT:
    Pure functions that turn a raw order record (arbitrary JSON) into
    normalized identity signals (click id, fbc, fbp, email hash), UTM fields,
    first-touch attributes and any entity ids embedded directly in the order.

WHY:
    Every downstream matcher (direct mapping, signal scorer, time proximity,
    bulk remapper, coverage diagnostics) keys off these values, so the
    alias rules live in one place as data instead of being repeated per field.

HOW:
    - Four URL-bearing order fields are searched for query parameters
    - `note_attributes` (name/value pairs written by storefront scripts) are
      searched by alias key, case-insensitively
    - Each canonical field has an ordered alias tuple per source; a single
      generic lookup walks them. First non-empty value wins.
    - Accessors never raise on malformed nested data; they return None.

REFERENCES:
    - signalmatch/services/order_ingestion.py (consumer)
    - signalmatch/services/coverage_service.py (reason classification)
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import unquote

from signalmatch.security import hash_email

logger = logging.getLogger(__name__)


# =============================================================================
# ALIAS TABLES
# =============================================================================

# Candidate URL fields on an order, in lookup order
ORDER_URL_FIELDS: Tuple[str, ...] = (
    "landing_site",
    "order_status_url",
    "landing_site_ref",
    "referring_site",
)

SIGNAL_TYPES: Tuple[str, ...] = ("click_id", "fbc", "fbp", "email_hash")

UTM_FIELDS: Tuple[str, ...] = ("utm_campaign", "utm_medium", "utm_content")

ENTITY_FIELDS: Tuple[str, ...] = ("campaign_id", "adset_id", "ad_id")


def _touch_variants(name: str) -> Tuple[str, ...]:
    """Current- and first-touch note keys written by storefront tracking scripts."""
    return (
        f"_tw_{name}",
        f"_tw_ft_{name}",
        f"_tw_first_{name}",
        f"tw_{name}",
        f"tw_ft_{name}",
        f"tw_first_{name}",
    )


URL_ALIASES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("click_id", ("fbclid",)),
    ("fbc", ("fbc",)),
    ("fbp", ("fbp",)),
    ("utm_campaign", ("utm_campaign",)),
    ("utm_medium", ("utm_medium",)),
    ("utm_content", ("utm_content",)),
    ("campaign_id", ("campaign_id", "campaignid", "utm_campaign_id", "fb_campaign_id", "hsa_cam")),
    ("adset_id", ("adset_id", "adsetid", "utm_adset_id", "fb_adset_id", "hsa_adset")),
    ("ad_id", ("ad_id", "adid", "utm_ad_id", "fb_ad_id", "hsa_ad")),
)

NOTE_ALIASES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("click_id", _touch_variants("click_id") + ("fbclid",)),
    ("fbc", ("_tw_fbc", "_tw_first_fbc", "tw_fbc", "tw_first_fbc", "fbc")),
    ("fbp", ("_tw_fbp", "tw_fbp", "fbp", "_fbp")),
    ("email", ("_tw_email", "email")),
    ("utm_campaign", _touch_variants("utm_campaign") + ("utm_campaign",)),
    ("utm_medium", _touch_variants("utm_medium") + ("utm_medium",)),
    ("utm_content", _touch_variants("utm_content") + ("utm_content",)),
    ("campaign_id", _touch_variants("campaign_id") + dict(URL_ALIASES)["campaign_id"]),
    ("adset_id", _touch_variants("adset_id") + dict(URL_ALIASES)["adset_id"]),
    ("ad_id", _touch_variants("ad_id") + dict(URL_ALIASES)["ad_id"]),
)

FIRST_TOUCH_PREFIXES: Tuple[str, ...] = ("_tw_ft_", "_tw_first_", "tw_ft_", "tw_first_")

_URL_ALIAS_MAP = dict(URL_ALIASES)
_NOTE_ALIAS_MAP = dict(NOTE_ALIASES)


# =============================================================================
# DEFENSIVE ACCESSORS
# =============================================================================

def clean_str(value: Any) -> Optional[str]:
    """Trimmed string form of a scalar, or None when empty / not a scalar."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not value.is_integer():
            return str(value)
        return str(int(value))
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def get_nested(payload: Any, path: str) -> Any:
    """Walk a dotted path through nested dicts; None on any miss."""
    cursor = payload
    for segment in path.split("."):
        if not isinstance(cursor, dict):
            return None
        cursor = cursor.get(segment)
    return cursor


def read_nested_string(payload: Any, paths: Iterable[str]) -> Optional[str]:
    for path in paths:
        value = clean_str(get_nested(payload, path))
        if value:
            return value
    return None


def as_note_list(raw: Any) -> List[Dict[str, Any]]:
    """Normalize `note_attributes` to a list of dicts, dropping junk entries."""
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]


def parse_amount(value: Any) -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return 0.0
    if amount != amount or amount in (float("inf"), float("-inf")):
        return 0.0
    return amount


# =============================================================================
# QUERY PARAMETER / NOTE ATTRIBUTE READERS
# =============================================================================

def decode_component_safe(value: str) -> str:
    """`+` -> space, then percent-decode; raw text when decoding fails."""
    with_spaces = value.replace("+", " ")
    try:
        return unquote(with_spaces, errors="strict")
    except UnicodeDecodeError:
        return with_spaces


def read_query_param(raw_url: Optional[str], keys: Sequence[str]) -> Optional[str]:
    """First non-empty value for any of `keys` in the URL's query string.

    Works on relative URLs and fragments (landing_site is usually a path),
    matches keys case-insensitively, ignores anything after '#'.
    """
    if not raw_url or not isinstance(raw_url, str):
        return None
    key_set = {key.lower() for key in keys}
    q_idx = raw_url.find("?")
    if q_idx == -1:
        return None
    hash_idx = raw_url.find("#", q_idx + 1)
    query = raw_url[q_idx + 1:] if hash_idx == -1 else raw_url[q_idx + 1:hash_idx]
    if not query:
        return None

    for segment in query.split("&"):
        if not segment:
            continue
        key_raw, sep, value_raw = segment.partition("=")
        decoded_key = decode_component_safe(key_raw).strip().lower()
        if not decoded_key or decoded_key not in key_set:
            continue
        decoded_value = decode_component_safe(value_raw if sep else "").strip()
        if decoded_value:
            return decoded_value
    return None


def read_param(urls: Iterable[Optional[str]], keys: Sequence[str]) -> Optional[str]:
    for raw_url in urls:
        value = read_query_param(raw_url, keys)
        if value:
            return value
    return None


def read_note_attribute(note_attributes: Any, keys: Sequence[str]) -> Optional[str]:
    """First non-empty note value whose name matches one of `keys`.

    Notes are walked in their own order; key matching is case-insensitive.
    """
    key_set = {key.lower() for key in keys}
    for attr in as_note_list(note_attributes):
        name = clean_str(attr.get("name"))
        if not name or name.lower() not in key_set:
            continue
        value = clean_str(attr.get("value"))
        if value:
            return value
    return None


def lookup_url(field_name: str, urls: Sequence[Optional[str]]) -> Optional[str]:
    return read_param(urls, _URL_ALIAS_MAP[field_name])


def lookup_note(field_name: str, note_attributes: Any) -> Optional[str]:
    return read_note_attribute(note_attributes, _NOTE_ALIAS_MAP[field_name])


def order_urls(order: Dict[str, Any]) -> List[Optional[str]]:
    return [clean_str(order.get(name)) for name in ORDER_URL_FIELDS]


# =============================================================================
# CLICK ID / FBC HELPERS
# =============================================================================

def parse_click_id_from_fbc(fbc: Optional[str]) -> Optional[str]:
    """fb.1.<ts>.<click id>: everything from the 4th dot-segment onward."""
    if not fbc:
        return None
    trimmed = fbc.strip()
    if not trimmed:
        return None
    parts = trimmed.split(".")
    if len(parts) < 4:
        return None
    return ".".join(parts[3:]) or None


def build_fbc_from_click_id(click_id: Optional[str], now: Optional[float] = None) -> Optional[str]:
    if not click_id:
        return None
    ts = int(now if now is not None else time.time())
    return f"fb.1.{ts}.{click_id}"


# =============================================================================
# EXTRACTED SIGNALS
# =============================================================================

@dataclass
class ExtractedSignals:
    """Normalized identity signals and embedded attribution for one order."""

    click_id: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    email_hash: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_content: Optional[str] = None
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None
    first_touch: Dict[str, str] = field(default_factory=dict)

    @property
    def has_signal(self) -> bool:
        return bool(self.click_id or self.fbc or self.fbp or self.email_hash)

    @property
    def has_direct_mapping(self) -> bool:
        return bool(self.campaign_id or self.adset_id or self.ad_id)

    @property
    def has_utm(self) -> bool:
        return bool(self.utm_campaign or self.utm_medium or self.utm_content)

    def signals(self) -> Dict[str, str]:
        """Present identity signals keyed by signal type, in priority order."""
        values = {
            "click_id": self.click_id,
            "fbc": self.fbc,
            "fbp": self.fbp,
            "email_hash": self.email_hash,
        }
        return {name: value for name, value in values.items() if value}

    def present_signal_types(self) -> List[str]:
        return list(self.signals().keys())

    def cache_key(self, day: str) -> str:
        """Memoization key for fallback resolution within one batch."""
        return "|".join([
            self.click_id or "",
            self.fbc or "",
            self.fbp or "",
            self.email_hash or "",
            day,
        ])


def extract_first_touch(note_attributes: Any) -> Dict[str, str]:
    """First-touch note attributes (name lower-cased -> value)."""
    first_touch: Dict[str, str] = {}
    for attr in as_note_list(note_attributes):
        name = clean_str(attr.get("name"))
        if not name:
            continue
        lowered = name.lower()
        if not lowered.startswith(FIRST_TOUCH_PREFIXES):
            continue
        value = clean_str(attr.get("value"))
        if value and lowered not in first_touch:
            first_touch[lowered] = value
    return first_touch


def extract_order_signals(order: Dict[str, Any], now: Optional[float] = None) -> ExtractedSignals:
    """Extract identity signals and embedded entity ids from an order record.

    Args:
        order: Raw order / refund JSON (dict). Missing or malformed fields
            are treated as absent.
        now: Unix seconds used when an fbc has to be synthesized
            (injectable for tests).

    Priority per field:
        click_id   notes -> URL fbclid -> parsed from fbc (URL, then notes)
        fbc        notes -> URL -> synthesized from click_id
        fbp        notes -> URL
        email_hash order.email -> customer.email -> notes
        utm_*      notes -> URL
        entity ids URL -> notes
    """
    if not isinstance(order, dict):
        return ExtractedSignals()

    urls = order_urls(order)
    notes = order.get("note_attributes")

    url_fbc = lookup_url("fbc", urls)
    note_fbc = lookup_note("fbc", notes)

    click_id = (
        lookup_note("click_id", notes)
        or lookup_url("click_id", urls)
        or parse_click_id_from_fbc(url_fbc)
        or parse_click_id_from_fbc(note_fbc)
    )
    fbc = note_fbc or url_fbc or build_fbc_from_click_id(click_id, now)
    fbp = lookup_note("fbp", notes) or lookup_url("fbp", urls)

    email = (
        clean_str(order.get("email"))
        or clean_str(get_nested(order, "customer.email"))
        or lookup_note("email", notes)
    )

    signals = ExtractedSignals(
        click_id=click_id,
        fbc=fbc,
        fbp=fbp,
        email_hash=hash_email(email),
        first_touch=extract_first_touch(notes),
    )

    for utm_field in UTM_FIELDS:
        setattr(signals, utm_field, lookup_note(utm_field, notes) or lookup_url(utm_field, urls))

    for entity_field in ENTITY_FIELDS:
        setattr(
            signals,
            entity_field,
            lookup_url(entity_field, urls) or lookup_note(entity_field, notes),
        )

    return signals
