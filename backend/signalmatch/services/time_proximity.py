"""Time-proximity fallback matcher.

WHAT:
    When signal matching finds nothing trustworthy, look for mapped purchases
    recorded moments before/after the current order and borrow their
    attribution.

WHY:
    A pixel Purchase and the order webhook for the same checkout usually land
    within seconds of each other. If the pixel row was mapped, the order was
    almost certainly driven by the same ad.

AMBIGUITY GUARD:
    If another candidate with a *different* campaign/adset/ad triple is within
    `ambiguity_seconds` of the best candidate's distance, two unrelated
    purchases may be interleaved and no match is returned.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from signalmatch.models import AttributionStrategyEnum
from signalmatch.services.attribution_types import AttributionCandidate, EntityIds
from signalmatch.services.event_store import TrackingEventStore

logger = logging.getLogger(__name__)


DEFAULT_WINDOW_MINUTES = 10
MIN_WINDOW_MINUTES = 2
MAX_WINDOW_MINUTES = 60
DEFAULT_AMBIGUITY_SECONDS = 120
DEFAULT_CANDIDATE_LIMIT = 8

# (max distance in seconds, confidence)
CONFIDENCE_TIERS: Tuple[Tuple[int, float], ...] = (
    (60, 0.76),
    (180, 0.72),
    (300, 0.67),
    (600, 0.60),
    (900, 0.53),
)
CONFIDENCE_FLOOR = 0.42


def clamp_window_minutes(window_minutes: Optional[float]) -> int:
    if window_minutes is None:
        return DEFAULT_WINDOW_MINUTES
    try:
        minutes = math.floor(float(window_minutes))
    except (TypeError, ValueError):
        return DEFAULT_WINDOW_MINUTES
    return max(MIN_WINDOW_MINUTES, min(MAX_WINDOW_MINUTES, minutes))


def confidence_for_distance(diff_seconds: int) -> float:
    for max_seconds, confidence in CONFIDENCE_TIERS:
        if diff_seconds <= max_seconds:
            return confidence
    return CONFIDENCE_FLOOR


def distance_seconds(occurred_at: datetime, candidate_at: datetime) -> int:
    # JS-style Math.round: halves round up
    return abs(math.floor((occurred_at - candidate_at).total_seconds() + 0.5))


def pick_nearest(
    occurred_at: datetime,
    rows: Sequence,
    ambiguity_seconds: int = DEFAULT_AMBIGUITY_SECONDS,
    signal_types: Optional[List[str]] = None,
) -> Optional[AttributionCandidate]:
    """Choose the nearest mapped row, or None when the choice is ambiguous."""
    ranked = []
    for row in rows:
        entity_ids = EntityIds.from_row(row)
        if not entity_ids.is_mapped:
            continue
        ranked.append((distance_seconds(occurred_at, row.occurred_at), row, entity_ids))

    if not ranked:
        return None

    # Nearest first; equal distance prefers the more recent row
    ranked.sort(key=lambda item: (item[0], -item[1].occurred_at.timestamp()))
    best_diff, best_row, best_ids = ranked[0]

    for diff, _row, entity_ids in ranked[1:]:
        if entity_ids.triple_key == best_ids.triple_key:
            continue
        if diff - best_diff <= ambiguity_seconds:
            logger.debug(
                f"[TIME_PROXIMITY] Ambiguous: best={best_diff}s, rival={diff}s "
                f"({best_ids.triple_key} vs {entity_ids.triple_key})"
            )
            return None
        break

    confidence = confidence_for_distance(best_diff)
    return AttributionCandidate(
        entity_ids=best_ids,
        confidence=confidence,
        score=float(round(confidence * 100)),
        matched_signals=list(signal_types or []),
        matched_at=best_row.occurred_at,
        source=best_row.source,
        age_hours=best_diff / 3600.0,
        strategy=AttributionStrategyEnum.time_proximity.value,
        matched_event_id=best_row.event_id,
        extra={"diffSeconds": best_diff},
    )


class TimeProximityMatcher:
    """Finds mapped purchases near an event's timestamp."""

    def __init__(
        self,
        event_store: TrackingEventStore,
        ambiguity_seconds: int = DEFAULT_AMBIGUITY_SECONDS,
        limit: int = DEFAULT_CANDIDATE_LIMIT,
    ):
        self.event_store = event_store
        self.ambiguity_seconds = ambiguity_seconds
        self.limit = limit

    def find(
        self,
        store_id: str,
        occurred_at: datetime,
        window_minutes: Optional[float] = None,
        signal_types: Optional[List[str]] = None,
        exclude_event_id: Optional[str] = None,
    ) -> Optional[AttributionCandidate]:
        window = timedelta(minutes=clamp_window_minutes(window_minutes))
        rows = self.event_store.query_by_time_window(
            store_id,
            "Purchase",
            occurred_at - window,
            occurred_at + window,
            limit=self.limit,
            exclude_event_id=exclude_event_id,
        )
        return pick_nearest(
            occurred_at,
            rows,
            ambiguity_seconds=self.ambiguity_seconds,
            signal_types=signal_types,
        )
