"""Signal-overlap scoring of attribution candidates.

WHAT:
    Scores previously mapped tracking events that share identity signals
    with the event being resolved and picks the most plausible one.

WHY:
    When an order carries no embedded campaign/adset/ad ids, the best
    evidence is an earlier pixel or server event with the same click id,
    fbc, fbp or email hash that *was* mapped.

SCORING:
    base       click_id 72, fbc 58, fbp 24, email_hash 12 (additive)
    combo      +18 when click_id and fbc both match
    breadth    +6 per matched signal beyond the first
    recency    x1.0 <=1h, x0.97 <=6h, x0.90 <=24h, x0.75 <=72h,
               x0.55 <=168h, else x0.35 (only with a reference time)
    weak-only  email_hash alone older than 120h x0.35,
               fbp alone older than 48h x0.6
    source     x0.72 for shopify-origin candidates
    confidence clamp(score / 120, 0.05, 0.98)

REFERENCES:
    - signalmatch/services/acceptance.py (gates the winner)
    - signalmatch/services/attribution_resolver.py (caller)
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from signalmatch.models import AttributionStrategyEnum, EventSourceEnum
from signalmatch.services.attribution_types import AttributionCandidate, EntityIds
from signalmatch.services.event_store import TrackingEventStore
from signalmatch.services.signal_extractor import SIGNAL_TYPES

logger = logging.getLogger(__name__)


SIGNAL_WEIGHTS: Dict[str, float] = {
    "click_id": 72.0,
    "fbc": 58.0,
    "fbp": 24.0,
    "email_hash": 12.0,
}

CLICK_AND_FBC_BONUS = 18.0
BREADTH_BONUS_PER_SIGNAL = 6.0

# (max age in hours, multiplier); anything older falls through to the floor
RECENCY_STEPS: Tuple[Tuple[float, float], ...] = (
    (1.0, 1.0),
    (6.0, 0.97),
    (24.0, 0.90),
    (72.0, 0.75),
    (168.0, 0.55),
)
RECENCY_FLOOR = 0.35

EMAIL_ONLY_MAX_AGE_HOURS = 120.0
EMAIL_ONLY_PENALTY = 0.35
FBP_ONLY_MAX_AGE_HOURS = 48.0
FBP_ONLY_PENALTY = 0.6

SHOPIFY_SOURCE_DAMPENING = 0.72

SCORE_TO_CONFIDENCE_DIVISOR = 120.0
MIN_CONFIDENCE = 0.05
MAX_CONFIDENCE = 0.98


def recency_multiplier(age_hours: float) -> float:
    for max_hours, multiplier in RECENCY_STEPS:
        if age_hours <= max_hours:
            return multiplier
    return RECENCY_FLOOR


def age_in_hours(before: datetime, matched_at: datetime) -> float:
    return max(0.0, (before - matched_at).total_seconds() / 3600.0)


def score_signal_match(
    matched_signals: Sequence[str],
    age_hours: Optional[float],
    candidate_source: Optional[str],
) -> float:
    """Raw score for one candidate. Pure function of its inputs."""
    matched = set(matched_signals)
    score = sum(SIGNAL_WEIGHTS[name] for name in matched if name in SIGNAL_WEIGHTS)

    if "click_id" in matched and "fbc" in matched:
        score += CLICK_AND_FBC_BONUS
    if len(matched) >= 2:
        score += BREADTH_BONUS_PER_SIGNAL * (len(matched) - 1)

    if age_hours is not None and age_hours > 0:
        score *= recency_multiplier(age_hours)

    if age_hours is not None and len(matched) == 1:
        if "email_hash" in matched and age_hours > EMAIL_ONLY_MAX_AGE_HOURS:
            score *= EMAIL_ONLY_PENALTY
        if "fbp" in matched and age_hours > FBP_ONLY_MAX_AGE_HOURS:
            score *= FBP_ONLY_PENALTY

    if candidate_source == EventSourceEnum.shopify.value:
        score *= SHOPIFY_SOURCE_DAMPENING

    return score


def confidence_from_score(score: float) -> float:
    return min(MAX_CONFIDENCE, max(MIN_CONFIDENCE, score / SCORE_TO_CONFIDENCE_DIVISOR))


def matched_signal_types(current: Dict[str, str], row) -> List[str]:
    """Signal types whose value on `row` equals the current event's value."""
    return [
        name
        for name in SIGNAL_TYPES
        if current.get(name) and getattr(row, name, None) == current[name]
    ]


def rank_candidates(
    current_signals: Dict[str, str],
    rows: Iterable,
    before: Optional[datetime] = None,
) -> Optional[AttributionCandidate]:
    """Score every row and return the best candidate.

    Highest score wins; ties go to the later occurred_at.
    Rows with no overlapping signal or no entity id are skipped.
    """
    best: Optional[AttributionCandidate] = None

    for row in rows:
        entity_ids = EntityIds.from_row(row)
        if not entity_ids.is_mapped:
            continue
        matched = matched_signal_types(current_signals, row)
        if not matched:
            continue

        age_hours = age_in_hours(before, row.occurred_at) if before is not None else None
        score = score_signal_match(matched, age_hours, row.source)

        candidate = AttributionCandidate(
            entity_ids=entity_ids,
            confidence=confidence_from_score(score),
            score=score,
            matched_signals=matched,
            matched_at=row.occurred_at,
            source=row.source,
            age_hours=age_hours,
            strategy=AttributionStrategyEnum.signal_match.value,
            matched_event_id=row.event_id,
        )

        if (
            best is None
            or candidate.score > best.score
            or (candidate.score == best.score and candidate.matched_at > best.matched_at)
        ):
            best = candidate

    return best


class SignalMatchScorer:
    """Looks up signal-sharing mapped events and scores them."""

    def __init__(self, event_store: TrackingEventStore, limit: int = 250):
        self.event_store = event_store
        self.limit = limit

    def find_best(
        self,
        store_id: str,
        signals: Dict[str, str],
        before: Optional[datetime] = None,
        exclude_event_id: Optional[str] = None,
    ) -> Optional[AttributionCandidate]:
        if not signals:
            return None

        rows = self.event_store.query_by_signal(
            store_id,
            signals,
            exclude_event_name="Refund",
            before=before,
            limit=self.limit,
            exclude_event_id=exclude_event_id,
        )
        best = rank_candidates(signals, rows, before=before)

        if best:
            logger.debug(
                f"[SIGNAL_MATCH] Best of {len(rows)} candidates: score={best.score:.2f} "
                f"confidence={best.confidence:.3f} signals={best.matched_signals}",
                extra={"store_id": store_id},
            )
        return best
