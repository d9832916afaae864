"""Attribution resolution pipeline for one order / refund.

WHAT:
    Decides which campaign / ad set / ad an event belongs to, given the
    signals extracted from its payload.

WHY:
    The webhook path, the order backfill and the collector all need the same
    decision. Keeping the ordering of strategies in one place keeps their
    answers consistent.

ORDER OF STRATEGIES:
    1. Direct mapping: ids embedded in the payload are used verbatim
       (method "deterministic"); only the UTM lookup may fill the rest.
    2. Signal match: best mapped event sharing a click id / fbc / fbp /
       email hash, gated by the acceptance policy.
    3. Time proximity: nearest mapped purchase around occurred_at, only when
       the event carries at least one signal, gated by the same policy.
    4. UTM name lookup: fills whatever ids are still missing
       (method "utm_lookup" when it is the only source of ids).

BATCHES:
    A shared memo caches the signal-match lookup per signals + day. Policy
    and time proximity still run for every event.

REFERENCES:
    - signalmatch/services/signal_scorer.py
    - signalmatch/services/time_proximity.py
    - signalmatch/services/acceptance.py
    - signalmatch/services/entity_lookup.py
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from signalmatch.models import AttributionMethodEnum
from signalmatch.services.acceptance import AcceptancePolicy
from signalmatch.services.attribution_types import AttributionCandidate, EntityIds
from signalmatch.services.cache import NameCache
from signalmatch.services.entity_lookup import EntityNameLookup
from signalmatch.services.event_store import TrackingEventStore
from signalmatch.services.signal_extractor import ExtractedSignals
from signalmatch.services.signal_scorer import SignalMatchScorer
from signalmatch.services.time_proximity import TimeProximityMatcher

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    """Outcome of resolving one event."""

    entity_ids: EntityIds
    method: Optional[str] = None
    candidate: Optional[AttributionCandidate] = None

    @property
    def is_mapped(self) -> bool:
        return self.entity_ids.is_mapped

    def payload_fields(self) -> Dict[str, Any]:
        """Diagnostic fields merged into payload_json."""
        return {
            "attributionMethod": self.method,
            "fallbackAttribution": self.candidate.to_dict() if self.candidate else None,
        }


class AttributionResolver:
    """Runs direct mapping, fallback matching and UTM lookup in order.

    Usage:
        resolver = AttributionResolver.from_settings(db, settings, name_cache)
        resolution = resolver.resolve(store_id, signals, occurred_at)
    """

    def __init__(
        self,
        scorer: SignalMatchScorer,
        time_matcher: TimeProximityMatcher,
        policy: AcceptancePolicy,
        name_lookup: Optional[EntityNameLookup] = None,
        time_window_minutes: Optional[float] = None,
    ):
        self.scorer = scorer
        self.time_matcher = time_matcher
        self.policy = policy
        self.name_lookup = name_lookup
        self.time_window_minutes = time_window_minutes

    @classmethod
    def from_settings(
        cls,
        db: Session,
        settings,
        name_cache: Optional[NameCache] = None,
    ) -> "AttributionResolver":
        event_store = TrackingEventStore(db)
        return cls(
            scorer=SignalMatchScorer(event_store, limit=settings.SIGNAL_MATCH_LIMIT),
            time_matcher=TimeProximityMatcher(
                event_store,
                ambiguity_seconds=settings.AMBIGUITY_GUARD_SECONDS,
                limit=settings.TIME_PROXIMITY_LIMIT,
            ),
            policy=AcceptancePolicy.from_settings(settings),
            name_lookup=EntityNameLookup(db, name_cache),
            time_window_minutes=settings.WEBHOOK_TIME_WINDOW_MINUTES,
        )

    def find_signal_match(
        self,
        store_id: str,
        signals: ExtractedSignals,
        occurred_at: datetime,
        exclude_event_id: Optional[str] = None,
        memo: Optional[Dict[str, Optional[AttributionCandidate]]] = None,
    ) -> Optional[AttributionCandidate]:
        """Best scored candidate sharing a signal, before the acceptance check.

        With `memo`, equal signals on the same UTC day reuse one scorer query.
        """
        present = signals.signals()
        if not present:
            return None

        key = None
        if memo is not None:
            key = f"{signals.cache_key(occurred_at.date().isoformat())}|{exclude_event_id or ''}"
            if key in memo:
                return memo[key]

        candidate = self.scorer.find_best(
            store_id,
            present,
            before=occurred_at,
            exclude_event_id=exclude_event_id,
        )
        if key is not None:
            memo[key] = candidate
        return candidate

    def find_fallback(
        self,
        store_id: str,
        signals: ExtractedSignals,
        occurred_at: datetime,
        exclude_event_id: Optional[str] = None,
        memo: Optional[Dict[str, Optional[AttributionCandidate]]] = None,
    ) -> Optional[AttributionCandidate]:
        """Accepted signal-match or time-proximity candidate, else None.

        Only the signal-match lookup is memoized; time proximity depends on
        the exact timestamp and runs for every event.
        """
        present = signals.signals()
        if not present:
            return None

        candidate = self.find_signal_match(store_id, signals, occurred_at, exclude_event_id, memo)
        if self.policy.accepts(candidate):
            return candidate

        if candidate is not None:
            logger.debug(
                f"[RESOLVER] Signal match rejected (confidence={candidate.confidence:.3f}), "
                f"trying time proximity",
                extra={"store_id": store_id},
            )

        candidate = self.time_matcher.find(
            store_id,
            occurred_at,
            window_minutes=self.time_window_minutes,
            signal_types=list(present.keys()),
            exclude_event_id=exclude_event_id,
        )
        if self.policy.accepts(candidate):
            return candidate
        return None

    def fill_from_utms(
        self,
        store_id: str,
        signals: ExtractedSignals,
        entity_ids: EntityIds,
    ) -> EntityIds:
        """Fill ids still missing from the order's UTM names."""
        if self.name_lookup is None or not signals.has_utm:
            return entity_ids
        return self.name_lookup.resolve_entity_ids_from_utms(
            store_id,
            entity_ids,
            utm_campaign=signals.utm_campaign,
            utm_medium=signals.utm_medium,
            utm_content=signals.utm_content,
        )

    def resolve(
        self,
        store_id: str,
        signals: ExtractedSignals,
        occurred_at: datetime,
        exclude_event_id: Optional[str] = None,
        memo: Optional[Dict[str, Optional[AttributionCandidate]]] = None,
    ) -> Resolution:
        """Resolve entity ids for one event.

        Args:
            memo: optional per-batch cache of signal-match lookups keyed by
                signals + day (used by the order backfill)
        """
        direct = EntityIds(
            campaign_id=signals.campaign_id,
            adset_id=signals.adset_id,
            ad_id=signals.ad_id,
        )
        if direct.is_mapped:
            return Resolution(
                entity_ids=self.fill_from_utms(store_id, signals, direct),
                method=AttributionMethodEnum.deterministic.value,
            )

        candidate = self.find_fallback(store_id, signals, occurred_at, exclude_event_id, memo)

        entity_ids = candidate.entity_ids if candidate else EntityIds()
        method = AttributionMethodEnum.modeled.value if candidate else None

        filled = self.fill_from_utms(store_id, signals, entity_ids)
        if filled.is_mapped and not entity_ids.is_mapped:
            method = AttributionMethodEnum.utm_lookup.value
        entity_ids = filled

        if candidate:
            logger.info(
                f"[RESOLVER] {candidate.strategy} match for store {store_id}: "
                f"{entity_ids.triple_key} (confidence={candidate.confidence:.3f})",
                extra={"store_id": store_id, "strategy": candidate.strategy},
            )

        return Resolution(entity_ids=entity_ids, method=method, candidate=candidate)
