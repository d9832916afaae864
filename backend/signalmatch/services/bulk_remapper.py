"""Retroactive mapping of unmapped purchases.

WHAT:
    Scans recent unmapped Purchase rows that carry at least one identity
    signal and copies campaign / ad set / ad ids from a mapped row that
    shares the signal.

WHY:
    An order webhook often lands before the pixel event that carries the ad
    ids. Re-running the join later recovers those orders without touching
    the ingestion path.

RULES:
    - Mapped rows are indexed oldest first; the first row seen for a signal
      value wins
    - Probe order per unmapped row: click_id, fbc, fbp, email_hash
    - Rows are patched one at a time; a failing row is logged and skipped

REFERENCES:
    - signalmatch/workers/arq_worker.py::scheduled_bulk_remap
    - signalmatch/routers/tracking.py (POST /tracking/remap)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from signalmatch.models import TrackingEvent
from signalmatch.services.attribution_types import EntityIds
from signalmatch.services.event_store import TrackingEventStore
from signalmatch.services.signal_extractor import SIGNAL_TYPES
from signalmatch.utils.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RemapResult:
    scanned: int = 0
    matched: int = 0
    updated: int = 0
    failed: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "scanned": self.scanned,
            "matched": self.matched,
            "updated": self.updated,
            "failed": self.failed,
            "lastError": self.last_error,
        }


def build_signal_index(mapped_rows: Iterable[TrackingEvent]) -> Dict[str, Dict[str, TrackingEvent]]:
    """signal type -> value -> first mapped row seen with that value."""
    index: Dict[str, Dict[str, TrackingEvent]] = {name: {} for name in SIGNAL_TYPES}
    for row in mapped_rows:
        for name in SIGNAL_TYPES:
            value = getattr(row, name)
            if value and value not in index[name]:
                index[name][value] = row
    return index


def find_match(row: TrackingEvent, index: Dict[str, Dict[str, TrackingEvent]]) -> Optional[TrackingEvent]:
    for name in SIGNAL_TYPES:
        value = getattr(row, name)
        if value and value in index[name]:
            return index[name][value]
    return None


class BulkRemapper:
    """Usage:
        result = BulkRemapper(TrackingEventStore(db)).run(store_id, lookback_days=7)
    """

    def __init__(
        self,
        event_store: TrackingEventStore,
        unmapped_limit: int = 500,
        mapped_limit: int = 5000,
    ):
        self.event_store = event_store
        self.unmapped_limit = unmapped_limit
        self.mapped_limit = mapped_limit

    def run(
        self,
        store_id: str,
        lookback_days: int = 7,
        now: Optional[datetime] = None,
    ) -> RemapResult:
        since = (now or utcnow()) - timedelta(days=lookback_days)
        result = RemapResult()

        unmapped = self.event_store.list_unmapped_purchases_with_signal(
            store_id, since, limit=self.unmapped_limit
        )
        result.scanned = len(unmapped)
        if not unmapped:
            return result

        mapped = self.event_store.list_mapped(store_id, since, limit=self.mapped_limit)
        if not mapped:
            return result

        index = build_signal_index(mapped)

        for row in unmapped:
            match = find_match(row, index)
            if match is None:
                continue
            result.matched += 1

            # Capture before a rollback expires the instance
            event_id = row.event_id
            try:
                if self.event_store.update(store_id, event_id, EntityIds.from_row(match).to_dict()):
                    result.updated += 1
            except SQLAlchemyError as e:
                self.event_store.db.rollback()
                result.failed += 1
                result.last_error = str(e)
                logger.warning(
                    f"[REMAP] Failed to update {event_id} for store {store_id}: {e}",
                    extra={"store_id": store_id, "event_id": event_id},
                )

        logger.info(
            f"[REMAP] Store {store_id}: scanned={result.scanned} matched={result.matched} "
            f"updated={result.updated} failed={result.failed}",
            extra={"store_id": store_id},
        )
        return result
