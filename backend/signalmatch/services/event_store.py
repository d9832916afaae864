"""Tracking event store: idempotent upsert, partial update, filtered queries.

WHAT:
    Repository over the `tracking_events` table used by the webhook path,
    the collector, the matchers, coverage and the bulk remapper.

WHY:
    (store_id, event_id) must map to exactly one row even when the same
    order webhook is delivered concurrently or redelivered later. That is
    enforced by `INSERT ... ON CONFLICT DO NOTHING` followed by a field-scoped
    partial update, never by a read-then-write check.

REFERENCES:
    - signalmatch/models.py::TrackingEvent
    - signalmatch/services/order_ingestion.py
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from signalmatch.models import EventSourceEnum, TrackingEvent
from signalmatch.utils.dates import utcnow

logger = logging.getLogger(__name__)


# Columns a duplicate delivery may refresh. Identity signals are never
# re-derived or overwritten once stored.
CONFLICT_UPDATE_FIELDS = (
    "click_id",
    "value",
    "currency",
    "order_id",
    "campaign_id",
    "adset_id",
    "ad_id",
    "payload_json",
)

INSERTABLE_FIELDS = (
    "store_id",
    "event_name",
    "event_id",
    "source",
    "occurred_at",
    "page_url",
    "referrer",
    "session_id",
    "click_id",
    "fbp",
    "fbc",
    "external_id",
    "email_hash",
    "phone_hash",
    "ip_hash",
    "user_agent",
    "value",
    "currency",
    "order_id",
    "campaign_id",
    "adset_id",
    "ad_id",
    "payload_json",
)

SIGNAL_COLUMNS = {
    "click_id": TrackingEvent.click_id,
    "fbc": TrackingEvent.fbc,
    "fbp": TrackingEvent.fbp,
    "email_hash": TrackingEvent.email_hash,
}

META_ERROR_MAX_LENGTH = 500


@dataclass(frozen=True)
class UpsertResult:
    inserted: bool
    updated: bool


def _mapped_clause():
    return or_(
        TrackingEvent.campaign_id.isnot(None),
        TrackingEvent.adset_id.isnot(None),
        TrackingEvent.ad_id.isnot(None),
    )


def _unmapped_clause():
    return and_(
        TrackingEvent.campaign_id.is_(None),
        TrackingEvent.adset_id.is_(None),
        TrackingEvent.ad_id.is_(None),
    )


def _any_signal_clause():
    return or_(*[column.isnot(None) for column in SIGNAL_COLUMNS.values()])


class TrackingEventStore:
    """Event store bound to one SQLAlchemy session.

    Usage:
        store = TrackingEventStore(db)
        result = store.insert({"store_id": "s1", "event_id": "e1", ...})
    """

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # WRITES
    # =========================================================================

    def insert(self, event: Dict[str, Any]) -> UpsertResult:
        """Insert, or on (store_id, event_id) conflict apply a partial update.

        Returns:
            UpsertResult(inserted=True) for a new row; (False, True) when an
            existing row was patched; (False, False) when nothing changed.
        """
        values = {key: event.get(key) for key in INSERTABLE_FIELDS if key in event}
        values.setdefault("source", EventSourceEnum.browser.value)
        if values.get("occurred_at") is None:
            values["occurred_at"] = utcnow()

        store_id = values["store_id"]
        event_id = values["event_id"]

        inserted = self._insert_ignore_conflict(values)
        if inserted:
            logger.debug(
                f"[EVENT_STORE] Inserted {values.get('event_name')} {event_id}",
                extra={"store_id": store_id, "event_id": event_id},
            )
            return UpsertResult(inserted=True, updated=False)

        patch = {
            key: values[key]
            for key in CONFLICT_UPDATE_FIELDS
            if values.get(key) is not None
        }
        if not patch:
            return UpsertResult(inserted=False, updated=False)

        updated = self.update(store_id, event_id, patch)
        return UpsertResult(inserted=False, updated=updated)

    def _insert_ignore_conflict(self, values: Dict[str, Any]) -> bool:
        dialect = self.db.get_bind().dialect.name

        if dialect in ("postgresql", "sqlite"):
            if dialect == "postgresql":
                from sqlalchemy.dialects.postgresql import insert as dialect_insert
            else:
                from sqlalchemy.dialects.sqlite import insert as dialect_insert

            stmt = (
                dialect_insert(TrackingEvent)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["store_id", "event_id"])
            )
            result = self.db.execute(stmt)
            self.db.commit()
            return result.rowcount == 1

        # Other backends: rely on the unique constraint
        try:
            with self.db.begin_nested():
                self.db.add(TrackingEvent(**values))
            self.db.commit()
            return True
        except IntegrityError:
            self.db.rollback()
            return False

    def update(self, store_id: str, event_id: str, fields: Dict[str, Any]) -> bool:
        """Partial patch of one event. Returns True when a row was touched."""
        if not fields:
            return False
        rowcount = (
            self.db.query(TrackingEvent)
            .filter(TrackingEvent.store_id == store_id, TrackingEvent.event_id == event_id)
            .update(fields, synchronize_session=False)
        )
        self.db.commit()
        return rowcount > 0

    def mark_meta_delivery(
        self,
        store_id: str,
        event_id: str,
        forwarded: bool,
        error: Optional[str] = None,
    ) -> bool:
        """Record the outcome of a conversions API hand-off."""
        fields: Dict[str, Any] = {
            "meta_forwarded": forwarded,
            "meta_last_attempt_at": utcnow(),
            "meta_last_error": (error or "")[:META_ERROR_MAX_LENGTH] or None,
        }
        return self.update(store_id, event_id, fields)

    # =========================================================================
    # POINT LOOKUPS
    # =========================================================================

    def get(self, store_id: str, event_id: str) -> Optional[TrackingEvent]:
        return (
            self.db.query(TrackingEvent)
            .filter(TrackingEvent.store_id == store_id, TrackingEvent.event_id == event_id)
            .first()
        )

    def find_order_purchase(self, store_id: str, order_id: str) -> Optional[TrackingEvent]:
        """Most recent shopify-origin Purchase row for an order."""
        return (
            self.db.query(TrackingEvent)
            .filter(
                TrackingEvent.store_id == store_id,
                TrackingEvent.source == EventSourceEnum.shopify.value,
                TrackingEvent.event_name == "Purchase",
                TrackingEvent.order_id == order_id,
            )
            .order_by(TrackingEvent.occurred_at.desc())
            .first()
        )

    def find_shopify_purchase_event_id(self, store_id: str, order_id: str) -> Optional[str]:
        row = self.find_order_purchase(store_id, order_id)
        return row.event_id if row else None

    # =========================================================================
    # MATCHER QUERIES
    # =========================================================================

    def query_by_signal(
        self,
        store_id: str,
        signals: Dict[str, str],
        exclude_event_name: Optional[str] = "Refund",
        before: Optional[datetime] = None,
        limit: int = 250,
        exclude_event_id: Optional[str] = None,
    ) -> List[TrackingEvent]:
        """Mapped events sharing any of `signals`, newest first.

        Args:
            signals: signal type -> value (click_id, fbc, fbp, email_hash)
            before: only rows at or before this time
            exclude_event_id: skip the event being resolved itself
        """
        matchers = [
            SIGNAL_COLUMNS[name] == value
            for name, value in signals.items()
            if value and name in SIGNAL_COLUMNS
        ]
        if not matchers:
            return []

        query = self.db.query(TrackingEvent).filter(
            TrackingEvent.store_id == store_id,
            or_(*matchers),
            _mapped_clause(),
        )
        if exclude_event_name:
            query = query.filter(TrackingEvent.event_name != exclude_event_name)
        if before is not None:
            query = query.filter(TrackingEvent.occurred_at <= before)
        if exclude_event_id:
            query = query.filter(TrackingEvent.event_id != exclude_event_id)

        return query.order_by(TrackingEvent.occurred_at.desc()).limit(limit).all()

    def query_by_time_window(
        self,
        store_id: str,
        event_name: str,
        from_time: datetime,
        to_time: datetime,
        limit: int = 8,
        exclude_event_id: Optional[str] = None,
    ) -> List[TrackingEvent]:
        """Mapped `event_name` rows within [from_time, to_time], newest first."""
        query = self.db.query(TrackingEvent).filter(
            TrackingEvent.store_id == store_id,
            TrackingEvent.event_name == event_name,
            _mapped_clause(),
            TrackingEvent.occurred_at >= from_time,
            TrackingEvent.occurred_at <= to_time,
        )
        if exclude_event_id:
            query = query.filter(TrackingEvent.event_id != exclude_event_id)
        return query.order_by(TrackingEvent.occurred_at.desc()).limit(limit).all()

    # =========================================================================
    # AGGREGATION / BATCH QUERIES
    # =========================================================================

    def query_range(
        self,
        store_id: str,
        from_time: datetime,
        to_time: datetime,
        event_name: Optional[str] = None,
        mapped: Optional[bool] = None,
        newest_first: bool = False,
        limit: Optional[int] = None,
    ) -> List[TrackingEvent]:
        """Rows in [from_time, to_time], optionally filtered by name / mapping."""
        query = self.db.query(TrackingEvent).filter(
            TrackingEvent.store_id == store_id,
            TrackingEvent.occurred_at >= from_time,
            TrackingEvent.occurred_at <= to_time,
        )
        if event_name:
            query = query.filter(TrackingEvent.event_name == event_name)
        if mapped is True:
            query = query.filter(_mapped_clause())
        elif mapped is False:
            query = query.filter(_unmapped_clause())
        if newest_first:
            query = query.order_by(TrackingEvent.occurred_at.desc())
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def list_unmapped_purchases_with_signal(
        self,
        store_id: str,
        since: datetime,
        limit: int = 500,
    ) -> List[TrackingEvent]:
        """Unmapped Purchase rows carrying at least one signal, newest first."""
        return (
            self.db.query(TrackingEvent)
            .filter(
                TrackingEvent.store_id == store_id,
                TrackingEvent.event_name == "Purchase",
                TrackingEvent.occurred_at >= since,
                _unmapped_clause(),
                _any_signal_clause(),
            )
            .order_by(TrackingEvent.occurred_at.desc())
            .limit(limit)
            .all()
        )

    def list_mapped(
        self,
        store_id: str,
        since: datetime,
        limit: int = 5000,
    ) -> List[TrackingEvent]:
        """Mapped rows of any event type, oldest first."""
        return (
            self.db.query(TrackingEvent)
            .filter(
                TrackingEvent.store_id == store_id,
                TrackingEvent.occurred_at >= since,
                _mapped_clause(),
            )
            .order_by(TrackingEvent.occurred_at.asc())
            .limit(limit)
            .all()
        )

