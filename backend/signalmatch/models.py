"""SQLAlchemy ORM models and enums.

This module defines the tracking schema: stores, their tracking configuration,
the tracking event log the attribution engine reads and writes, and the
entity-name snapshots used to translate UTM names into ad entity ids.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Integer,
    ForeignKey,
    Float,
    JSON,
    Text,
    Boolean,
    Index,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class PlatformEnum(str, enum.Enum):
    shopify = "shopify"
    other = "other"


class EventSourceEnum(str, enum.Enum):
    """Where a tracking event was observed.

    Order of preference when the same order shows up more than once:
    shopify (order record) > server (server-side call) > browser (pixel).
    """
    browser = "browser"
    server = "server"
    shopify = "shopify"


class EntityLevelEnum(str, enum.Enum):
    campaign = "campaign"
    adset = "adset"
    ad = "ad"


class AttributionStrategyEnum(str, enum.Enum):
    signal_match = "signal_match"
    time_proximity = "time_proximity"


class AttributionMethodEnum(str, enum.Enum):
    deterministic = "deterministic"
    modeled = "modeled"
    utm_lookup = "utm_lookup"


# Core models ----------------------------------------------------

class Store(Base):
    """A commerce store whose orders are attributed.

    The webhook shared secret and the Admin API access token are stored
    Fernet-encrypted (see signalmatch.security).
    """
    __tablename__ = "stores"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    domain = Column(String, unique=True, index=True, nullable=False)  # lower-cased shop domain
    platform = Column(String, default=PlatformEnum.shopify.value, nullable=False)
    api_key = Column(String, nullable=True)
    api_secret_encrypted = Column(Text, nullable=True)
    access_token_encrypted = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    tracking_config = relationship("TrackingConfig", back_populates="store", uselist=False)

    def __str__(self):
        return f"{self.name} ({self.domain})"


class TrackingConfig(Base):
    """Per-store pixel and server-side forwarding settings."""
    __tablename__ = "tracking_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(String, ForeignKey("stores.id"), unique=True, nullable=False)
    pixel_id = Column(String, unique=True, nullable=True)
    domain = Column(String, nullable=True)
    server_side_enabled = Column(Boolean, default=False, nullable=False)
    capi_access_token_encrypted = Column(Text, nullable=True)
    attribution_model = Column(String, default="last_click", nullable=False)
    attribution_window = Column(Integer, default=7, nullable=False)  # days
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    store = relationship("Store", back_populates="tracking_config")


class TrackingEvent(Base):
    """One observed browser, server or order event.

    (store_id, event_id) is the dedup key. Rows without any of
    campaign_id / adset_id / ad_id are "unmapped" and are picked up by the
    bulk remapper. occurred_at is event-truth time in naive UTC.
    """
    __tablename__ = "tracking_events"
    __table_args__ = (
        UniqueConstraint("store_id", "event_id", name="uq_tracking_events_store_event"),
        Index("ix_tracking_events_store_occurred", "store_id", "occurred_at"),
        Index("ix_tracking_events_store_name_occurred", "store_id", "event_name", "occurred_at"),
        Index(
            "ix_tracking_events_store_entities",
            "store_id", "campaign_id", "adset_id", "ad_id", "occurred_at",
        ),
        Index("ix_tracking_events_store_click", "store_id", "click_id"),
        Index("ix_tracking_events_store_fbc", "store_id", "fbc"),
        Index("ix_tracking_events_store_fbp", "store_id", "fbp"),
        Index("ix_tracking_events_store_email", "store_id", "email_hash"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(String, ForeignKey("stores.id"), nullable=False)
    event_name = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    source = Column(String, default=EventSourceEnum.browser.value, nullable=False)
    occurred_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    page_url = Column(Text, nullable=True)
    referrer = Column(Text, nullable=True)
    session_id = Column(String, nullable=True)

    # Identity signals (normalized / hashed before storage)
    click_id = Column(String, nullable=True)
    fbp = Column(String, nullable=True)
    fbc = Column(String, nullable=True)
    external_id = Column(String, nullable=True)
    email_hash = Column(String, nullable=True)
    phone_hash = Column(String, nullable=True)
    ip_hash = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)

    # Commerce
    value = Column(Float, nullable=True)
    currency = Column(String, nullable=True)
    order_id = Column(String, nullable=True)

    # Attribution
    campaign_id = Column(String, nullable=True)
    adset_id = Column(String, nullable=True)
    ad_id = Column(String, nullable=True)

    payload_json = Column(JSON, nullable=True)

    # Conversions API delivery status
    meta_forwarded = Column(Boolean, default=False, nullable=False)
    meta_last_attempt_at = Column(DateTime, nullable=True)
    meta_last_error = Column(Text, nullable=True)

    @property
    def is_mapped(self) -> bool:
        return bool(self.campaign_id or self.adset_id or self.ad_id)

    def __str__(self):
        return f"{self.event_name} {self.event_id} ({self.source})"


class EntityNameSnapshot(Base):
    """Last known display name of a campaign / ad set / ad.

    Written by the ads sync; read when resolving UTM names to ids and when
    labelling dashboard rows.
    """
    __tablename__ = "entity_name_snapshots"
    __table_args__ = (
        UniqueConstraint("store_id", "level", "entity_id", name="uq_entity_name_snapshot"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(String, ForeignKey("stores.id"), nullable=False, index=True)
    level = Column(String, nullable=False)  # campaign, adset, ad
    entity_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    captured_at = Column(DateTime, default=datetime.utcnow)

    def __str__(self):
        return f"{self.level}:{self.entity_id} {self.name}"
