"""Pytest configuration for signalmatch integration tests

WHAT: Shared fixtures for HTTP endpoint and service-level tests
WHY: Consistent test setup, database isolation and dependency overrides
REFERENCES:
    - signalmatch/main.py: FastAPI application
    - signalmatch/database.py: Database configuration
    - signalmatch/deps.py: Dependency injection
"""

import base64
import hashlib
import hmac
import json
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
# Must be URL-safe base64-encoded 32-byte string (signalmatch.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.pop("SENTRY_DSN", None)


STORE_ID = "store-test-1"
SHOP_DOMAIN = "test-shop.myshopify.com"
WEBHOOK_SECRET = "whsec_test_secret"
ACCESS_TOKEN = "shpat_test_token"
PIXEL_ID = "pixel-123"


def sign_body(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Base64 HMAC-SHA256 header value for a raw body."""
    return base64.b64encode(hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()).decode("utf-8")


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory test database shared by every session in a test."""
    # StaticPool: request sessions and background-task sessions see the same data
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from signalmatch.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(test_db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def settings():
    from signalmatch.deps import Settings

    return Settings()


@pytest.fixture
def app(test_db_session, session_factory, settings):
    """FastAPI test application with database, settings and cache overrides."""
    from signalmatch.database import get_db, get_session_factory
    from signalmatch.deps import get_name_cache, get_settings
    from signalmatch.main import create_app
    from signalmatch.services.cache import NullNameCache

    test_app = create_app()

    def override_get_db():
        try:
            yield test_db_session
        finally:
            test_db_session.close()

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_session_factory] = lambda: session_factory
    test_app.dependency_overrides[get_settings] = lambda: settings
    test_app.dependency_overrides[get_name_cache] = lambda: NullNameCache()

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def test_store(test_db_session):
    """Store with an encrypted webhook secret and access token."""
    from signalmatch.models import Store
    from signalmatch.security import encrypt_secret

    store = Store(
        id=STORE_ID,
        name="Test Shop",
        domain=SHOP_DOMAIN,
        platform="shopify",
        api_secret_encrypted=encrypt_secret(WEBHOOK_SECRET, context="test:webhook"),
        access_token_encrypted=encrypt_secret(ACCESS_TOKEN, context="test:access_token"),
        created_at=datetime.utcnow(),
    )
    test_db_session.add(store)
    test_db_session.commit()
    test_db_session.refresh(store)
    return store


@pytest.fixture
def tracking_config(test_db_session, test_store):
    """Tracking config with server-side forwarding on and a CAPI token."""
    from signalmatch.models import TrackingConfig
    from signalmatch.security import encrypt_secret

    config = TrackingConfig(
        store_id=STORE_ID,
        pixel_id=PIXEL_ID,
        domain=SHOP_DOMAIN,
        server_side_enabled=True,
        capi_access_token_encrypted=encrypt_secret("capi-token", context="test:capi"),
    )
    test_db_session.add(config)
    test_db_session.commit()
    return config


@pytest.fixture
def event_store(test_db_session):
    from signalmatch.services.event_store import TrackingEventStore

    return TrackingEventStore(test_db_session)


@pytest.fixture
def add_event(event_store, test_store):
    """Insert a tracking event with sensible defaults; returns its event_id."""
    counter = {"n": 0}

    def _add(**fields):
        counter["n"] += 1
        event = {
            "store_id": STORE_ID,
            "event_name": "Purchase",
            "event_id": f"evt-{counter['n']}",
            "source": "browser",
            "occurred_at": datetime(2025, 6, 1, 12, 0, 0),
        }
        event.update(fields)
        event_store.insert(event)
        return event["event_id"]

    return _add


@pytest.fixture
def post_webhook(client):
    """POST a signed webhook delivery."""
    def _post(payload, topic="orders/create", shop=SHOP_DOMAIN, secret=WEBHOOK_SECRET, signature=None):
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Topic": topic,
            "X-Shopify-Shop-Domain": shop,
            "X-Shopify-Hmac-Sha256": signature if signature is not None else sign_body(body, secret),
        }
        return client.post("/webhooks/shopify", content=body, headers=headers)

    return _post


@pytest.fixture
def store_id():
    return STORE_ID


@pytest.fixture
def shop_domain():
    return SHOP_DOMAIN
