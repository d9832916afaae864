"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict

from .services.cache import NameCache, TTLNameCache


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"

    # Redis Configuration (arq worker)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Optional shared secret for scheduled/maintenance endpoints
    CRON_SECRET: Optional[str] = None

    # Conversions API forwarding
    ENABLE_META_CAPI_FORWARDING: bool = False
    META_GRAPH_API_VERSION: str = "v21.0"
    META_CAPI_TIMEOUT_SECONDS: float = 10.0
    META_CAPI_TEST_EVENT_CODE: Optional[str] = None

    # Acceptance floors (empirically tuned, see DESIGN.md)
    ACCEPT_CLICK_ID_FLOOR: float = 0.20
    ACCEPT_FBC_FLOOR: float = 0.22
    ACCEPT_WEAK_SIGNAL_FLOOR: float = 0.28
    ACCEPT_GLOBAL_FLOOR: float = 0.25

    # Matching
    AMBIGUITY_GUARD_SECONDS: int = 120
    WEBHOOK_TIME_WINDOW_MINUTES: int = 120
    SIGNAL_MATCH_LIMIT: int = 250
    TIME_PROXIMITY_LIMIT: int = 8

    # Bulk remapper
    REMAP_LOOKBACK_DAYS: int = 7
    REMAP_UNMAPPED_LIMIT: int = 500
    REMAP_MAPPED_LIMIT: int = 5000

    # Entity-name cache
    NAME_CACHE_TTL_SECONDS: int = 1800  # 30 minutes
    NAME_CACHE_MAXSIZE: int = 256

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


@lru_cache()
def _process_name_cache() -> TTLNameCache:
    settings = get_settings()
    return TTLNameCache(
        maxsize=settings.NAME_CACHE_MAXSIZE,
        ttl=settings.NAME_CACHE_TTL_SECONDS,
    )


def get_name_cache() -> NameCache:
    """Entity-name cache shared by requests in this process.

    Tests override this dependency with a NullNameCache.
    """
    return _process_name_cache()


def require_cron_secret(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard maintenance endpoints with `Authorization: Bearer <CRON_SECRET>`.

    No-op when CRON_SECRET is not configured (local development).
    """
    if not settings.CRON_SECRET:
        return
    if authorization != f"Bearer {settings.CRON_SECRET}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
