"""
Sentry Error Tracking
=====================

Error tracking for the API process and the arq worker.

Related files:
- signalmatch/main.py: Initializes Sentry in create_app()
- signalmatch/workers/arq_worker.py: Initializes Sentry on worker startup
- signalmatch/services/meta_capi_service.py: Reports handled forwarding failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled when unset)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release tag set by CI/CD
"""

from __future__ import annotations

import os
import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)


def get_sentry_dsn() -> Optional[str]:
    return os.environ.get("SENTRY_DSN")


def init_sentry() -> bool:
    """
    Initialize the Sentry SDK.

    Returns:
        True if Sentry was initialized, False when no DSN is configured
        or initialization failed.
    """
    dsn = get_sentry_dsn()
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(
                    transaction_style="endpoint",  # Use route paths as transaction names
                ),
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )

        logger.debug(f"[SENTRY] Initialized for {environment} environment")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Report a handled exception.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event

    Example:
        try:
            await service.send_events(events)
        except MetaCAPIError as e:
            capture_exception(e, extra={"operation": "meta_capi_forward"})
    """
    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")
