"""FastAPI application entrypoint.

Initialises Sentry, configures CORS, includes routers, and exposes a
healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .routers import shopify_webhooks as shopify_webhooks_router  # Signed order/refund webhooks
from .routers import tracking as tracking_router  # Collect, coverage, remap, backfill
from .telemetry import init_sentry
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def create_app() -> FastAPI:
    # Before the app exists so the FastAPI integration can hook in
    init_sentry()

    app = FastAPI(
        title="signalmatch API",
        description="""
        signalmatch resolves which ad campaign, ad set and ad produced each
        commerce order.

        This API provides endpoints for:
        - Signed order / refund webhooks
        - Browser pixel and server event collection
        - Attribution coverage and diagnostics
        - Retroactive remapping and order backfill
        """,
        version="1.0.0",
    )

    settings = get_settings()

    # BACKEND_CORS_ORIGINS is a comma-separated list
    allowed_origins = [
        origin.strip()
        for origin in settings.BACKEND_CORS_ORIGINS.split(",")
        if origin.strip()
    ]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(shopify_webhooks_router.router)
    app.include_router(tracking_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()
