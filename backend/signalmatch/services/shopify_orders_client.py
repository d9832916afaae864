"""Shopify REST Admin API client for order backfill.

WHAT:
    Pages through `/orders.json` (status=any) created after a cutoff using
    `since_id` pagination.

WHY:
    Webhooks can be missed (app downtime, subscription gaps). The backfill
    re-reads recent orders and feeds them through the same ingestion path.

REFERENCES:
    - Shopify REST Admin API: https://shopify.dev/docs/api/admin-rest/latest/resources/order
    - Rate limits: https://shopify.dev/docs/api/usage/rate-limits
    - signalmatch/services/order_ingestion.py (consumer)
"""

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2024-07"

# REST Admin API: 2 requests/second for regular apps
RATE_LIMIT_DELAY = 0.5

MAX_PAGE_SIZE = 250
DEFAULT_MAX_PAGES = 20


class ShopifyAPIError(Exception):
    """Custom exception for Shopify API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[Any] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


class ShopifyOrdersClient:
    """REST client for reading orders.

    Usage:
        client = ShopifyOrdersClient(shop_domain="mystore.myshopify.com", access_token="shpat_xxx")
        async for orders in client.iter_order_pages(created_at_min="2025-01-01T00:00:00Z"):
            ...
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limit_delay: float = RATE_LIMIT_DELAY,
    ):
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = f"https://{shop_domain}/admin/api/{api_version}"
        self.transport = transport
        self.rate_limit_delay = rate_limit_delay

        self._last_request_time: float = 0

    async def _rate_limit(self) -> None:
        elapsed = time.time() - self._last_request_time
        if elapsed < self.rate_limit_delay:
            wait_time = self.rate_limit_delay - elapsed
            logger.debug(f"[SHOPIFY_ORDERS] Rate limiting: waiting {wait_time:.3f}s")
            await asyncio.sleep(wait_time)
        self._last_request_time = time.time()

    async def get(
        self,
        endpoint: str,
        params: Optional[Dict[str, str]] = None,
        retries: int = 3,
    ) -> Dict[str, Any]:
        """GET a REST endpoint with rate limiting and retries.

        Raises:
            ShopifyAPIError: non-retryable status or retries exhausted
        """
        await self._rate_limit()

        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }
        url = f"{self.base_url}{endpoint}"
        last_error: Optional[Exception] = None

        for attempt in range(retries):
            try:
                async with httpx.AsyncClient(timeout=30.0, transport=self.transport) as client:
                    response = await client.get(url, params=params, headers=headers)

                    # 429 and 503 are transient
                    if response.status_code in (429, 503):
                        retry_after = float(response.headers.get("Retry-After", 2))
                        logger.warning(
                            f"[SHOPIFY_ORDERS] Throttled ({response.status_code}), waiting {retry_after}s "
                            f"(attempt {attempt + 1}/{retries})"
                        )
                        last_error = ShopifyAPIError("Throttled", status_code=response.status_code)
                        await asyncio.sleep(retry_after)
                        continue

                    if response.status_code in (401, 403, 404):
                        raise ShopifyAPIError(
                            f"Shopify API error {response.status_code}: {response.text[:200]}",
                            status_code=response.status_code,
                        )

                    response.raise_for_status()
                    return response.json()

            except httpx.HTTPStatusError as e:
                last_error = e
                logger.warning(
                    f"[SHOPIFY_ORDERS] HTTP error {e.response.status_code} (attempt {attempt + 1}/{retries})"
                )
                if attempt < retries - 1:
                    await asyncio.sleep(1 * (attempt + 1))

            except httpx.RequestError as e:
                last_error = e
                logger.warning(f"[SHOPIFY_ORDERS] Request error: {e} (attempt {attempt + 1}/{retries})")
                if attempt < retries - 1:
                    await asyncio.sleep(1 * (attempt + 1))

        raise ShopifyAPIError(f"Failed after {retries} attempts: {last_error}")

    async def iter_order_pages(
        self,
        created_at_min: str,
        page_limit: int = MAX_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """Yield pages of raw order dicts, oldest id first.

        Stops on an empty page, a short page, or after `max_pages`.
        """
        page_limit = min(page_limit, MAX_PAGE_SIZE)
        since_id = "0"

        for _page in range(max_pages):
            data = await self.get(
                "/orders.json",
                params={
                    "status": "any",
                    "limit": str(page_limit),
                    "since_id": since_id,
                    "created_at_min": created_at_min,
                },
            )
            orders = [order for order in (data.get("orders") or []) if isinstance(order, dict)]
            if not orders:
                return

            yield orders

            last_id = orders[-1].get("id")
            if last_id is None or len(orders) < page_limit:
                return
            since_id = str(last_id)
