#!/usr/bin/env python3
"""Kite Connect API Client - async quotes and order placement for NSE F&O legs."""

import asyncio
import logging
import os
import time
from typing import Optional

import aiohttp

from config import (
    API_MIN_REQUEST_INTERVAL,
    CONNECTION_POOL_LIMIT,
    DEFAULT_EXCHANGE,
    DNS_CACHE_TTL_SEC,
    HTTP_TIMEOUT_CONNECT_SEC,
    HTTP_TIMEOUT_TOTAL_SEC,
    KEEPALIVE_TIMEOUT_SEC,
    KITE_API_URL,
    KITE_API_VERSION,
)

logger = logging.getLogger(__name__)

__all__ = ["KiteClient", "KiteAPIError", "KiteRateLimitError"]


class KiteAPIError(Exception):
    """Raised when Kite returns an error response."""
    def __init__(self, status: int, message: str = "", error_type: str = ""):
        self.status = status
        self.message = message
        self.error_type = error_type
        super().__init__(f"Kite API error {status}: {message}")


class KiteRateLimitError(KiteAPIError):
    """Raised when rate limited by Kite (HTTP 429)."""
    def __init__(self):
        super().__init__(429, "Too many requests", "NetworkException")


class KiteClient:
    """Async client for the Kite Connect REST API.

    No retries here: callers wrap each call in with_remote_retry() so the
    retry budget is decided per operation, not per HTTP request.
    """

    def __init__(self, api_key: str = "", access_token: str = "", base_url: str = KITE_API_URL):
        self.api_key = api_key
        self.access_token = access_token
        self.base_url = base_url
        self.session: Optional[aiohttp.ClientSession] = None
        self.last_request_time = 0.0
        self._request_count = 0
        self._error_count = 0

    @classmethod
    def from_env(cls, user: str = "") -> "KiteClient":
        """Build a client from .env. A per-user token KITE_ACCESS_TOKEN_<USER> wins."""
        token = ""
        if user:
            token = os.getenv(f"KITE_ACCESS_TOKEN_{user.upper()}", "")
        return cls(
            api_key=os.getenv("KITE_API_KEY", ""),
            access_token=token or os.getenv("KITE_ACCESS_TOKEN", ""),
        )

    async def start(self):
        self.session = aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(
                limit=CONNECTION_POOL_LIMIT,
                ttl_dns_cache=DNS_CACHE_TTL_SEC,
                keepalive_timeout=KEEPALIVE_TIMEOUT_SEC,
            ),
            timeout=aiohttp.ClientTimeout(
                total=HTTP_TIMEOUT_TOTAL_SEC,
                connect=HTTP_TIMEOUT_CONNECT_SEC,
            ),
        )
        if not self.api_key or not self.access_token:
            logger.warning("Kite client initialized WITHOUT credentials")

    async def stop(self):
        if self.session:
            await self.session.close()
            logger.info(f"Kite client stopped. Requests: {self._request_count}, Errors: {self._error_count}")

    def _headers(self) -> dict:
        return {
            "X-Kite-Version": KITE_API_VERSION,
            "Authorization": f"token {self.api_key}:{self.access_token}",
        }

    async def _rate_limit(self):
        """Enforce minimum interval between requests."""
        elapsed = time.time() - self.last_request_time
        if elapsed < API_MIN_REQUEST_INTERVAL:
            await asyncio.sleep(API_MIN_REQUEST_INTERVAL - elapsed)
        self.last_request_time = time.time()

    async def _req(self, method: str, path: str, params: dict = None, data: dict = None) -> dict:
        """Make an API request and return the response's `data` payload."""
        await self._rate_limit()
        self._request_count += 1

        try:
            async with self.session.request(
                method, f"{self.base_url}{path}",
                headers=self._headers(), params=params, data=data,
            ) as resp:
                if resp.status == 429:
                    self._error_count += 1
                    logger.warning(f"Rate limited on {method} {path}")
                    raise KiteRateLimitError()

                body = await resp.json(content_type=None)
                if resp.status != 200 or body.get("status") != "success":
                    self._error_count += 1
                    message = str(body.get("message", ""))[:200]
                    logger.warning(f"API error {resp.status} on {method} {path}: {message}")
                    raise KiteAPIError(resp.status, message, body.get("error_type", ""))

                return body.get("data") or {}

        except asyncio.TimeoutError:
            self._error_count += 1
            logger.error(f"Timeout on {method} {path}")
            raise
        except aiohttp.ClientError as e:
            self._error_count += 1
            logger.error(f"HTTP error on {method} {path}: {e}")
            raise

    # =========================================================================
    # Market data
    # =========================================================================

    async def get_live_price(self, symbol: str, exchange: str = DEFAULT_EXCHANGE) -> float:
        """Last traded price of one instrument."""
        key = f"{exchange}:{symbol}"
        data = await self._req("GET", "/quote/ltp", params={"i": key})
        quote = data.get(key)
        if not quote or quote.get("last_price") is None:
            raise KiteAPIError(404, f"No LTP for {key}", "InputException")
        return float(quote["last_price"])

    # =========================================================================
    # Orders
    # =========================================================================

    async def place_order(
        self,
        symbol: str,
        exchange: str,
        transaction_type: str,
        quantity: int,
        product: str = "MIS",
        order_type: str = "MARKET",
        price: float | None = None,
        tag: str = "",
    ) -> dict:
        """Place a regular order. Returns {"order_id": ...}."""
        data = {
            "tradingsymbol": symbol,
            "exchange": exchange,
            "transaction_type": transaction_type,
            "quantity": quantity,
            "product": product,
            "order_type": order_type,
            "validity": "DAY",
        }
        if order_type == "LIMIT" and price is not None:
            data["price"] = price
        if tag:
            data["tag"] = tag[:20]

        logger.info(f"Placing order: {transaction_type} {quantity}x {exchange}:{symbol} ({order_type})")
        return await self._req("POST", "/orders/regular", data=data)
