"""
Shared HTTP client with timeouts and bounded retries for the storefront and carrier APIs.
A stuck upstream call is bounded by the timeout here; nothing above this layer cancels it.
"""
import asyncio
import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRIES = 2
RETRY_BACKOFF_BASE = 1.0  # seconds
RETRY_STATUS_CODES = (429, 502, 503, 504)


async def _sleep_backoff(attempt: int, retry_after: Optional[str] = None) -> None:
    if attempt <= 0:
        return
    if retry_after:
        try:
            await asyncio.sleep(min(float(retry_after), 10.0))
            return
        except ValueError:
            pass
    delay = RETRY_BACKOFF_BASE * (2 ** (attempt - 1))
    await asyncio.sleep(min(delay, 10.0))


async def request_with_retry(
    method: str,
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_RETRIES,
    retry_on: tuple[int, ...] = RETRY_STATUS_CODES,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **kwargs: Any,
) -> httpx.Response:
    """
    Perform an HTTP request with a timeout, retrying on retry_on status codes
    (Shopify answers 429 when the leaky bucket is full) and on connect/read timeouts.
    The last response is returned as-is; callers decide what a non-2xx means.
    """
    resp: Optional[httpx.Response] = None
    for attempt in range(max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
                resp = await client.request(method, url, **kwargs)
            if attempt < max_retries and resp.status_code in retry_on:
                logger.warning("HTTP %s %s -> %s, retrying (attempt %s)", method, url, resp.status_code, attempt + 1)
                await _sleep_backoff(attempt + 1, resp.headers.get("Retry-After"))
                continue
            return resp
        except (httpx.ConnectError, httpx.ReadTimeout, httpx.ConnectTimeout) as e:
            if attempt >= max_retries:
                raise
            logger.warning("HTTP %s %s attempt %s failed: %s", method, url, attempt + 1, e)
            await _sleep_backoff(attempt + 1)
    return resp  # type: ignore


async def get_json(
    url: str,
    *,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_RETRIES,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Any:
    """GET with retries; raises httpx.HTTPStatusError on a final non-2xx, returns decoded JSON."""
    resp = await request_with_retry(
        "GET", url, params=params, headers=headers, timeout=timeout, max_retries=max_retries, transport=transport
    )
    resp.raise_for_status()
    return resp.json()


async def post_json(
    url: str,
    *,
    json: Optional[dict] = None,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: float = DEFAULT_TIMEOUT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Any:
    """POST with no retries (non-idempotent). Raises on non-2xx."""
    resp = await request_with_retry(
        "POST", url, json=json, params=params, headers=headers or {}, timeout=timeout, max_retries=0, transport=transport
    )
    resp.raise_for_status()
    return resp.json()
