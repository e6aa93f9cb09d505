"""
Shared HTTP client with timeouts and optional retries for external APIs.
Used for Shopify and Shiprocket so no upstream call can hang a sync pass.
"""
import asyncio
import logging
from typing import Any, Optional

import httpx

from oms.config import settings
from oms.errors import NetworkError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = settings.HTTP_TIMEOUT_SEC
DEFAULT_RETRIES = settings.HTTP_MAX_RETRIES
RETRY_BACKOFF_BASE = 1.0  # seconds


async def _sleep_backoff(attempt: int) -> None:
    if attempt <= 0:
        return
    delay = RETRY_BACKOFF_BASE * (2 ** (attempt - 1))
    await asyncio.sleep(min(delay, 10.0))


async def request_with_retry(
    method: str,
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_RETRIES,
    retry_on: tuple[int, ...] = (502, 503, 504),
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **kwargs: Any,
) -> httpx.Response:
    """
    Perform HTTP request with timeout and optional retries for server/network errors.
    Retries only on retry_on status codes and on transport errors (timeouts, refused connections).
    Raises NetworkError when no response could be obtained.
    """
    resp: Optional[httpx.Response] = None
    for attempt in range(max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
                resp = await client.request(method, url, **kwargs)
            if attempt < max_retries and resp.status_code in retry_on:
                logger.warning("HTTP %s %s returned %s, retrying", method, url, resp.status_code)
                await _sleep_backoff(attempt + 1)
                continue
            return resp
        except httpx.TransportError as e:
            if attempt < max_retries:
                logger.warning("HTTP %s %s attempt %s failed: %s", method, url, attempt + 1, e)
                await _sleep_backoff(attempt + 1)
            else:
                raise NetworkError(f"{method} {url} failed without a response: {e}") from e
    return resp  # type: ignore


async def get_with_retry(
    url: str,
    *,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    auth: Optional[tuple[str, str]] = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_RETRIES,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.Response:
    """GET with retries on 5xx and connection errors."""
    return await request_with_retry(
        "GET",
        url,
        params=params,
        headers=headers,
        auth=auth,
        timeout=timeout,
        max_retries=max_retries,
        transport=transport,
    )


async def post_no_retry(
    url: str,
    *,
    json: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: float = DEFAULT_TIMEOUT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.Response:
    """POST with no retries (non-idempotent). Uses single attempt with timeout."""
    return await request_with_retry(
        "POST",
        url,
        json=json or {},
        headers=headers or {},
        timeout=timeout,
        max_retries=0,
        transport=transport,
    )
