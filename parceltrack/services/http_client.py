"""
Outbound HTTP for the carrier API: one client per call sequence, a hard timeout,
and bounded retries on rate limiting, gateway errors and dropped connections.
"""
import asyncio
import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
DEFAULT_RETRIES = 2
RETRY_BACKOFF_BASE = 1.0  # seconds
RETRY_BACKOFF_CAP = 10.0
RETRYABLE_STATUS = (429, 502, 503, 504)


def backoff_delay(attempt: int, base: float = RETRY_BACKOFF_BASE, cap: float = RETRY_BACKOFF_CAP) -> float:
    """Delay before retry number `attempt` (1-based): base, 2*base, 4*base ... up to cap."""
    if attempt <= 0:
        return 0.0
    return min(base * (2 ** (attempt - 1)), cap)


def retry_after_seconds(resp: httpx.Response, cap: float = RETRY_BACKOFF_CAP) -> Optional[float]:
    """Seconds from a numeric Retry-After header, capped; None when absent or not numeric."""
    value = resp.headers.get("Retry-After")
    if not value:
        return None
    try:
        return min(max(float(value), 0.0), cap)
    except ValueError:
        return None


async def _sleep_backoff(attempt: int, delay: Optional[float] = None) -> None:
    delay = backoff_delay(attempt) if delay is None else delay
    if delay:
        await asyncio.sleep(delay)


async def request_with_retry(
    method: str,
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_RETRIES,
    retry_on: tuple[int, ...] = RETRYABLE_STATUS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **kwargs: Any,
) -> httpx.Response:
    """
    Send one logical request, retrying retry_on statuses and connect/timeout errors.

    Once retries are exhausted the last response is returned for the caller to
    classify; the last transport error is re-raised.
    """
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = await client.request(method, url, **kwargs)
            except (httpx.ConnectError, httpx.TimeoutException) as e:
                if attempt > max_retries:
                    raise
                logger.warning("%s %s attempt %s failed: %s", method, url, attempt, e)
                await _sleep_backoff(attempt)
                continue

            if resp.status_code not in retry_on or attempt > max_retries:
                return resp
            logger.warning("%s %s attempt %s got HTTP %s, retrying", method, url, attempt, resp.status_code)
            await _sleep_backoff(attempt, retry_after_seconds(resp))


async def get_with_retry(
    url: str,
    *,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_RETRIES,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.Response:
    """GET is idempotent, so every retryable failure is retried."""
    return await request_with_retry(
        "GET", url, params=params, headers=headers, timeout=timeout,
        max_retries=max_retries, transport=transport,
    )
