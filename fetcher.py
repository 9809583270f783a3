"""
fetcher.py — Retry wrapper around httpx requests.

Retry policy:
  - status 429 or >= 500       → retry
  - httpx.TransportError       → retry (connection reset, DNS failure, timeout…)
  - anything else              → return immediately, no retry consumed

Fixed delay between attempts (no jitter, no growth). Only use this for
idempotent requests (GET in this service).
"""

import asyncio
import logging

import httpx

from errors import TransientNetworkError
from settings import FETCH_MAX_RETRIES, FETCH_RETRY_DELAY

logger = logging.getLogger(__name__)


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


async def fetch_with_retry(client: httpx.AsyncClient, method: str, url: str, *,
                           max_retries: int = FETCH_MAX_RETRIES,
                           retry_delay: float = FETCH_RETRY_DELAY,
                           sleep=asyncio.sleep,
                           **request_kwargs) -> httpx.Response:
    """
    Send the request, retrying transient failures up to `max_retries` times.

    Returns the last response when every attempt came back 429/5xx.
    Raises TransientNetworkError when the last attempt failed at the
    transport level.
    """
    retries_left = max(0, max_retries)
    attempt = 0

    while True:
        attempt += 1
        try:
            response = await client.request(method, url, **request_kwargs)
        except httpx.TransportError as exc:
            if retries_left <= 0:
                logger.error('%s %s failed after %d attempt(s): %s', method, url, attempt, exc)
                raise TransientNetworkError(
                    f'Network error calling {url}: {exc}', attempts=attempt,
                ) from exc
            logger.warning('%s %s transport error (%s). Retrying… (%d retries left)',
                           method, url, exc, retries_left)
        else:
            if not is_retryable_status(response.status_code) or retries_left <= 0:
                return response
            logger.warning('%s %s returned %d. Retrying… (%d retries left)',
                           method, url, response.status_code, retries_left)
            await response.aclose()

        retries_left -= 1
        await sleep(retry_delay)
