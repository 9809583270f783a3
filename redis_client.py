"""
redis_client.py — Shared Redis connection for the itinerary jobs service

Provides a single lazily-initialised Redis client used by:
  - save_lock.py   (the isSavingTrip marker)

Graceful degradation
--------------------
If REDIS_URL is not set, or if the Redis server is unreachable,
get_redis() returns None.  Every caller checks for None and falls
back to its own in-memory dict so the service keeps working in local
development without a Redis instance.

Usage
-----
    from redis_client import get_redis

    r = get_redis()
    if r is not None:
        r.set('lock:isSavingTrip', payload)
    else:
        _local_markers['isSavingTrip'] = payload
"""

import logging
from urllib.parse import urlparse, urlunparse

import redis

from settings import REDIS_URL

logger = logging.getLogger(__name__)

_redis_client = None          # module-level singleton
_redis_checked = False        # only attempt connection once per process


def get_redis():
    """
    Return a connected Redis client, or None if Redis is unavailable.

    The connection is established once per process and reused.
    """
    global _redis_client, _redis_checked

    if _redis_checked:
        return _redis_client

    _redis_checked = True

    if not REDIS_URL:
        logger.info(
            "REDIS_URL not set — the save-lock marker lives in process memory "
            "and will not survive a restart."
        )
        return None

    try:
        client = redis.Redis.from_url(
            REDIS_URL,
            decode_responses=True,   # always return str, never bytes
            socket_connect_timeout=3,
            socket_timeout=3,
        )
        client.ping()                # fail fast if unreachable
        logger.info("Redis connected: %s", _redact_url(REDIS_URL))
        _redis_client = client
    except redis.RedisError as exc:
        logger.warning(
            "Redis unavailable (%s) — falling back to in-memory save-lock marker.",
            exc,
        )
        _redis_client = None

    return _redis_client


def reset_redis() -> None:
    """Forget the cached client so the next get_redis() reconnects."""
    global _redis_client, _redis_checked
    _redis_client = None
    _redis_checked = False


def _redact_url(url: str) -> str:
    """Return the Redis URL with the password replaced by ***."""
    p = urlparse(url)
    if p.password:
        netloc = f"{p.username or ''}:***@{p.hostname}" + (f":{p.port}" if p.port else "")
        return urlunparse(p._replace(netloc=netloc))
    return url
