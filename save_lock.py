"""
save_lock.py — Advisory "a trip save may be in flight" marker.

The marker is a single key holding JSON:

    {"timestamp": <epoch ms when the save began>, "token": "<uuid4>"}

It stops one process from double-submitting a save and leaves a
timestamped trail when a save dies half-way. It is NOT a mutual-exclusion
primitive: nothing on the server enforces it, and two processes without a
shared Redis each see their own marker. acquire() therefore hands back a
LockHint (advisory=True), not a lock.

Lifecycle, owned by whoever performs saves (app.py creates one and
injects it into the trips router):

    guard = SaveLockGuard()
    guard.cleanup_on_startup()        # once per process start
    hint = guard.acquire()            # None → another save looks in flight
    ...
    guard.release(hint)

Storage: Redis key `lock:isSavingTrip` when Redis is reachable, otherwise a
process-local dict.
"""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Callable

import redis

from errors import SaveInProgress
from redis_client import get_redis
from settings import SAVE_LOCK_KEY, SAVE_LOCK_STALE_SECONDS
from staleness import is_lock_stale, lock_timestamp_ms, parse_lock_payload

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class LockHint:
    token:        str
    timestamp_ms: int
    advisory:     bool = True     # never a guarantee of exclusive access


class CleanupResult(str, Enum):
    ABSENT          = 'absent'
    REMOVED_STALE   = 'removed_stale'
    REMOVED_INVALID = 'removed_invalid'
    KEPT_RECENT     = 'kept_recent'


class SaveLockGuard:

    def __init__(self, key: str = SAVE_LOCK_KEY,
                 stale_after: timedelta = timedelta(seconds=SAVE_LOCK_STALE_SECONDS),
                 clock_ms: Callable[[], int] = _now_ms,
                 redis_getter: Callable = get_redis):
        self.key = key
        self.stale_after = stale_after
        self._clock_ms = clock_ms
        self._get_redis = redis_getter
        self._local: dict[str, str] = {}

    # ── Marker storage (Redis + in-memory fallback) ──────────────────────────

    @property
    def _redis_key(self) -> str:
        return f'lock:{self.key}'

    def read_marker(self) -> str | None:
        r = self._get_redis()
        if r is not None:
            try:
                return r.get(self._redis_key)
            except redis.RedisError as exc:
                logger.warning('Redis save-lock GET error: %s — using memory', exc)
        return self._local.get(self.key)

    def write_marker(self, payload: str) -> None:
        r = self._get_redis()
        if r is not None:
            try:
                r.set(self._redis_key, payload)
                return
            except redis.RedisError as exc:
                logger.warning('Redis save-lock SET error: %s — falling back to memory', exc)
        self._local[self.key] = payload

    def clear_marker(self) -> None:
        r = self._get_redis()
        if r is not None:
            try:
                r.delete(self._redis_key)
            except redis.RedisError as exc:
                logger.warning('Redis save-lock DELETE error: %s', exc)
        self._local.pop(self.key, None)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def is_stale(self, raw) -> bool:
        return is_lock_stale(raw, self._clock_ms(), self.stale_after)

    def acquire(self) -> LockHint | None:
        """
        Place a fresh marker. Returns None when a recent, valid marker is
        already there; a stale or unreadable one is replaced.
        """
        existing = self.read_marker()
        if existing is not None:
            if not self.is_stale(existing):
                logger.info('Save already in progress (marker %s)', existing)
                return None
            logger.warning('Replacing stale save lock: %s', existing)

        hint = LockHint(token=uuid.uuid4().hex, timestamp_ms=self._clock_ms())
        self.write_marker(json.dumps({'timestamp': hint.timestamp_ms, 'token': hint.token}))
        return hint

    def release(self, hint: LockHint) -> bool:
        """Clear the marker if it is still ours. Returns True when cleared."""
        payload = parse_lock_payload(self.read_marker())
        if payload is None:
            return False
        if payload.get('token') != hint.token:
            logger.warning('Save lock now belongs to another save (token %s); leaving it',
                           payload.get('token'))
            return False
        self.clear_marker()
        return True

    @contextmanager
    def held(self):
        hint = self.acquire()
        if hint is None:
            raise SaveInProgress('Another trip save is still in progress. Please wait and try again.')
        try:
            yield hint
        finally:
            self.release(hint)

    def cleanup_on_startup(self) -> CleanupResult:
        """
        Drop a marker left behind by a previous process if it is stale or
        unparseable. A recent one is kept: that save may still be running.
        """
        raw = self.read_marker()
        if raw is None:
            return CleanupResult.ABSENT

        payload = parse_lock_payload(raw)
        if payload is None:
            logger.info('Removing invalid trip save lock')
            self.clear_marker()
            return CleanupResult.REMOVED_INVALID

        if self.is_stale(raw):
            age_s = (self._clock_ms() - lock_timestamp_ms(payload)) / 1000
            logger.info('Removing stale trip save lock from previous session (%.0fs old)', age_s)
            self.clear_marker()
            return CleanupResult.REMOVED_STALE

        logger.info('Found recent save lock, keeping it in case a save is in progress')
        return CleanupResult.KEPT_RECENT
