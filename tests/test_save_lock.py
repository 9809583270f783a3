"""Tests for the advisory trip save lock."""

import json
from datetime import timedelta

import pytest
import redis

from errors import SaveInProgress
from save_lock import CleanupResult, SaveLockGuard


class FakeRedis:
    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value

    def delete(self, key):
        self.data.pop(key, None)


class BrokenRedis:
    def _fail(self, *args):
        raise redis.ConnectionError('connection refused')

    get = set = delete = _fail


@pytest.fixture
def guard(ms_clock) -> SaveLockGuard:
    return SaveLockGuard(stale_after=timedelta(minutes=10), clock_ms=ms_clock,
                         redis_getter=lambda: None)


def _marker(ms_clock, age: timedelta) -> str:
    return json.dumps({'timestamp': ms_clock() - int(age.total_seconds() * 1000), 'token': 'old'})


def test_cleanup_with_no_marker(guard: SaveLockGuard) -> None:
    assert guard.cleanup_on_startup() is CleanupResult.ABSENT


def test_cleanup_removes_eleven_minute_old_marker(guard: SaveLockGuard, ms_clock) -> None:
    guard.write_marker(_marker(ms_clock, timedelta(minutes=11)))

    assert guard.cleanup_on_startup() is CleanupResult.REMOVED_STALE
    assert guard.read_marker() is None


def test_cleanup_keeps_one_minute_old_marker(guard: SaveLockGuard, ms_clock) -> None:
    marker = _marker(ms_clock, timedelta(minutes=1))
    guard.write_marker(marker)

    assert guard.cleanup_on_startup() is CleanupResult.KEPT_RECENT
    assert guard.read_marker() == marker


def test_cleanup_removes_unparseable_marker(guard: SaveLockGuard) -> None:
    guard.write_marker('true')

    assert guard.cleanup_on_startup() is CleanupResult.REMOVED_INVALID
    assert guard.read_marker() is None


def test_acquire_is_advisory_and_refuses_while_busy(guard: SaveLockGuard, ms_clock) -> None:
    hint = guard.acquire()

    assert hint is not None
    assert hint.advisory is True
    assert json.loads(guard.read_marker()) == {'timestamp': ms_clock(), 'token': hint.token}
    assert guard.acquire() is None

    assert guard.release(hint) is True
    assert guard.read_marker() is None
    assert guard.acquire() is not None


def test_acquire_replaces_a_stale_marker(guard: SaveLockGuard, ms_clock) -> None:
    guard.write_marker(_marker(ms_clock, timedelta(minutes=30)))

    hint = guard.acquire()

    assert hint is not None
    assert json.loads(guard.read_marker())['token'] == hint.token


def test_release_leaves_someone_elses_marker(guard: SaveLockGuard, ms_clock) -> None:
    hint = guard.acquire()
    ms_clock.advance(minutes=11)
    newer = guard.acquire()      # first marker went stale and was replaced

    assert guard.release(hint) is False
    assert json.loads(guard.read_marker())['token'] == newer.token


def test_held_raises_when_a_save_is_in_flight(guard: SaveLockGuard) -> None:
    guard.acquire()

    with pytest.raises(SaveInProgress) as excinfo:
        with guard.held():
            pass
    assert excinfo.value.status_code == 409


def test_held_releases_even_when_the_save_fails(guard: SaveLockGuard) -> None:
    with pytest.raises(RuntimeError):
        with guard.held():
            raise RuntimeError('write failed')
    assert guard.read_marker() is None


def test_marker_lives_in_redis_when_available(ms_clock) -> None:
    fake = FakeRedis()
    guard = SaveLockGuard(clock_ms=ms_clock, redis_getter=lambda: fake)

    hint = guard.acquire()

    assert json.loads(fake.data['lock:isSavingTrip'])['token'] == hint.token
    guard.release(hint)
    assert 'lock:isSavingTrip' not in fake.data


def test_redis_errors_fall_back_to_memory(ms_clock) -> None:
    guard = SaveLockGuard(clock_ms=ms_clock, redis_getter=BrokenRedis)

    hint = guard.acquire()

    assert hint is not None
    assert guard.acquire() is None
    assert guard.release(hint) is True
