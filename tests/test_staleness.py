"""Unit tests for the abandoned-job and stale-lock checks."""

import json
from datetime import datetime, timedelta, timezone

from staleness import is_job_abandoned, is_lock_stale, lock_timestamp_ms, parse_lock_payload

NOW = datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)
FIVE_MIN = timedelta(minutes=5)
TEN_MIN = timedelta(minutes=10)
NOW_MS = 1_745_000_000_000


def test_processing_job_is_abandoned_exactly_at_threshold() -> None:
    assert is_job_abandoned('processing', NOW - FIVE_MIN, NOW, FIVE_MIN)


def test_processing_job_just_under_threshold_is_not_abandoned() -> None:
    assert not is_job_abandoned('processing', NOW - FIVE_MIN + timedelta(seconds=1), NOW, FIVE_MIN)


def test_only_processing_jobs_can_be_abandoned() -> None:
    old = NOW - timedelta(hours=3)
    for status in ('pending', 'completed', 'failed'):
        assert not is_job_abandoned(status, old, NOW, FIVE_MIN)


def test_missing_updated_at_is_not_abandoned() -> None:
    assert not is_job_abandoned('processing', None, NOW, FIVE_MIN)


def _marker(age: timedelta) -> str:
    return json.dumps({'timestamp': NOW_MS - int(age.total_seconds() * 1000), 'token': 'abc'})


def test_lock_older_than_threshold_is_stale() -> None:
    assert is_lock_stale(_marker(timedelta(minutes=11)), NOW_MS, TEN_MIN)


def test_recent_lock_is_not_stale() -> None:
    assert not is_lock_stale(_marker(timedelta(minutes=1)), NOW_MS, TEN_MIN)


def test_unparseable_lock_is_stale() -> None:
    assert is_lock_stale('not json at all', NOW_MS, TEN_MIN)
    assert is_lock_stale('[1, 2, 3]', NOW_MS, TEN_MIN)


def test_lock_without_timestamp_counts_as_epoch() -> None:
    payload = parse_lock_payload('{"token": "abc"}')
    assert payload == {'token': 'abc'}
    assert lock_timestamp_ms(payload) == 0
    assert is_lock_stale('{"token": "abc"}', NOW_MS, TEN_MIN)


def test_parse_lock_payload_accepts_bytes() -> None:
    assert parse_lock_payload(b'{"timestamp": 5}') == {'timestamp': 5}
    assert parse_lock_payload(None) is None


def test_non_numeric_timestamp_counts_as_zero() -> None:
    assert lock_timestamp_ms({'timestamp': 'yesterday'}) == 0
    assert lock_timestamp_ms({'timestamp': True}) == 0
