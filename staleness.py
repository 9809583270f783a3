"""
staleness.py — Decide whether a job or a save-lock marker has been orphaned.

Both checks exist because the worker or process that would normally clear
the flag can die without running its cleanup path. There is no heartbeat
channel, so age is the only signal available.

These are pure functions: callers pass `now` and the threshold explicitly.
"""

import json
from datetime import datetime, timedelta

PROCESSING = 'processing'


def is_job_abandoned(status: str, updated_at: datetime | None,
                     now: datetime, threshold: timedelta) -> bool:
    """True when a processing job has not been touched for `threshold` or longer."""
    if status != PROCESSING or updated_at is None:
        return False
    return (now - updated_at) >= threshold


def parse_lock_payload(raw) -> dict | None:
    """
    Decode a save-lock marker. Returns None for anything that is not a JSON
    object; a marker that cannot be decoded can never be trusted.
    """
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode('utf-8', errors='replace')
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def lock_timestamp_ms(payload: dict) -> int:
    """Epoch-ms timestamp of a parsed marker; missing or non-numeric counts as 0."""
    ts = payload.get('timestamp', 0)
    if isinstance(ts, bool) or not isinstance(ts, (int, float)):
        return 0
    return int(ts)


def is_lock_stale(raw, now_ms: int, threshold: timedelta) -> bool:
    """
    True when the marker is older than `threshold`, or unparseable.

    `now_ms` is epoch milliseconds, the unit the marker stores.
    """
    payload = parse_lock_payload(raw)
    if payload is None:
        return True
    age_ms = now_ms - lock_timestamp_ms(payload)
    return age_ms > threshold.total_seconds() * 1000
