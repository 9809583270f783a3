"""
settings.py — Environment-driven configuration for the itinerary jobs service.

Every tunable lives here as a module-level constant read once at import time.
Values come from the process environment, with a `.env` file next to this
module loaded first (existing environment variables win).

The stuck-job and save-lock thresholds are operational tuning knobs, not
correctness constants — override them per deployment rather than in code.
"""

import os

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(__file__), '.env'))


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, '').strip()
    return int(raw) if raw else default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, '').strip()
    return float(raw) if raw else default


# ── Infrastructure ────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///itinerary_jobs.db')
REDIS_URL    = os.getenv('REDIS_URL', '').strip()
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv('CORS_ORIGINS', 'http://localhost:3000,http://127.0.0.1:3000').split(',')
    if o.strip()
]
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# ── Generation worker ─────────────────────────────────────────────────────────
GENERATION_MODEL      = os.getenv('GENERATION_MODEL', 'claude-haiku-4-5-20251001')
GENERATION_MAX_TOKENS = _int_env('GENERATION_MAX_TOKENS', 8000)
MAX_TRIP_DAYS         = _int_env('MAX_TRIP_DAYS', 14)

# ── Job lifecycle ─────────────────────────────────────────────────────────────
STUCK_JOB_THRESHOLD_SECONDS = _int_env('STUCK_JOB_THRESHOLD_SECONDS', 5 * 60)

# ── Save lock ─────────────────────────────────────────────────────────────────
SAVE_LOCK_STALE_SECONDS = _int_env('SAVE_LOCK_STALE_SECONDS', 10 * 60)
SAVE_LOCK_KEY           = 'isSavingTrip'

# ── Polling client ────────────────────────────────────────────────────────────
POLL_INTERVAL_SECONDS = _float_env('POLL_INTERVAL_SECONDS', 5.0)
POLL_MAX_ATTEMPTS     = _int_env('POLL_MAX_ATTEMPTS', 30)

# ── Retrying fetcher ──────────────────────────────────────────────────────────
FETCH_MAX_RETRIES = _int_env('FETCH_MAX_RETRIES', 2)
FETCH_RETRY_DELAY = _float_env('FETCH_RETRY_DELAY', 1.0)
FETCH_TIMEOUT     = _float_env('FETCH_TIMEOUT', 10.0)
