"""
errors.py — Error taxonomy shared by the job lifecycle, the edit reconciler,
the retrying fetcher and the save-lock guard.

Every error carries the HTTP status it maps to and an optional `details`
dict that the FastAPI exception handler in app.py merges into the
{'error': '...'} response body.
"""


class ItineraryError(Exception):
    """Base class — never raised directly."""

    status_code = 500

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {'error': self.message, **self.details}


# ── Caller mistakes ───────────────────────────────────────────────────────────

class ValidationError(ItineraryError):
    """Missing or malformed request fields. Never retried."""
    status_code = 400


class UnsupportedItemType(ValidationError):
    pass


# ── Lookups ───────────────────────────────────────────────────────────────────

class NotFound(ItineraryError):
    status_code = 404


class JobNotFound(NotFound):
    pass


class TripNotFound(NotFound):
    pass


class DayNotFound(NotFound):
    pass


class ItemNotFound(NotFound):
    """Carries `day_structure` and `available_items` so callers can see which
    identities the day actually holds."""
    pass


# ── State machine / concurrency ───────────────────────────────────────────────

class InvalidTransition(ItineraryError):
    status_code = 409

    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(
            f'Cannot move job {job_id} from {current!r} to {requested!r}',
            job_id=job_id, current=current, requested=requested,
        )


class SaveInProgress(ItineraryError):
    status_code = 409


# ── Network ───────────────────────────────────────────────────────────────────

class TransientNetworkError(ItineraryError):
    """Transport-level failure that survived the retry budget."""
    status_code = 502
