"""
schemas.py — Pydantic v2 request models for the itinerary jobs service.

Validation errors are turned into HTTP 400 {'error': '<first message>'} by
the RequestValidationError handler in app.py, matching the {'error': ...}
shape every other failure uses.

Edit requests accept both snake_case and the camelCase names the web client
sends (tripId, itemType, dayIndex, userFeedback, existingDays).
"""

import re
from datetime import date
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from settings import MAX_TRIP_DAYS


# ── Shared validator helpers ──────────────────────────────────────────────────

def _collapse(v: str | None) -> str | None:
    """Collapse all whitespace (tabs, newlines, multiple spaces) to a single
    space, strip ends. Returns None if the result is empty."""
    if v is None:
        return None
    s = re.sub(r'\s+', ' ', str(v)).strip()
    return s or None


def _strip_only(v: str | None) -> str | None:
    """Strip leading/trailing whitespace only — preserve internal newlines.
    Returns None if the result is empty."""
    if v is None:
        return None
    s = str(v).strip()
    return s or None


# ── Itinerary generation ──────────────────────────────────────────────────────

class GenerateRequest(BaseModel):
    destination:      str        = Field(..., min_length=1, max_length=150)
    start_date:       date
    end_date:         date
    budget:           str        = Field(default='Moderate', max_length=50)
    purpose:          str        = Field(default='leisure', max_length=150)
    preferences:      list[str]  = Field(default_factory=list, max_length=20)
    special_requests: str | None = Field(default=None, max_length=1000)

    @field_validator('destination', 'budget', 'purpose', mode='before')
    @classmethod
    def collapse_single_line(cls, v: str | None) -> str | None:
        return _collapse(v)

    @field_validator('special_requests', mode='before')
    @classmethod
    def strip_multiline(cls, v: str | None) -> str | None:
        return _strip_only(v)

    @field_validator('preferences', mode='before')
    @classmethod
    def drop_blank_preferences(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(',')
        return [p for p in (_collapse(x) for x in v) if p]

    @model_validator(mode='after')
    def check_dates(self) -> 'GenerateRequest':
        if self.end_date < self.start_date:
            raise ValueError('End date must be on or after the start date')
        if self.trip_days > MAX_TRIP_DAYS:
            raise ValueError(f'Trips are limited to {MAX_TRIP_DAYS} days')
        return self

    @property
    def trip_days(self) -> int:
        return (self.end_date - self.start_date).days + 1


class RecoverJobRequest(BaseModel):
    status: Literal['completed', 'failed'] = 'failed'
    reason: str | None = Field(default=None, max_length=500)
    force:  bool = False

    @field_validator('reason', mode='before')
    @classmethod
    def collapse_reason(cls, v: str | None) -> str | None:
        return _collapse(v)


# ── Item edits ────────────────────────────────────────────────────────────────

class _EditBase(BaseModel):
    """`item_id` is the item's human-readable identity (title / venue / name);
    `stable_id` is its `id` field when the client has one."""

    model_config = ConfigDict(populate_by_name=True)

    item_id:       str        = Field(..., min_length=1, alias='itemId')
    item_type:     str        = Field(..., min_length=1, alias='itemType')
    day_index:     int        = Field(..., alias='dayIndex')
    user_feedback: str        = Field(..., min_length=1, max_length=2000, alias='userFeedback')
    stable_id:     str | None = Field(default=None, alias='stableId')

    @field_validator('item_type', mode='before')
    @classmethod
    def normalise_type(cls, v):
        return str(v).strip().lower() if v is not None else v

    @field_validator('user_feedback', mode='before')
    @classmethod
    def strip_feedback(cls, v: str | None) -> str | None:
        return _strip_only(v)


class MockEditRequest(_EditBase):
    trip_id:       str | int | None = Field(default=None, alias='tripId')
    existing_days: list            = Field(..., alias='existingDays')


class EditItemRequest(_EditBase):
    trip_id: int = Field(..., alias='tripId')


# ── Trips ─────────────────────────────────────────────────────────────────────

class TripCreate(BaseModel):
    title:       str | None = Field(default=None, max_length=255)
    destination: str | None = Field(default=None, max_length=255)
    start_date:  date | None = None
    end_date:    date | None = None
    job_id:      str | None = Field(default=None, max_length=64)
    trip_data:   dict = Field(default_factory=dict)

    @field_validator('title', 'destination', mode='before')
    @classmethod
    def collapse_single_line(cls, v: str | None) -> str | None:
        return _collapse(v)


class TripUpdate(BaseModel):
    """All fields optional — supports partial update semantics."""
    title:     str | None = Field(default=None, max_length=255)
    trip_data: dict | None = None

    @field_validator('title', mode='before')
    @classmethod
    def collapse_single_line(cls, v: str | None) -> str | None:
        return _collapse(v)
