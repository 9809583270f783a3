"""
SQLAlchemy ORM models for the itinerary jobs service.

Two models:
  Job   — one asynchronous itinerary-generation job (status, result, error, audit trail)
  Trip  — a saved itinerary; `trip_data` holds the whole generated document,
          days and all, so item edits can be persisted in one write

Default database: SQLite (itinerary_jobs.db).
Production: set DATABASE_URL to a PostgreSQL connection string.
"""

import json
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base


def _utcnow():
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _loads(raw):
    return json.loads(raw) if raw else None


Base = declarative_base()


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------

class Job(Base):
    __tablename__ = 'jobs'

    job_id     = Column(String(64), primary_key=True)             # job_<ms>_<rand>
    storage_id = Column(BigInteger, nullable=False, index=True)   # numeric form, see job_store.storage_id
    status     = Column(String(20), nullable=False, default='pending', index=True)
    parameters = Column(Text, nullable=True)    # JSON
    result     = Column(Text, nullable=True)    # JSON, only when completed
    error      = Column(Text, nullable=True)    # only when failed
    history    = Column(Text, nullable=True)    # JSON list of transition entries
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            'job_id':     self.job_id,
            'storage_id': self.storage_id,
            'status':     self.status,
            'parameters': _loads(self.parameters),
            'result':     _loads(self.result),
            'error':      self.error,
            'history':    _loads(self.history) or [],
            'created_at': as_utc(self.created_at),
            'updated_at': as_utc(self.updated_at),
        }

    def apply(self, record: dict) -> None:
        """Copy a store record (see job_store) onto this row."""
        for key in ('storage_id', 'status', 'error', 'created_at', 'updated_at'):
            if key in record:
                setattr(self, key, record[key])
        for key in ('parameters', 'result', 'history'):
            if key in record:
                value = record[key]
                setattr(self, key, json.dumps(value) if value is not None else None)

    def __repr__(self):
        return f'<Job {self.job_id} status={self.status}>'


# ---------------------------------------------------------------------------
# Trip
# ---------------------------------------------------------------------------

class Trip(Base):
    __tablename__ = 'trips'

    id          = Column(Integer, primary_key=True)
    title       = Column(String(255), nullable=False)
    destination = Column(String(255), nullable=True)
    start_date  = Column(String(10),  nullable=True)    # ISO date
    end_date    = Column(String(10),  nullable=True)
    job_id      = Column(String(64),  nullable=True, index=True)   # generation job, if any
    trip_data   = Column(Text, nullable=False)                     # JSON itinerary document
    is_deleted  = Column(Boolean, nullable=False, default=False)   # soft-delete
    created_at  = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at  = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    @property
    def data(self) -> dict:
        return json.loads(self.trip_data) if self.trip_data else {}

    @data.setter
    def data(self, value: dict) -> None:
        self.trip_data = json.dumps(value)

    def to_dict(self, include_data=True):
        d = {
            'id':          self.id,
            'title':       self.title,
            'destination': self.destination,
            'start_date':  self.start_date,
            'end_date':    self.end_date,
            'job_id':      self.job_id,
            'is_deleted':  self.is_deleted,
            'created_at':  as_utc(self.created_at).isoformat() if self.created_at else None,
            'updated_at':  as_utc(self.updated_at).isoformat() if self.updated_at else None,
        }
        if include_data:
            d['trip_data'] = self.data
        return d

    def __repr__(self):
        return f'<Trip #{self.id} {self.title!r}>'
