"""
job_store.py — Job Record Store for generation jobs.

Records are plain dicts:

    { job_id, storage_id, status, parameters, result, error, history,
      created_at, updated_at }

The store only offers get / insert / update-by-id with last-write-wins
semantics. There are no transactions and no optimistic-concurrency token;
callers tolerate races.

Rows live in the `jobs` table (models.Job). If the database raises, the
record is kept in a process-local dict instead so a flaky database does not
lose a running job's state. Reads check the database first, then memory.
"""

import copy
import logging
import re
from collections import Counter

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from models import Job

logger = logging.getLogger(__name__)

_TIMESTAMP_ID = re.compile(r'^(job|debug|test)_(\d+)')


def storage_id(job_id: str) -> int:
    """
    Numeric form of a job id, for numeric-keyed stores.

      '1745073759779'                -> 1745073759779
      'job_1745073759779_kmiqjjt'    -> 1745073759779
      anything else                  -> abs(int32 rolling hash, base 31)

    Deterministic: the same job id always maps to the same number. Jobs
    created in the same millisecond share a storage id, so it is an index,
    never the primary key.
    """
    if job_id.isdigit():
        return int(job_id)

    m = _TIMESTAMP_ID.match(job_id)
    if m:
        return int(m.group(2))

    h = 0
    units = job_id.encode('utf-16-le')
    for i in range(0, len(units), 2):
        unit = units[i] | (units[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


class JobStore:
    """
    get / insert / update over the jobs table, with an in-memory fallback.

    `session_factory=None` gives a memory-only store (local development and
    tests).
    """

    def __init__(self, session_factory=None):
        self._session_factory = session_factory
        self._memory: dict[str, dict] = {}

    # ── Reads ────────────────────────────────────────────────────────────────

    def get(self, job_id: str) -> dict | None:
        if self._session_factory is not None:
            try:
                with self._session_factory() as session:
                    row = session.get(Job, job_id)
                    if row is None and job_id.isdigit():
                        # Legacy callers address jobs by their numeric storage id
                        row = session.execute(
                            select(Job).where(Job.storage_id == int(job_id))
                            .order_by(Job.created_at.desc())
                        ).scalars().first()
                    if row is not None:
                        return row.to_dict()
            except SQLAlchemyError as exc:
                logger.warning('Job store GET error for %s: %s — trying memory', job_id, exc)

        entry = self._memory_entry(job_id)
        return copy.deepcopy(entry) if entry is not None else None

    def _memory_entry(self, job_id: str) -> dict | None:
        entry = self._memory.get(job_id)
        if entry is None and job_id.isdigit():
            matches = [e for e in self._memory.values() if e['storage_id'] == int(job_id)]
            if matches:
                entry = max(matches, key=lambda e: e['created_at'])
        return entry

    def recent(self, limit: int = 50) -> list[dict]:
        """Newest jobs first, merged from the database and the memory fallback."""
        records: dict[str, dict] = {}
        if self._session_factory is not None:
            try:
                with self._session_factory() as session:
                    rows = session.execute(
                        select(Job).order_by(Job.created_at.desc()).limit(limit)
                    ).scalars().all()
                    records.update((r.job_id, r.to_dict()) for r in rows)
            except SQLAlchemyError as exc:
                logger.warning('Job store list error: %s — using memory only', exc)
        for job_id, entry in self._memory.items():
            records.setdefault(job_id, copy.deepcopy(entry))
        ordered = sorted(records.values(), key=lambda r: r['created_at'], reverse=True)
        return ordered[:limit]

    def with_status(self, status: str) -> list[dict]:
        records: dict[str, dict] = {}
        if self._session_factory is not None:
            try:
                with self._session_factory() as session:
                    rows = session.execute(
                        select(Job).where(Job.status == status)
                    ).scalars().all()
                    records.update((r.job_id, r.to_dict()) for r in rows)
            except SQLAlchemyError as exc:
                logger.warning('Job store status query error: %s — using memory only', exc)
        for job_id, entry in self._memory.items():
            if entry['status'] == status:
                records.setdefault(job_id, copy.deepcopy(entry))
        return list(records.values())

    def count_by_status(self, limit: int = 500) -> dict[str, int]:
        return dict(Counter(r['status'] for r in self.recent(limit)))

    # ── Writes ───────────────────────────────────────────────────────────────

    def insert(self, record: dict) -> None:
        job_id = record['job_id']
        if self._session_factory is not None:
            try:
                with self._session_factory() as session:
                    row = Job(job_id=job_id)
                    row.apply(record)
                    session.add(row)
                    session.commit()
                return
            except SQLAlchemyError as exc:
                logger.warning('Job store INSERT error for %s: %s — keeping it in memory',
                               job_id, exc)
        self._memory[job_id] = copy.deepcopy(record)

    def update(self, job_id: str, patch: dict) -> dict | None:
        """Merge `patch` into the record (read → modify → write). None if absent."""
        if self._session_factory is not None and job_id not in self._memory:
            try:
                with self._session_factory() as session:
                    row = session.get(Job, job_id)
                    if row is None:
                        return None
                    row.apply(patch)
                    session.commit()
                    return row.to_dict()
            except SQLAlchemyError as exc:
                logger.warning('Job store UPDATE error for %s: %s — falling back to memory',
                               job_id, exc)
                existing = self.get(job_id)
                if existing is None:
                    return None
                self._memory[job_id] = existing

        entry = self._memory.get(job_id)
        if entry is None:
            return None
        entry.update(copy.deepcopy(patch))
        return copy.deepcopy(entry)
