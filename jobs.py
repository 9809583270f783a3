"""
jobs.py — Job Lifecycle Controller for itinerary-generation jobs.

State machine:

    pending ──► processing ──► completed
       │             └───────► failed
       └──────► completed / failed

`completed` and `failed` are terminal. The only way out of a terminal state
(or across any other non-adjacent edge) is an override transition, which is
logged at WARNING and recorded in the job's history with forced=True.

A processing job whose updated_at is older than the stuck threshold is
considered abandoned. The controller reports that condition; it never acts
on it by itself. Recovery is always an explicit call to recover() or
recover_abandoned(), because the worker may still finish the job.
"""

import logging
import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from errors import InvalidTransition, JobNotFound, ValidationError
from job_store import JobStore, storage_id
from settings import STUCK_JOB_THRESHOLD_SECONDS
from staleness import is_job_abandoned

logger = logging.getLogger(__name__)

PENDING    = 'pending'
PROCESSING = 'processing'
COMPLETED  = 'completed'
FAILED     = 'failed'

STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED)
TERMINAL = frozenset({COMPLETED, FAILED})

ALLOWED_TRANSITIONS: dict[str, frozenset] = {
    PENDING:    frozenset({PROCESSING, COMPLETED, FAILED}),
    PROCESSING: frozenset({COMPLETED, FAILED}),
    COMPLETED:  frozenset(),
    FAILED:     frozenset(),
}

STUCK_JOB_ERROR = 'Manually marked as failed due to stuck processing state'

_ID_ALPHABET = string.ascii_lowercase + string.digits


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_job_id() -> str:
    """job_<epoch-ms>_<7 base36 chars>"""
    suffix = ''.join(random.choices(_ID_ALPHABET, k=7))
    return f'job_{int(time.time() * 1000)}_{suffix}'


@dataclass
class Job:
    job_id:     str
    storage_id: int
    status:     str
    created_at: datetime
    updated_at: datetime
    parameters: Any = None
    result:     Any = None
    error:      str | None = None
    history:    list = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    @classmethod
    def from_record(cls, record: dict) -> 'Job':
        return cls(
            job_id=record['job_id'],
            storage_id=record['storage_id'],
            status=record['status'],
            created_at=record['created_at'],
            updated_at=record['updated_at'],
            parameters=record.get('parameters'),
            result=record.get('result'),
            error=record.get('error'),
            history=list(record.get('history') or []),
        )

    def to_record(self) -> dict:
        return {
            'job_id':     self.job_id,
            'storage_id': self.storage_id,
            'status':     self.status,
            'parameters': self.parameters,
            'result':     self.result,
            'error':      self.error,
            'history':    self.history,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    def to_dict(self) -> dict:
        """JSON-friendly view for API responses and the CLI."""
        d = self.to_record()
        d['created_at'] = self.created_at.isoformat()
        d['updated_at'] = self.updated_at.isoformat()
        return d


class JobLifecycle:
    """Owns creation, reads and transitions of generation jobs."""

    def __init__(self, store: JobStore,
                 stuck_after: timedelta = timedelta(seconds=STUCK_JOB_THRESHOLD_SECONDS),
                 clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.stuck_after = stuck_after
        self._clock = clock

    # ── Create / read ────────────────────────────────────────────────────────

    def create(self, parameters: Any = None, job_id: str | None = None) -> Job:
        job_id = job_id or generate_job_id()
        now = self._clock()
        job = Job(
            job_id=job_id,
            storage_id=storage_id(job_id),
            status=PENDING,
            created_at=now,
            updated_at=now,
            parameters=parameters,
        )
        self.store.insert(job.to_record())
        logger.info('Job %s created (storage id %d)', job_id, job.storage_id)
        return job

    def get(self, job_id: str) -> Job:
        record = self.store.get(job_id)
        if record is None:
            raise JobNotFound(f'Job {job_id} not found')
        return Job.from_record(record)

    # ── Transitions ──────────────────────────────────────────────────────────

    def transition(self, job_id: str, new_status: str, *,
                   result: Any = None, error: str | None = None,
                   override: bool = False, reason: str | None = None) -> Job:
        if new_status not in STATUSES:
            raise ValidationError(f'Unknown job status {new_status!r}',
                                  allowed=list(STATUSES))

        job = self.get(job_id)
        job_id = job.job_id
        current = job.status
        allowed = new_status in ALLOWED_TRANSITIONS.get(current, frozenset())

        if not allowed and not override:
            logger.error('Rejected transition for job %s: %s -> %s', job_id, current, new_status)
            raise InvalidTransition(job_id, current, new_status)

        now = max(self._clock(), job.updated_at)
        forced = not allowed
        if forced:
            logger.warning('Forced correction on job %s: %s -> %s (%s)',
                           job_id, current, new_status, reason or 'no reason given')

        patch = {
            'status':     new_status,
            'updated_at': now,
            'result':     result if new_status == COMPLETED else None,
            'error':      (error or 'Job failed') if new_status == FAILED else None,
            'history':    job.history + [{
                'from':   current,
                'to':     new_status,
                'at':     now.isoformat(),
                'forced': forced,
                'reason': reason,
            }],
        }
        record = self.store.update(job_id, patch)
        if record is None:
            raise JobNotFound(f'Job {job_id} not found')

        logger.info('Job %s: %s -> %s', job_id, current, new_status)
        return Job.from_record(record)

    # ── Stuck-job policy ─────────────────────────────────────────────────────

    def now(self) -> datetime:
        return self._clock()

    def is_abandoned(self, job: Job, now: datetime | None = None) -> bool:
        return is_job_abandoned(job.status, job.updated_at,
                                now or self._clock(), self.stuck_after)

    def recover(self, job_id: str, status: str = FAILED, *,
                reason: str | None = None, force: bool = False) -> Job:
        """
        Force an abandoned job into a terminal status via the override path.

        With force=True the job does not need to look abandoned; that is the
        operator's "--fix" on a job they know is dead.
        """
        if status not in TERMINAL:
            raise ValidationError(f'Recovery status must be one of {sorted(TERMINAL)}')

        job = self.get(job_id)
        if not force and not self.is_abandoned(job):
            raise ValidationError(
                f'Job {job_id} is {job.status} and not abandoned; pass force to override',
                status=job.status,
            )

        return self.transition(
            job_id, status,
            result=job.result if status == COMPLETED else None,
            error=STUCK_JOB_ERROR if status == FAILED else None,
            override=True,
            reason=reason or 'stuck job recovery',
        )

    def recover_abandoned(self, now: datetime | None = None) -> list[Job]:
        """Fail every abandoned processing job. Returns the recovered jobs."""
        now = now or self._clock()
        recovered = []
        for record in self.store.with_status(PROCESSING):
            job = Job.from_record(record)
            if self.is_abandoned(job, now):
                recovered.append(self.recover(job.job_id, FAILED, force=True,
                                              reason='automatic stuck job sweep'))
        if recovered:
            logger.warning('Recovered %d abandoned job(s)', len(recovered))
        return recovered
