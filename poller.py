"""
poller.py — Client-side polling loop for generation jobs.

    idle ──► polling ──► succeeded   (job completed, result surfaced)
                    ├──► failed      (job failed, error surfaced)
                    ├──► exhausted   (attempt budget spent, job still running)
                    └──► cancelled   (cancel() called, e.g. the caller went away)

`exhausted` is not an error: the job may still complete, the poller just
stops waiting. Cancelling never touches the job store; it only stops
future reads.

The poller reads through an async `reader(job_id) -> dict` returning at
least {'status', 'result', 'error'}. Two readers are provided:

    lifecycle_reader(lifecycle)      in-process, through JobLifecycle.get
    http_reader(client, base_url)    GET /job-status through fetch_with_retry
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx
from starlette.concurrency import run_in_threadpool

from errors import JobNotFound, TransientNetworkError
from fetcher import fetch_with_retry
from jobs import COMPLETED, FAILED, JobLifecycle
from settings import POLL_INTERVAL_SECONDS, POLL_MAX_ATTEMPTS

logger = logging.getLogger(__name__)

IDLE         = 'idle'
POLLING      = 'polling'
SUCCEEDED    = 'succeeded'
FAILED_STATE = 'failed'
EXHAUSTED    = 'exhausted'
CANCELLED    = 'cancelled'

FINAL_STATES = frozenset({SUCCEEDED, FAILED_STATE, EXHAUSTED, CANCELLED})

Reader = Callable[[str], Awaitable[dict]]


@dataclass
class PollOutcome:
    state:    str
    status:   str | None = None     # last job status seen
    result:   Any = None
    error:    str | None = None
    attempts: int = 0

    @property
    def message(self) -> str:
        if self.state == EXHAUSTED:
            return 'Still processing, stopped waiting'
        if self.state == CANCELLED:
            return 'Polling cancelled'
        if self.state == FAILED_STATE:
            return self.error or 'Job failed'
        if self.state == SUCCEEDED:
            return 'Completed'
        return 'Waiting for job'


class JobPoller:
    """Poll one job at a time until it reaches a terminal status or the budget runs out."""

    def __init__(self, reader: Reader, *,
                 interval: float = POLL_INTERVAL_SECONDS,
                 max_attempts: int = POLL_MAX_ATTEMPTS,
                 sleep=asyncio.sleep):
        self._reader = reader
        self.interval = interval
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._cancelled = asyncio.Event()
        self.state = IDLE

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def _wait(self) -> None:
        """Sleep the poll interval, waking early on cancel()."""
        sleeper = asyncio.ensure_future(self._sleep(self.interval))
        canceller = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait({sleeper, canceller}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (sleeper, canceller):
                if not fut.done():
                    fut.cancel()

    async def updates(self, job_id: str) -> AsyncIterator[PollOutcome]:
        """
        Yield one outcome per read; the last one yielded has a final state.
        """
        self.state = POLLING
        attempts = 0
        last_status = None

        while True:
            if self.cancelled:
                self.state = CANCELLED
                yield PollOutcome(CANCELLED, last_status, attempts=attempts)
                return

            attempts += 1
            try:
                data = await self._reader(job_id)
            except JobNotFound:
                logger.info('Job %s not visible yet (attempt %d/%d)', job_id, attempts, self.max_attempts)
                data = None
            except TransientNetworkError as exc:
                logger.warning('Polling job %s failed (attempt %d/%d): %s',
                               job_id, attempts, self.max_attempts, exc)
                data = None

            if data is not None:
                last_status = data.get('status')
                if last_status == COMPLETED:
                    self.state = SUCCEEDED
                    yield PollOutcome(SUCCEEDED, last_status, result=data.get('result'), attempts=attempts)
                    return
                if last_status == FAILED:
                    self.state = FAILED_STATE
                    yield PollOutcome(FAILED_STATE, last_status, error=data.get('error'), attempts=attempts)
                    return

            if attempts >= self.max_attempts:
                self.state = EXHAUSTED
                logger.info('Job %s still %s after %d poll(s), giving up waiting',
                            job_id, last_status or 'unknown', attempts)
                yield PollOutcome(EXHAUSTED, last_status, attempts=attempts)
                return

            yield PollOutcome(POLLING, last_status, attempts=attempts)
            await self._wait()

    async def poll(self, job_id: str) -> PollOutcome:
        """Run the loop to its end and return the final outcome."""
        outcome = PollOutcome(IDLE)
        async for outcome in self.updates(job_id):
            pass
        return outcome


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------

def lifecycle_reader(lifecycle: JobLifecycle) -> Reader:
    async def _read(job_id: str) -> dict:
        job = await run_in_threadpool(lifecycle.get, job_id)
        return {'status': job.status, 'result': job.result, 'error': job.error}
    return _read


def http_reader(client: httpx.AsyncClient, base_url: str, **fetch_kwargs) -> Reader:
    """Read GET {base_url}/job-status?jobId=… with retries on 429/5xx/transport errors."""
    url = base_url.rstrip('/') + '/job-status'

    async def _read(job_id: str) -> dict:
        resp = await fetch_with_retry(client, 'GET', url, params={'jobId': job_id}, **fetch_kwargs)
        if resp.status_code == 404:
            raise JobNotFound(f'Job {job_id} not found')
        if resp.status_code >= 400:
            raise TransientNetworkError(
                f'Job status request returned HTTP {resp.status_code}', status=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise TransientNetworkError(
                'Job status response was not JSON', status=resp.status_code,
            ) from exc
    return _read
