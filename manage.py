"""
manage.py — CLI admin commands for the itinerary jobs service.

Usage:
    python manage.py check-job job_1745073759779_kmiqjjt
    python manage.py check-job job_1745073759779_kmiqjjt --fix --status failed --reason "worker died"
    python manage.py recover-stuck
    python manage.py list-jobs --limit 20
    python manage.py cleanup-save-lock
    python manage.py wait-job job_1745073759779_kmiqjjt --url http://localhost:8000
"""

import asyncio
import json

import click
import httpx

import database
from errors import ItineraryError
from job_store import JobStore
from jobs import COMPLETED, FAILED, Job, JobLifecycle
from poller import SUCCEEDED, JobPoller, http_reader, lifecycle_reader
from save_lock import SaveLockGuard
from settings import FETCH_TIMEOUT, POLL_INTERVAL_SECONDS, POLL_MAX_ATTEMPTS


def _lifecycle() -> JobLifecycle:
    database.init_db()
    return JobLifecycle(JobStore(database.SessionLocal))


@click.group()
def cli():
    """Operator commands for generation jobs and the trip save lock."""


@cli.command('check-job')
@click.argument('job_id')
@click.option('--fix', is_flag=True, help='Force the job into a terminal status, stuck or not')
@click.option('--status', 'new_status', default=FAILED, show_default=True,
              type=click.Choice([COMPLETED, FAILED]), help='Status to force with --fix')
@click.option('--reason', default=None, help='Recorded in the job history')
def check_job(job_id: str, fix: bool, new_status: str, reason: str | None):
    """Show a job and flag it when it looks stuck."""
    lifecycle = _lifecycle()
    try:
        job = lifecycle.get(job_id)
    except ItineraryError as exc:
        click.echo(f'✗ {exc.message}', err=True)
        raise SystemExit(1)

    age = (lifecycle.now() - job.updated_at).total_seconds()
    click.echo(f'Job:        {job.job_id} (storage id {job.storage_id})')
    click.echo(f'Status:     {job.status}')
    click.echo(f'Updated:    {job.updated_at.isoformat()} ({age / 60:.1f} min ago)')
    if job.error:
        click.echo(f'Error:      {job.error}')
    click.echo(f'Has result: {"yes" if job.result is not None else "no"}')
    click.echo(f'History:    {len(job.history)} transition(s)')

    if lifecycle.is_abandoned(job):
        click.echo(f'⚠ Job has been processing for more than '
                   f'{lifecycle.stuck_after.total_seconds() / 60:.0f} minutes and is likely stuck.')
        if not fix:
            click.echo('  Re-run with --fix to mark it as failed.')

    if fix:
        try:
            job = lifecycle.recover(job_id, new_status, reason=reason or 'manual fix from CLI', force=True)
        except ItineraryError as exc:
            click.echo(f'✗ {exc.message}', err=True)
            raise SystemExit(1)
        click.echo(f'✓ Job {job.job_id} is now {job.status}')


@cli.command('recover-stuck')
def recover_stuck():
    """Fail every job stuck in processing past the threshold."""
    recovered = _lifecycle().recover_abandoned()
    if not recovered:
        click.echo('No stuck jobs.')
        return
    for job in recovered:
        click.echo(f'✓ {job.job_id} → {job.status}')
    click.echo(f'Recovered {len(recovered)} job(s).')


@cli.command('list-jobs')
@click.option('--limit', default=10, show_default=True, type=click.IntRange(1, 500))
def list_jobs(limit: int):
    """Recent jobs, newest first, and counts by status."""
    lifecycle = _lifecycle()
    records = lifecycle.store.recent(limit)
    if not records:
        click.echo('No jobs found.')
        return
    for record in records:
        stuck = ' (stuck)' if lifecycle.is_abandoned(Job.from_record(record)) else ''
        click.echo(f"{record['job_id']:<36} {record['status']:<11} "
                   f"{record['updated_at'].isoformat()}{stuck}")
    counts = lifecycle.store.count_by_status()
    click.echo('Counts: ' + ', '.join(f'{k}={v}' for k, v in sorted(counts.items())))


@cli.command('cleanup-save-lock')
def cleanup_save_lock():
    """Remove a stale or invalid trip save-lock marker."""
    result = SaveLockGuard().cleanup_on_startup()
    click.echo(f'Save lock: {result.value}')


@cli.command('wait-job')
@click.argument('job_id')
@click.option('--url', default=None, help='Poll a running API (GET /job-status) instead of the database')
@click.option('--interval', default=POLL_INTERVAL_SECONDS, show_default=True, type=float)
@click.option('--max-attempts', default=POLL_MAX_ATTEMPTS, show_default=True, type=click.IntRange(1))
def wait_job(job_id: str, url: str | None, interval: float, max_attempts: int):
    """Poll a job until it completes, fails or the attempt budget runs out."""

    async def _run():
        if url:
            async with httpx.AsyncClient(timeout=FETCH_TIMEOUT) as client:
                poller = JobPoller(http_reader(client, url), interval=interval, max_attempts=max_attempts)
                return await _watch(poller)
        poller = JobPoller(lifecycle_reader(_lifecycle()), interval=interval, max_attempts=max_attempts)
        return await _watch(poller)

    async def _watch(poller: JobPoller):
        outcome = None
        async for outcome in poller.updates(job_id):
            click.echo(f'[{outcome.attempts}/{max_attempts}] {outcome.status or "unknown"}')
        return outcome

    outcome = asyncio.run(_run())
    click.echo(outcome.message)
    if outcome.state == SUCCEEDED:
        click.echo(json.dumps(outcome.result, indent=2)[:2000])
    else:
        raise SystemExit(1)


if __name__ == '__main__':
    cli()
