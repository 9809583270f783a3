"""Tests for the job lifecycle state machine and stuck-job recovery."""

import re
from datetime import timedelta

import pytest

from errors import InvalidTransition, JobNotFound, ValidationError
from job_store import JobStore
from jobs import (
    COMPLETED,
    FAILED,
    PENDING,
    PROCESSING,
    STUCK_JOB_ERROR,
    JobLifecycle,
    generate_job_id,
)


@pytest.fixture
def lifecycle(clock) -> JobLifecycle:
    return JobLifecycle(JobStore(), stuck_after=timedelta(minutes=5), clock=clock)


def test_generate_job_id_format() -> None:
    assert re.fullmatch(r'job_\d{13}_[a-z0-9]{7}', generate_job_id())


def test_create_starts_pending(lifecycle: JobLifecycle) -> None:
    job = lifecycle.create({'destination': 'Lisbon'}, job_id='job_1745073759779_kmiqjjt')

    assert job.status == PENDING
    assert job.storage_id == 1745073759779
    assert lifecycle.get(job.job_id).parameters == {'destination': 'Lisbon'}


def test_get_unknown_job_raises(lifecycle: JobLifecycle) -> None:
    with pytest.raises(JobNotFound):
        lifecycle.get('job_0_missing')


def test_happy_path_keeps_result_only_when_completed(lifecycle: JobLifecycle) -> None:
    job = lifecycle.create()
    lifecycle.transition(job.job_id, PROCESSING)
    done = lifecycle.transition(job.job_id, COMPLETED, result={'itinerary': {}}, error='ignored')

    assert done.status == COMPLETED
    assert done.result == {'itinerary': {}}
    assert done.error is None
    assert [h['to'] for h in done.history] == [PROCESSING, COMPLETED]


def test_failed_job_keeps_error_and_drops_result(lifecycle: JobLifecycle) -> None:
    job = lifecycle.create()
    failed = lifecycle.transition(job.job_id, FAILED, result={'partial': True}, error='model timed out')

    assert failed.error == 'model timed out'
    assert failed.result is None


def test_failed_without_message_gets_a_default(lifecycle: JobLifecycle) -> None:
    job = lifecycle.create()
    assert lifecycle.transition(job.job_id, FAILED).error == 'Job failed'


def test_terminal_job_rejects_transition_without_override(lifecycle: JobLifecycle) -> None:
    job = lifecycle.create()
    lifecycle.transition(job.job_id, COMPLETED, result={'ok': 1})

    with pytest.raises(InvalidTransition) as excinfo:
        lifecycle.transition(job.job_id, PROCESSING)

    assert excinfo.value.details == {'job_id': job.job_id, 'current': COMPLETED, 'requested': PROCESSING}
    assert excinfo.value.status_code == 409
    assert lifecycle.get(job.job_id).status == COMPLETED


def test_override_is_recorded_as_forced(lifecycle: JobLifecycle, caplog) -> None:
    job = lifecycle.create()
    lifecycle.transition(job.job_id, COMPLETED, result={'ok': 1})

    fixed = lifecycle.transition(job.job_id, FAILED, error='bad data', override=True, reason='operator')

    assert fixed.status == FAILED
    assert fixed.history[-1]['forced'] is True
    assert fixed.history[-1]['reason'] == 'operator'
    assert 'Forced correction' in caplog.text


def test_allowed_move_with_override_is_not_marked_forced(lifecycle: JobLifecycle) -> None:
    job = lifecycle.create()
    moved = lifecycle.transition(job.job_id, PROCESSING, override=True)
    assert moved.history[-1]['forced'] is False


def test_unknown_status_is_a_validation_error(lifecycle: JobLifecycle) -> None:
    job = lifecycle.create()
    with pytest.raises(ValidationError):
        lifecycle.transition(job.job_id, 'done')


def test_updated_at_never_moves_backwards(lifecycle: JobLifecycle, clock) -> None:
    job = lifecycle.create()
    clock.advance(minutes=-10)
    moved = lifecycle.transition(job.job_id, PROCESSING)
    assert moved.updated_at == job.updated_at


def test_processing_job_is_abandoned_after_threshold(lifecycle: JobLifecycle, clock) -> None:
    job = lifecycle.create()
    job = lifecycle.transition(job.job_id, PROCESSING)

    clock.advance(minutes=4, seconds=59)
    assert not lifecycle.is_abandoned(job)
    clock.advance(seconds=1)
    assert lifecycle.is_abandoned(job)


def test_recover_refuses_a_live_job_unless_forced(lifecycle: JobLifecycle) -> None:
    job = lifecycle.create()
    lifecycle.transition(job.job_id, PROCESSING)

    with pytest.raises(ValidationError):
        lifecycle.recover(job.job_id)

    forced = lifecycle.recover(job.job_id, force=True, reason='worker crashed')
    assert forced.status == FAILED
    assert forced.error == STUCK_JOB_ERROR
    assert forced.history[-1]['reason'] == 'worker crashed'


def test_recover_can_force_a_terminal_job(lifecycle: JobLifecycle) -> None:
    job = lifecycle.create()
    lifecycle.transition(job.job_id, FAILED, error='boom')

    recovered = lifecycle.recover(job.job_id, COMPLETED, force=True)
    assert recovered.status == COMPLETED
    assert recovered.error is None
    assert recovered.history[-1]['forced'] is True


def test_recover_rejects_non_terminal_target(lifecycle: JobLifecycle) -> None:
    job = lifecycle.create()
    with pytest.raises(ValidationError):
        lifecycle.recover(job.job_id, PENDING, force=True)


def test_recover_abandoned_only_touches_stuck_jobs(lifecycle: JobLifecycle, clock) -> None:
    stuck = lifecycle.create()
    lifecycle.transition(stuck.job_id, PROCESSING)
    clock.advance(minutes=6)

    fresh = lifecycle.create()
    lifecycle.transition(fresh.job_id, PROCESSING)
    waiting = lifecycle.create()

    recovered = lifecycle.recover_abandoned()

    assert [j.job_id for j in recovered] == [stuck.job_id]
    assert lifecycle.get(stuck.job_id).error == STUCK_JOB_ERROR
    assert lifecycle.get(fresh.job_id).status == PROCESSING
    assert lifecycle.get(waiting.job_id).status == PENDING


def test_lifecycle_on_sqlite(session_factory, clock) -> None:
    lifecycle = JobLifecycle(JobStore(session_factory), clock=clock)
    job = lifecycle.create({'destination': 'Kyoto'})
    lifecycle.transition(job.job_id, PROCESSING)
    lifecycle.transition(job.job_id, COMPLETED, result={'itinerary': {'days': [{'day': 1}]}})

    reread = JobLifecycle(JobStore(session_factory), clock=clock).get(job.job_id)
    assert reread.status == COMPLETED
    assert reread.result == {'itinerary': {'days': [{'day': 1}]}}
    assert len(reread.history) == 2
    assert reread.to_dict()['updated_at'].startswith('2025-05-01T12:00:00')


def test_recover_through_the_numeric_storage_id(session_factory, clock) -> None:
    lifecycle = JobLifecycle(JobStore(session_factory), stuck_after=timedelta(minutes=5), clock=clock)
    job = lifecycle.create(job_id='job_1745073759779_kmiqjjt')
    lifecycle.transition(job.job_id, PROCESSING)
    clock.advance(minutes=6)

    recovered = lifecycle.recover('1745073759779', FAILED)

    assert recovered.job_id == 'job_1745073759779_kmiqjjt'
    assert recovered.status == FAILED
    assert recovered.error == STUCK_JOB_ERROR
    assert lifecycle.get(job.job_id).status == FAILED
