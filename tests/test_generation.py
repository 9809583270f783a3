"""Tests for the generation worker: prompt, JSON repair, coordinates, job outcome."""

import asyncio
import json
from datetime import date
from types import SimpleNamespace

import pytest

from generation import (
    DEFAULT_COORDINATES,
    build_prompt,
    ensure_valid_coordinates,
    format_date,
    parse_itinerary_json,
    run_generation_job,
    sanitize_json,
)
from job_store import JobStore
from jobs import COMPLETED, FAILED, JobLifecycle

PARAMS = {
    'destination':      'Lisbon, Portugal',
    'start_date':       '2025-05-01',
    'end_date':         '2025-05-03',
    'budget':           'Budget',
    'purpose':          'leisure',
    'preferences':      ['food', 'history'],
    'special_requests': 'No early mornings',
}

ITINERARY = {
    'destination': 'Lisbon, Portugal',
    'tripName': 'Lisbon Long Weekend',
    'days': [{
        'day': 1,
        'activities': [{'title': 'City Walk', 'coordinates': {'lat': 38.71, 'lng': -9.14}}],
        'meals': [{'type': 'Lunch', 'venue': 'Time Out Market'}],
        'accommodation': {'name': 'Hotel Blue', 'coordinates': {'lat': '38.72', 'lng': '-9.15'}},
    }],
}


class FakeMessages:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return SimpleNamespace(content=[SimpleNamespace(type='text', text=self.reply)])


class FakeAnthropic:
    def __init__(self, reply=None, error=None):
        self.messages = FakeMessages(reply, error)


# ── Prompt ────────────────────────────────────────────────────────────────────

def test_format_date_uses_ordinal_suffixes() -> None:
    assert format_date(date(2025, 5, 1)) == 'May 1st, 2025'
    assert format_date(date(2025, 5, 22)) == 'May 22nd, 2025'
    assert format_date(date(2025, 5, 11)) == 'May 11th, 2025'
    assert format_date(date(2025, 5, 23)) == 'May 23rd, 2025'


def test_build_prompt_carries_the_trip_parameters() -> None:
    prompt = build_prompt(PARAMS)

    assert 'Lisbon, Portugal from May 1st, 2025 to May 3rd, 2025 (3 days)' in prompt
    assert 'Include hostels, street food' in prompt
    assert 'They like food, history.' in prompt
    assert 'No early mornings' in prompt
    assert '"duration": 3' in prompt


# ── JSON repair ───────────────────────────────────────────────────────────────

def test_parse_plain_json() -> None:
    assert parse_itinerary_json(json.dumps(ITINERARY)) == ITINERARY


def test_parse_fenced_json() -> None:
    assert parse_itinerary_json('```json\n' + json.dumps(ITINERARY) + '\n```') == ITINERARY


def test_parse_json_wrapped_in_prose() -> None:
    raw = 'Here is your itinerary:\n' + json.dumps(ITINERARY) + '\nEnjoy your trip!'
    assert parse_itinerary_json(raw) == ITINERARY


def test_parse_repairs_sloppy_json() -> None:
    raw = "Sure! {destination: 'Lisbon', /* note */ days: [1, 2,], // trailing\n}"
    assert parse_itinerary_json(raw) == {'destination': 'Lisbon', 'days': [1, 2]}


def test_sanitize_json_quotes_bare_keys() -> None:
    assert json.loads(sanitize_json("{a: 1, b_2: 'x',}")) == {'a': 1, 'b_2': 'x'}


@pytest.mark.parametrize('raw', ['no json here', '{still: broken', '[1, 2, 3]'])
def test_parse_rejects_non_objects(raw: str) -> None:
    with pytest.raises(ValueError):
        parse_itinerary_json(raw)


# ── Coordinates ───────────────────────────────────────────────────────────────

def test_ensure_valid_coordinates_repairs_items() -> None:
    itinerary = json.loads(json.dumps(ITINERARY))

    fixed = ensure_valid_coordinates(itinerary)

    day = itinerary['days'][0]
    assert fixed == 2
    assert day['activities'][0]['coordinates'] == {'lat': 38.71, 'lng': -9.14}
    assert day['meals'][0]['coordinates'] == DEFAULT_COORDINATES
    assert day['accommodation']['coordinates'] == {'lat': 38.72, 'lng': -9.15}


def test_ensure_valid_coordinates_without_days() -> None:
    assert ensure_valid_coordinates({'destination': 'Nowhere'}) == 0


# ── Worker ────────────────────────────────────────────────────────────────────

def _run_job(client) -> tuple[JobLifecycle, str]:
    lifecycle = JobLifecycle(JobStore())
    job = lifecycle.create(PARAMS)
    asyncio.run(run_generation_job(lifecycle, job.job_id, PARAMS, client=client, model='test-model'))
    return lifecycle, job.job_id


def test_worker_completes_the_job() -> None:
    client = FakeAnthropic(reply=json.dumps(ITINERARY))

    lifecycle, job_id = _run_job(client)
    job = lifecycle.get(job_id)

    assert job.status == COMPLETED
    assert job.error is None
    assert job.result['itinerary']['tripName'] == 'Lisbon Long Weekend'
    assert 'Lisbon, Portugal' in job.result['prompt']
    assert job.result['generated_at']
    assert [h['to'] for h in job.history] == ['processing', 'completed']

    call = client.messages.calls[0]
    assert call['model'] == 'test-model'
    assert call['messages'][0]['role'] == 'user'


def test_worker_marks_model_errors_as_failed() -> None:
    lifecycle, job_id = _run_job(FakeAnthropic(error=RuntimeError('overloaded')))
    job = lifecycle.get(job_id)

    assert job.status == FAILED
    assert job.result is None
    assert 'overloaded' in job.error


def test_worker_marks_unparseable_replies_as_failed() -> None:
    lifecycle, job_id = _run_job(FakeAnthropic(reply='I cannot help with that.'))
    job = lifecycle.get(job_id)

    assert job.status == FAILED
    assert 'Failed to parse itinerary JSON' in job.error


def test_worker_marks_empty_replies_as_failed() -> None:
    lifecycle, job_id = _run_job(FakeAnthropic(reply=''))
    assert lifecycle.get(job_id).error == 'Itinerary generation failed: No content in generation response'
