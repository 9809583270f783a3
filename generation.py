"""
generation.py — Background itinerary generation worker.

run_generation_job(lifecycle, job_id, params) is scheduled with
asyncio.create_task by POST /generate-itinerary. It is the only writer of a
job between creation and its terminal status:

    pending ──► processing ──► completed  {itinerary, prompt, generated_at}
                          └──► failed     error message

The model call itself is a black box; everything after it (JSON repair,
coordinate repair) is local and deterministic.
"""

import json
import logging
import re
from datetime import date, datetime, timezone

from anthropic import AsyncAnthropic
from starlette.concurrency import run_in_threadpool

from jobs import COMPLETED, FAILED, PROCESSING, JobLifecycle
from settings import GENERATION_MAX_TOKENS, GENERATION_MODEL

logger = logging.getLogger(__name__)

DEFAULT_COORDINATES = {'lat': 48.8566, 'lng': 2.3522}

SYSTEM_PROMPT = (
    'You are an expert travel planner. Generate a detailed travel itinerary based on '
    "the user's preferences. Return your response in a structured JSON format only, "
    'with no additional text, explanation, or markdown formatting. Ensure all property '
    'names use double quotes. Every activity, meal and accommodation MUST include a '
    'valid "coordinates" object with numeric "lat" and "lng" values. Costs are numbers '
    'without currency symbols.'
)

BUDGET_GUIDELINES = {
    'budget':   'Include hostels, street food, free/low-cost activities',
    'moderate': 'Include mid-range hotels, casual restaurants, affordable attractions',
    'luxury':   'Include high-end hotels, fine dining, premium experiences',
}

_anthropic_client: AsyncAnthropic | None = None


def get_anthropic_client() -> AsyncAnthropic:
    """Created on first use so importing this module never needs an API key."""
    global _anthropic_client
    if _anthropic_client is None:
        _anthropic_client = AsyncAnthropic()
    return _anthropic_client


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

def _ordinal(n: int) -> str:
    if n in (1, 21, 31):
        return f'{n}st'
    if n in (2, 22):
        return f'{n}nd'
    if n in (3, 23):
        return f'{n}rd'
    return f'{n}th'


def format_date(d: date) -> str:
    """2025-05-01 → 'May 1st, 2025'"""
    return f'{d.strftime("%B")} {_ordinal(d.day)}, {d.year}'


def build_prompt(params: dict) -> str:
    start = date.fromisoformat(str(params['start_date']))
    end   = date.fromisoformat(str(params['end_date']))
    days  = (end - start).days + 1

    budget = params.get('budget') or 'Moderate'
    guidelines = BUDGET_GUIDELINES.get(
        budget.lower(), 'Include a mix of options appropriate for a moderate budget')
    preferences = params.get('preferences') or []
    likes = f"They like {', '.join(preferences)}." if preferences else ''
    special = (params.get('special_requests') or '').strip()
    special_line = f'Special requests from the traveler: "{special}"' if special else ''

    return f"""Create a personalized travel itinerary for {params['destination']} from {format_date(start)} to {format_date(end)} ({days} days).

The purpose of the trip is {params.get('purpose') or 'leisure'}. Their budget is {budget} ({guidelines}). {likes}
{special_line}

For longer trips, vary the daily structure. Group activities that are close together on the same day.

Return a JSON itinerary with this structure:
{{
  "destination": "City, Country",
  "tripName": "Short title",
  "overview": "Brief summary",
  "startDate": "{start.isoformat()}",
  "endDate": "{end.isoformat()}",
  "duration": {days},
  "travelTips": ["2-4 essential tips, one about the typical weather"],
  "days": [
    {{
      "day": 1,
      "date": "YYYY-MM-DD",
      "accommodation": {{"name": "...", "description": "...", "cost": number, "coordinates": {{"lat": number, "lng": number}}}},
      "activities": [{{"time": "Morning/Afternoon/Evening", "title": "...", "description": "...", "cost": number, "transportMode": "Walk/Bus/Metro/Taxi/Train", "transportCost": number, "coordinates": {{"lat": number, "lng": number}}}}],
      "meals": [{{"type": "Breakfast/Lunch/Dinner", "venue": "...", "description": "...", "cost": number, "transportMode": "...", "transportCost": number, "coordinates": {{"lat": number, "lng": number}}}}]
    }}
  ]
}}

Return only valid JSON."""


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def sanitize_json(content: str) -> str:
    """Fix the usual model JSON mistakes: comments, bare keys, trailing commas, single quotes."""
    sanitized = re.sub(r'//.*?(\r?\n|$)', r'\1', content)
    sanitized = re.sub(r'/\*[\s\S]*?\*/', '', sanitized)
    sanitized = re.sub(r'([{,])\s*([A-Za-z0-9_]+)\s*:', r'\1"\2":', sanitized)
    sanitized = re.sub(r',(\s*[\]}])', r'\1', sanitized)
    return sanitized.replace("'", '"')


def parse_itinerary_json(raw: str) -> dict:
    """
    Parse the model's reply: as-is, then the outermost {...} block, then a
    sanitized version of the whole reply. Raises ValueError when all fail.
    """
    text = raw.strip()
    if text.startswith('```'):
        text = re.sub(r'^```(?:json)?\s*|\s*```$', '', text)

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as first_error:
        logger.warning('Initial JSON parse failed: %s', first_error)
        block = re.search(r'\{[\s\S]*\}', text)
        if not block:
            raise ValueError(f'Failed to parse itinerary JSON: {first_error}') from first_error
        try:
            parsed = json.loads(block.group(0))
        except json.JSONDecodeError:
            try:
                parsed = json.loads(sanitize_json(block.group(0)))
            except json.JSONDecodeError:
                raise ValueError(f'Failed to parse itinerary JSON: {first_error}') from first_error

    if not isinstance(parsed, dict):
        raise ValueError('Parsed result is not a valid object')
    return parsed


def _valid_coordinates(coords) -> bool:
    return (isinstance(coords, dict)
            and all(isinstance(coords.get(k), (int, float)) and not isinstance(coords.get(k), bool)
                    for k in ('lat', 'lng'))
            and coords['lat'] == coords['lat'] and coords['lng'] == coords['lng'])   # NaN check


def _repair_coordinates(item: dict) -> bool:
    """Fix one item's coordinates in place. Returns True if anything changed."""
    coords = item.get('coordinates')
    if _valid_coordinates(coords):
        return False
    if isinstance(coords, dict):
        for k in ('lat', 'lng'):
            if isinstance(coords.get(k), str):
                try:
                    coords[k] = float(coords[k])
                except ValueError:
                    pass
        if _valid_coordinates(coords):
            return True
    item['coordinates'] = dict(DEFAULT_COORDINATES)
    return True


def ensure_valid_coordinates(itinerary: dict) -> int:
    """Repair coordinates on every activity, meal and accommodation. Returns the fix count."""
    fixed = 0
    days = itinerary.get('days')
    if not isinstance(days, list):
        logger.warning('No days array found in itinerary')
        return 0
    for day in days:
        if not isinstance(day, dict):
            continue
        items = [*(day.get('activities') or []), *(day.get('meals') or [])]
        if isinstance(day.get('accommodation'), dict):
            items.append(day['accommodation'])
        fixed += sum(1 for it in items if isinstance(it, dict) and _repair_coordinates(it))
    if fixed:
        logger.info('Fixed %d coordinate issue(s) in itinerary', fixed)
    return fixed


def _reply_text(message) -> str:
    for block in message.content:
        block_text = getattr(block, 'text', None)
        if block_text:
            return str(block_text)
    return ''


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------

async def run_generation_job(lifecycle: JobLifecycle, job_id: str, params: dict,
                             client: AsyncAnthropic | None = None,
                             model: str = GENERATION_MODEL) -> None:
    """Drive one job from pending to a terminal status. Never raises."""
    try:
        await run_in_threadpool(lifecycle.transition, job_id, PROCESSING)

        prompt = build_prompt(params)
        logger.info('Job %s: calling %s for %s (prompt %d chars)',
                    job_id, model, params.get('destination'), len(prompt))

        message = await (client or get_anthropic_client()).messages.create(
            model=model,
            max_tokens=GENERATION_MAX_TOKENS,
            system=SYSTEM_PROMPT,
            messages=[{'role': 'user', 'content': prompt}],
        )
        raw_text = _reply_text(message)
        if not raw_text:
            raise ValueError('No content in generation response')

        itinerary = parse_itinerary_json(raw_text)
        ensure_valid_coordinates(itinerary)

        await run_in_threadpool(
            lifecycle.transition, job_id, COMPLETED,
            result={
                'itinerary':    itinerary,
                'prompt':       prompt,
                'generated_at': datetime.now(timezone.utc).isoformat(),
            },
        )
        logger.info('Job %s: itinerary with %d day(s) stored',
                    job_id, len(itinerary.get('days') or []))

    except Exception as exc:
        logger.error('Job %s failed: %s', job_id, exc, exc_info=True)
        try:
            await run_in_threadpool(
                lifecycle.transition, job_id, FAILED,
                error=f'Itinerary generation failed: {exc}',
            )
        except Exception as mark_exc:
            logger.error('Job %s: could not record failure: %s', job_id, mark_exc)
