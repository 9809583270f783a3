"""
trips.py — Trip persistence and item-edit routers (FastAPI)

trips_router:
  GET    /trips              — list trips, newest first
  POST   /trips              — save a trip (from a body, or from a completed job)
  GET    /trips/{id}         — get one trip (optional ?include_data=false)
  PUT    /trips/{id}         — partial update (title, trip_data)
  DELETE /trips/{id}         — soft-delete a trip
  GET    /trips/{id}/items   — identities of every item, per day

items_router:
  POST   /mock-edit-item        — edit an item in caller-supplied days, nothing stored
  POST   /edit-itinerary-item   — edit an item in a stored trip and persist it

Every write to trip_data runs inside the advisory save lock
(app.state.save_lock); a second save while one looks in flight gets 409.
"""

import copy
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from database import get_db
from errors import ItemNotFound, TripNotFound, ValidationError
from itinerary import (
    ItemKind,
    edit_item,
    find_accommodation_day,
    item_kind,
    list_items,
    propagate_accommodation,
)
from jobs import COMPLETED, JobLifecycle
from models import Trip
from save_lock import SaveLockGuard
from schemas import EditItemRequest, MockEditRequest, TripCreate, TripUpdate

logger = logging.getLogger(__name__)

trips_router = APIRouter(prefix='/trips', tags=['trips'])
items_router = APIRouter(tags=['items'])


# ── Dependencies ──────────────────────────────────────────────────────────────

def get_save_lock(request: Request) -> SaveLockGuard:
    return request.app.state.save_lock


def get_lifecycle(request: Request) -> JobLifecycle:
    return request.app.state.lifecycle


# ── Helpers ───────────────────────────────────────────────────────────────────

def _trip_or_404(db: Session, trip_id: int) -> Trip:
    trip = db.get(Trip, trip_id)
    if not trip or trip.is_deleted:
        raise TripNotFound(f'Trip {trip_id} not found')
    return trip


def _auto_title(destination: str | None, days: int) -> str:
    return f"{destination or 'Trip'} — {days} day{'s' if days != 1 else ''}"


def _trip_days(data: dict) -> list:
    days = data.get('days')
    if not isinstance(days, list) or not days:
        raise ValidationError('Invalid trip data structure: no days array found')
    return days


def _check_trip(data: dict, expected_days: int) -> None:
    """A trip about to be written must still look like the one that was read."""
    if not isinstance(data.get('days'), list) or not data['days']:
        raise ValidationError('Edited trip has no days')
    if not (data.get('title') or data.get('tripName')):
        raise ValidationError('Edited trip has no title')
    if len(data['days']) != expected_days:
        raise ValidationError(
            f"Day count changed during edit ({expected_days} → {len(data['days'])})")


# ── Trip CRUD ─────────────────────────────────────────────────────────────────

@trips_router.get('')
async def list_trips(
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """GET /trips — list non-deleted trips, newest first (without trip_data)."""
    def _query():
        return (db.query(Trip).filter_by(is_deleted=False)
                .order_by(Trip.created_at.desc()).limit(limit).all())

    trips = await run_in_threadpool(_query)
    return {'trips': [t.to_dict(include_data=False) for t in trips]}


@trips_router.post('', status_code=201)
async def create_trip(
    body: TripCreate,
    db: Session = Depends(get_db),
    guard: SaveLockGuard = Depends(get_save_lock),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
):
    """
    POST /trips — save a trip.

    With a job_id and no trip_data, the itinerary of that completed job is
    saved.
    """
    data = copy.deepcopy(body.trip_data)
    if body.job_id and not data:
        job = await run_in_threadpool(lifecycle.get, body.job_id)
        if job.status != COMPLETED or not isinstance(job.result, dict):
            raise ValidationError(f'Job {body.job_id} is {job.status}; only completed jobs can be saved',
                                  status=job.status)
        data = copy.deepcopy(job.result.get('itinerary') or {})

    destination = body.destination or data.get('destination')
    days = len(data['days']) if isinstance(data.get('days'), list) else 0
    title = body.title or data.get('tripName') or data.get('title') or _auto_title(destination, days)
    data.setdefault('title', title)

    def _create():
        trip = Trip(
            title       = title,
            destination = destination,
            start_date  = (body.start_date.isoformat() if body.start_date else data.get('startDate')),
            end_date    = (body.end_date.isoformat() if body.end_date else data.get('endDate')),
            job_id      = body.job_id,
        )
        trip.data = data
        db.add(trip)
        db.commit()
        db.refresh(trip)
        return trip

    with guard.held():
        trip = await run_in_threadpool(_create)
    logger.info('Trip saved: id=%d %r (%d day(s))', trip.id, trip.title, days)
    return {'trip': trip.to_dict()}


@trips_router.get('/{trip_id}')
async def get_trip(
    trip_id: int,
    include_data: bool = Query(default=True),
    db: Session = Depends(get_db),
):
    """GET /trips/{id} — full trip including the itinerary document."""
    trip = await run_in_threadpool(lambda: _trip_or_404(db, trip_id))
    return {'trip': trip.to_dict(include_data=include_data)}


@trips_router.put('/{trip_id}')
async def update_trip(
    trip_id: int,
    body: TripUpdate,
    db: Session = Depends(get_db),
    guard: SaveLockGuard = Depends(get_save_lock),
):
    """PUT /trips/{id} — partial update."""
    def _update():
        trip = _trip_or_404(db, trip_id)
        sent = body.model_fields_set

        if 'title' in sent and body.title is not None:
            trip.title = body.title
        if 'trip_data' in sent and body.trip_data is not None:
            trip.data = body.trip_data

        trip.updated_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(trip)
        return trip

    with guard.held():
        trip = await run_in_threadpool(_update)
    logger.info('Trip updated: id=%d', trip.id)
    return {'trip': trip.to_dict()}


@trips_router.delete('/{trip_id}')
async def delete_trip(
    trip_id: int,
    db: Session = Depends(get_db),
):
    """DELETE /trips/{id} — soft-delete."""
    def _delete():
        trip = _trip_or_404(db, trip_id)
        trip.is_deleted = True
        trip.updated_at = datetime.now(timezone.utc)
        db.commit()
        return trip

    trip = await run_in_threadpool(_delete)
    logger.info('Trip soft-deleted: id=%d', trip.id)
    return {'status': 'ok', 'message': f'Trip #{trip.id} deleted'}


@trips_router.get('/{trip_id}/items')
async def trip_items(
    trip_id: int,
    db: Session = Depends(get_db),
):
    """GET /trips/{id}/items — what each day holds, by identity."""
    trip = await run_in_threadpool(lambda: _trip_or_404(db, trip_id))
    return {'trip_id': trip.id, 'days': list_items(_trip_days(trip.data))}


# ── Item edits ────────────────────────────────────────────────────────────────

@items_router.post('/mock-edit-item')
async def mock_edit_item(body: MockEditRequest):
    """
    Edit one item in the days the caller sent and return it with its day.
    Nothing is stored; used by the client to preview an edit.
    """
    logger.info('Mock edit: %s %r on day %d', body.item_type, body.item_id, body.day_index)
    result = edit_item(body.existing_days, body.day_index, body.item_type,
                       body.item_id, body.user_feedback, item_id=body.stable_id)
    return {'success': True, **result.to_dict()}


@items_router.post('/edit-itinerary-item')
async def edit_itinerary_item(
    body: EditItemRequest,
    db: Session = Depends(get_db),
    guard: SaveLockGuard = Depends(get_save_lock),
):
    """
    Edit one item of a stored trip and persist the whole trip.

    An accommodation that is not on the requested day is looked up on the
    other days; once edited, it is copied onto every day that shared its
    old name.
    """
    kind = item_kind(body.item_type)

    def _edit():
        trip = _trip_or_404(db, body.trip_id)
        data = trip.data
        days = _trip_days(data)
        expected_days = len(days)
        day_index = body.day_index

        try:
            result = edit_item(days, day_index, kind, body.item_id, body.user_feedback,
                               item_id=body.stable_id)
        except ItemNotFound:
            if kind is not ItemKind.ACCOMMODATION:
                raise
            other_day = find_accommodation_day(days, body.item_id)
            if other_day is None:
                raise
            logger.info('Accommodation %r not on day %d, found on day %d',
                        body.item_id, day_index, other_day)
            day_index = other_day
            result = edit_item(days, day_index, kind, body.item_id, body.user_feedback,
                               item_id=body.stable_id)

        propagated = []
        if kind is ItemKind.ACCOMMODATION:
            old_name = result.edited_item.get('name') or body.item_id
            propagated = propagate_accommodation(days, day_index, old_name, result.edited_item)

        data.setdefault('title', trip.title)
        _check_trip(data, expected_days)
        trip.data = data
        trip.updated_at = datetime.now(timezone.utc)
        db.commit()
        return result, day_index, propagated

    with guard.held():
        result, day_index, propagated = await run_in_threadpool(_edit)

    logger.info('Trip %d: %s %r edited on day %d', body.trip_id, kind.value, body.item_id, day_index)
    return {
        'success':        True,
        'trip_id':        body.trip_id,
        'day_index':      day_index,
        'propagatedDays': propagated,
        **result.to_dict(),
    }
