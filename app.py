#!/usr/bin/env python3
"""
Itinerary Jobs API — Backend (FastAPI, async)

- POST /generate-itinerary creates a job and returns at once; the itinerary is
  generated by a background task (generation.run_generation_job)
- GET /job-status is polled by the client until the job is completed/failed
- Item edits reconcile a free-text request against one itinerary item
- run_in_threadpool wraps every synchronous SQLAlchemy call
- ItineraryError subclasses carry their own HTTP status; one handler maps
  them all to {'error': ..., **details}
"""

import asyncio
import logging

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

import database
from errors import ItineraryError, ValidationError
from generation import run_generation_job
from job_store import JobStore
from jobs import PENDING, Job, JobLifecycle
from redis_client import get_redis
from save_lock import SaveLockGuard
from schemas import GenerateRequest, RecoverJobRequest
from settings import CORS_ORIGINS, GENERATION_MODEL, LOG_LEVEL
from trips import get_lifecycle, items_router, trips_router

# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s [%(levelname)s] %(message)s',
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(title='Itinerary Jobs API', docs_url=None, redoc_url=None)

# ── CORS ─────────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

# ── Security headers ──────────────────────────────────────────────────────────
@app.middleware('http')
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options']        = 'DENY'
    response.headers['Referrer-Policy']        = 'strict-origin-when-cross-origin'
    return response


# ── Map errors → { "error": "..." } ───────────────────────────────────────────
@app.exception_handler(ItineraryError)
async def itinerary_error_handler(request: Request, exc: ItineraryError):
    if exc.status_code >= 500:
        logger.error('%s %s failed: %s', request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={'error': exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    message = str(first.get('msg', 'Invalid request')).removeprefix('Value error, ')
    field = '.'.join(str(p) for p in first.get('loc', ()) if p != 'body')
    return JSONResponse(status_code=400, content={'error': message, 'field': field or None})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error('Unhandled error on %s %s: %s', request.method, request.url.path, exc,
                 exc_info=exc)
    return JSONResponse(status_code=500, content={'error': 'Internal server error'})


# ── Router registration ───────────────────────────────────────────────────────
app.include_router(trips_router)
app.include_router(items_router)

# ---------------------------------------------------------------------------
# Background tasks
# ---------------------------------------------------------------------------

# asyncio only keeps weak references to tasks; hold them until they finish.
_background_tasks: set[asyncio.Task] = set()


def _schedule(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task

# ---------------------------------------------------------------------------
# Startup / shutdown
# ---------------------------------------------------------------------------

@app.on_event('startup')
async def startup():
    await run_in_threadpool(database.init_db)

    app.state.lifecycle = JobLifecycle(JobStore(database.SessionLocal))

    # A save that died with the previous process leaves its marker behind.
    app.state.save_lock = SaveLockGuard()
    result = await run_in_threadpool(app.state.save_lock.cleanup_on_startup)
    logger.info('Save-lock startup check: %s', result.value)

    if get_redis() is not None:
        logger.warning('Redis connected and ready (save-lock marker shared across processes)')
    else:
        logger.warning('Redis unavailable — save-lock marker is process-local (set REDIS_URL to share it)')


@app.on_event('shutdown')
async def shutdown():
    pending = [t for t in _background_tasks if not t.done()]
    if pending:
        logger.warning('Shutting down with %d generation job(s) still running; '
                       'they will show as stuck once the threshold passes', len(pending))

# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get('/health')
async def health():
    return {'status': 'ok', 'message': f'Itinerary jobs API is running on {GENERATION_MODEL}'}


@app.post('/generate-itinerary', status_code=202)
async def generate_itinerary(body: GenerateRequest, request: Request):
    """
    Create a generation job and return its id immediately.

    The client polls GET /job-status?jobId=… until status is 'completed' or
    'failed'. The job is written before the worker is scheduled, so the
    first poll always finds it.
    """
    lifecycle = get_lifecycle(request)
    params = body.model_dump(mode='json')
    job = await run_in_threadpool(lifecycle.create, params)

    _schedule(run_generation_job(lifecycle, job.job_id, params))

    logger.info('Job %s queued for %s, %d day(s)', job.job_id, body.destination, body.trip_days)
    return {'success': True, 'job_id': job.job_id, 'status': PENDING}


@app.get('/job-status')
async def job_status(request: Request, job_id: str | None = Query(default=None, alias='jobId')):
    """
    Returns:
        { job_id, status: 'pending'|'processing'|'completed'|'failed',
          result:    {...} | null,   # only when status == 'completed'
          error:     str   | null,   # only when status == 'failed'
          abandoned: bool }          # processing, untouched past the stuck threshold
    """
    if not job_id:
        raise ValidationError('Job ID is required')

    lifecycle = get_lifecycle(request)
    job = await run_in_threadpool(lifecycle.get, job_id)
    abandoned = lifecycle.is_abandoned(job)
    if abandoned:
        logger.warning('Job %s looks stuck in processing since %s', job.job_id,
                       job.updated_at.isoformat())

    return {
        'job_id':     job.job_id,
        'status':     job.status,
        'result':     job.result,
        'error':      job.error,
        'abandoned':  abandoned,
        'updated_at': job.updated_at.isoformat(),
    }


@app.post('/jobs/{job_id}/recover')
async def recover_job(job_id: str, body: RecoverJobRequest, request: Request):
    """Operator override: force a stuck job into a terminal status."""
    lifecycle = get_lifecycle(request)
    job = await run_in_threadpool(
        lambda: lifecycle.recover(job_id, body.status, reason=body.reason, force=body.force)
    )
    return {'job': job.to_dict()}


@app.get('/debug/jobs')
async def debug_jobs(request: Request, limit: int = Query(default=10, ge=1, le=200)):
    """Recent jobs (newest first) and counts by status."""
    lifecycle = get_lifecycle(request)

    def _collect():
        records = lifecycle.store.recent(limit)
        counts = lifecycle.store.count_by_status()
        return records, counts

    records, counts = await run_in_threadpool(_collect)
    jobs = []
    for record in records:
        job = Job.from_record(record)
        params = job.parameters if isinstance(job.parameters, dict) else {}
        jobs.append({
            'job_id':      job.job_id,
            'storage_id':  job.storage_id,
            'status':      job.status,
            'destination': params.get('destination'),
            'error':       job.error,
            'abandoned':   lifecycle.is_abandoned(job),
            'created_at':  job.created_at.isoformat(),
            'updated_at':  job.updated_at.isoformat(),
        })
    return {'jobs': jobs, 'counts': counts}


if __name__ == '__main__':
    import uvicorn
    uvicorn.run('app:app', host='0.0.0.0', port=8000, reload=True)
