"""
database.py — SQLAlchemy engine and session management for the itinerary
jobs service.

Provides:
  engine       — the shared SQLAlchemy engine
  SessionLocal — sessionmaker bound to the engine
  get_db()     — FastAPI dependency that yields a session per request
  init_db()    — create tables at startup

All SQLAlchemy calls are synchronous. Route handlers and the generation
worker call them through starlette.concurrency.run_in_threadpool so the
event loop is never blocked.
"""

import logging
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session, sessionmaker

from models import Base
from settings import DATABASE_URL

logger = logging.getLogger(__name__)


def _safe_db_url(url: str) -> str:
    """
    Ensure PostgreSQL URLs use the postgresql:// dialect prefix.
    Some hosts still inject postgres://, which SQLAlchemy 2.x rejects.
    """
    if url.startswith('postgres://'):
        url = 'postgresql://' + url[len('postgres://'):]
    return url


def make_engine(url: str):
    """Build an engine; SQLite connections get a busy timeout and WAL mode."""
    url = _safe_db_url(url)
    connect_args: dict = {}
    if url.startswith('sqlite'):
        connect_args = {'timeout': 15, 'check_same_thread': False}

    eng = create_engine(url, connect_args=connect_args, pool_pre_ping=True)

    # WAL lets readers (job-status polls) proceed while the worker writes.
    if url.startswith('sqlite') and ':memory:' not in url:
        @event.listens_for(eng, 'connect')
        def _set_sqlite_wal(dbapi_conn, _connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute('PRAGMA journal_mode=WAL')
            cursor.close()

    return eng


engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,   # rows are read after commit from async handlers
)


def init_db(bind=None) -> None:
    """Create all tables. Called once at startup."""
    bind = bind or engine
    Base.metadata.create_all(bind)
    if str(bind.url).startswith('sqlite'):
        try:
            with bind.connect() as conn:
                mode = conn.execute(text('PRAGMA journal_mode')).scalar()
            logger.info('SQLite journal mode: %s', mode)
        except Exception as exc:
            logger.warning('Could not read SQLite journal mode: %s', exc)


def get_db() -> Generator[Session, None, None]:
    """
    Yield a SQLAlchemy session for the duration of a request, then close it.

    Usage:
        from fastapi import Depends
        from database import get_db

        async def my_route(db_session: Session = Depends(get_db)):
            ...
    """
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
