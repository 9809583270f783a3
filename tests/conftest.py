"""Shared fixtures: controllable clocks and an in-memory SQLite database."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base


class FakeClock:
    """Callable clock returning an aware UTC datetime that only moves when told."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMsClock:
    """Epoch-millisecond clock for the save lock."""

    def __init__(self, now_ms: int = 1_745_000_000_000):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, **kwargs) -> None:
        self.now_ms += int(timedelta(**kwargs).total_seconds() * 1000)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ms_clock() -> FakeMsClock:
    return FakeMsClock()


@pytest.fixture
def sqlite_engine():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(sqlite_engine):
    return sessionmaker(bind=sqlite_engine, autoflush=False, expire_on_commit=False)
