"""Shared fixtures: a file-backed SQLite database per test and a fixed clock."""
from datetime import date, datetime, timedelta

import pytest

from clinic_scheduling.database import init_db, make_engine, make_session_factory
from clinic_scheduling.services.booking import SchedulingService
from clinic_scheduling.services.events import EventBus
from clinic_scheduling.services.intervals import TimeInterval

# Monday
MONDAY = date(2030, 1, 7)
NOW = datetime(2030, 1, 7, 8, 0)


class FixedClock:
    """Facility clock frozen at `now` until a test moves it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'scheduling.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def service(session_factory, clock, bus):
    return SchedulingService(session_factory, clock=clock, bus=bus, lock_timeout=5.0)


@pytest.fixture
def iv():
    """iv("09:00", "09:30") -> TimeInterval on MONDAY; pass day= for others."""

    def make(start: str, end: str, day: date = MONDAY) -> TimeInterval:
        return TimeInterval.from_strings(day, start, end)

    return make
