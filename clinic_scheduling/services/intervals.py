# clinic_scheduling/services/intervals.py
"""
Half-open time ranges [start, end) inside a single calendar day.

Pure helpers, no I/O. Two intervals that merely touch (one ends at 10:00,
the other starts at 10:00) do not overlap.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import date, time, datetime, timedelta
from typing import Union

from dateutil import parser as dtparser

from ..config import settings
from ..errors import InvalidInterval


@dataclass(frozen=True, order=True)
class TimeInterval:
    date: date
    start: time
    end: time

    @classmethod
    def from_strings(cls, day: Union[date, str], start: str, end: str) -> "TimeInterval":
        """Builds an interval from 'YYYY-MM-DD' and 'HH:MM' strings."""
        try:
            d = day if isinstance(day, date) else dtparser.parse(day).date()
            s = dtparser.parse(start).time()
            e = dtparser.parse(end).time()
        except (ValueError, OverflowError) as e:
            raise InvalidInterval(f"Unparseable interval: {day} {start}-{end}") from e
        return cls(d, _trim(s), _trim(e))

    @classmethod
    def starts_at(cls, start: datetime, minutes: int) -> "TimeInterval":
        """Interval of `minutes` beginning at `start`; it must not cross midnight."""
        end = start + timedelta(minutes=minutes)
        if end.date() != start.date():
            raise InvalidInterval("Interval cannot span midnight", start=start.isoformat(), minutes=minutes)
        return cls(start.date(), _trim(start.time()), _trim(end.time()))

    @property
    def start_datetime(self) -> datetime:
        return datetime.combine(self.date, self.start)

    @property
    def end_datetime(self) -> datetime:
        return datetime.combine(self.date, self.end)

    def __str__(self) -> str:
        return f"{self.date.isoformat()} {self.start:%H:%M}-{self.end:%H:%M}"


def _trim(t: time) -> time:
    # seconds/microseconds and tzinfo are not part of an interval
    return time(t.hour, t.minute)


def duration_minutes(interval: TimeInterval) -> int:
    return int((interval.end_datetime - interval.start_datetime).total_seconds() // 60)


def overlaps(a: TimeInterval, b: TimeInterval) -> bool:
    return a.date == b.date and a.start < b.end and b.start < a.end


def contains(outer: TimeInterval, inner: TimeInterval) -> bool:
    return outer.date == inner.date and outer.start <= inner.start and inner.end <= outer.end


def normalize(interval: TimeInterval) -> TimeInterval:
    """Drops seconds and tzinfo from both bounds."""
    return TimeInterval(interval.date, _trim(interval.start), _trim(interval.end))


def validate(interval: TimeInterval) -> TimeInterval:
    """
    Raises InvalidInterval unless end > start and the duration falls inside
    [MIN_SLOT_MINUTES, MAX_SLOT_MINUTES]. Returns the interval with
    seconds dropped, so callers can use the result as the normalized form.
    """
    if not isinstance(interval, TimeInterval):
        raise InvalidInterval(f"Expected a TimeInterval, got {type(interval).__name__}")

    normalized = normalize(interval)
    if normalized.end <= normalized.start:
        raise InvalidInterval("End time must be after start time", interval=str(normalized))

    minutes = duration_minutes(normalized)
    if minutes < settings.MIN_SLOT_MINUTES or minutes > settings.MAX_SLOT_MINUTES:
        raise InvalidInterval(
            f"Duration must be between {settings.MIN_SLOT_MINUTES} and "
            f"{settings.MAX_SLOT_MINUTES} minutes (got {minutes})",
            interval=str(normalized),
        )
    return normalized


def shift(interval: TimeInterval, minutes: int) -> TimeInterval:
    """Moves the interval by `minutes` within its day."""
    delta = timedelta(minutes=minutes)
    start = interval.start_datetime + delta
    end = interval.end_datetime + delta
    if start.date() != interval.date or end.date() != interval.date:
        raise InvalidInterval("Shifted interval leaves its day", interval=str(interval), minutes=minutes)
    return TimeInterval(interval.date, start.time(), end.time())
