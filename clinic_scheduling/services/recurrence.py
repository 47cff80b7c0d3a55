# clinic_scheduling/services/recurrence.py
"""
Recurring Slot Expander

Turns a slot template plus a RecurrencePattern into concrete slots, one
date at a time. A failure on one date (an existing slot, a date already in
the past) is recorded and the batch goes on: months of generation must not
fail wholesale because of one pre-existing slot.
"""
from __future__ import annotations
import enum
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable, FrozenSet, Iterator, List, Optional, Tuple

from dateutil.relativedelta import relativedelta

from .. import models
from ..errors import InvalidArgument, InvalidInterval, SchedulingError
from .intervals import TimeInterval, validate

logger = logging.getLogger(__name__)

Frequency = models.Frequency


class Weekday(enum.IntEnum):
    MON = 0
    TUE = 1
    WED = 2
    THU = 3
    FRI = 4
    SAT = 5
    SUN = 6


@dataclass(frozen=True)
class RecurrencePattern:
    frequency: Frequency
    until: date
    interval: int = 1
    days_of_week: FrozenSet[Weekday] = frozenset()
    exceptions: FrozenSet[date] = frozenset()

    def __post_init__(self):
        # accept plain iterables/ints from callers
        object.__setattr__(self, "frequency", models.coerce(Frequency, self.frequency, "frequency"))
        object.__setattr__(
            self, "days_of_week", frozenset(models.coerce(Weekday, d, "weekday") for d in self.days_of_week)
        )
        object.__setattr__(self, "exceptions", frozenset(self.exceptions))

    def check(self, start_date: date) -> None:
        if self.interval < 1:
            raise InvalidInterval("Recurrence interval must be >= 1", interval=self.interval)
        if self.until < start_date:
            raise InvalidInterval(
                "Recurrence end date is before its start date",
                start_date=start_date.isoformat(),
                until=self.until.isoformat(),
            )
        if self.frequency == Frequency.WEEKLY and not self.days_of_week:
            raise InvalidInterval("WEEKLY recurrence needs at least one weekday")


@dataclass(frozen=True)
class SlotTemplate:
    start_time: time
    end_time: Optional[time] = None
    duration: Optional[int] = None  # minutes
    kind: models.SlotKind = models.SlotKind.REGULAR
    max_occupancy: int = 1
    instructions: Optional[str] = None
    location: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "kind", models.coerce(models.SlotKind, self.kind, "slot kind"))

    def interval_on(self, day: date) -> TimeInterval:
        """The template placed on `day`; end_time wins, duration fills it in when absent."""
        if self.max_occupancy < 1:
            raise InvalidArgument(
                "max_occupancy must be >= 1", field="max_occupancy", value=self.max_occupancy
            )
        end = self.end_time
        if end is None:
            if not self.duration:
                raise InvalidInterval("Slot template needs an end time or a duration")
            return validate(TimeInterval.starts_at(datetime.combine(day, self.start_time), self.duration))

        interval = validate(TimeInterval(day, self.start_time, end))
        if self.duration is not None:
            minutes = int((interval.end_datetime - interval.start_datetime).total_seconds() // 60)
            if minutes != self.duration:
                raise InvalidInterval(
                    f"Template duration {self.duration} does not match {interval.start:%H:%M}-{interval.end:%H:%M}"
                )
        return interval


@dataclass(frozen=True)
class SkippedDate:
    date: date
    reason: str
    code: str


@dataclass
class ExpansionResult:
    created: List[models.Slot] = field(default_factory=list)
    skipped: List[SkippedDate] = field(default_factory=list)
    series_id: Optional[int] = None

    @property
    def created_dates(self) -> List[date]:
        return [s.date for s in self.created]

    @property
    def skipped_dates(self) -> List[date]:
        return [s.date for s in self.skipped]


def candidate_dates(start_date: date, pattern: RecurrencePattern) -> Iterator[date]:
    """
    Dates from start_date to pattern.until inclusive produced by the
    frequency, before exceptions are applied.

    DAILY   every `interval` days
    WEEKLY  days whose weekday is in days_of_week, in every `interval`-th
            week counted from the week of start_date
    MONTHLY every `interval` months on start_date's day of month; months
            that lack that day (e.g. the 31st) are skipped
    """
    pattern.check(start_date)

    if pattern.frequency == Frequency.DAILY:
        current = start_date
        step = timedelta(days=pattern.interval)
        while current <= pattern.until:
            yield current
            current += step

    elif pattern.frequency == Frequency.WEEKLY:
        week_zero = start_date - timedelta(days=start_date.weekday())
        current = start_date
        while current <= pattern.until:
            week_index = (current - week_zero).days // 7
            if current.weekday() in pattern.days_of_week and week_index % pattern.interval == 0:
                yield current
            current += timedelta(days=1)

    elif pattern.frequency == Frequency.MONTHLY:
        k = 0
        while True:
            current = start_date + relativedelta(months=k * pattern.interval)
            if current > pattern.until:
                break
            if current.day == start_date.day:
                yield current
            k += 1


def plan_dates(start_date: date, pattern: RecurrencePattern) -> Tuple[List[date], List[SkippedDate]]:
    """Candidate dates split into the ones to create and the exceptions to skip."""
    dates: List[date] = []
    skipped: List[SkippedDate] = []
    for day in candidate_dates(start_date, pattern):
        if day in pattern.exceptions:
            skipped.append(SkippedDate(day, "Date listed as an exception", "exception"))
        else:
            dates.append(day)
    return dates, skipped


class RecurringSlotExpander:
    """
    Drives slot creation for a pattern. `create_slot` receives the interval
    for one date and returns the created slot or raises a SchedulingError;
    the caller decides how that single creation is made atomic.
    """

    def __init__(self, create_slot: Callable[[TimeInterval], models.Slot]):
        self._create_slot = create_slot

    def run(self, template: SlotTemplate, start_date: date, pattern: RecurrencePattern) -> ExpansionResult:
        # a malformed template fails the whole call, not every date
        template.interval_on(start_date)

        dates, skipped = plan_dates(start_date, pattern)
        result = ExpansionResult(skipped=skipped)
        for day in dates:
            try:
                interval = template.interval_on(day)
                result.created.append(self._create_slot(interval))
            except SchedulingError as e:
                logger.info("Recurring slot skipped: date=%s code=%s", day, e.code)
                result.skipped.append(SkippedDate(day, e.message, e.code))
        result.skipped.sort(key=lambda s: s.date)

        logger.info(
            "Recurring expansion: created=%d skipped=%d (%s from %s until %s)",
            len(result.created), len(result.skipped),
            pattern.frequency.value, start_date, pattern.until,
        )
        return result
