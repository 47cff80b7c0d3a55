"""Tests for recurrence date generation and recurring slot creation."""
from datetime import date, time

import pytest
from sqlalchemy import func, select

from clinic_scheduling import models
from clinic_scheduling.errors import InvalidArgument, InvalidInterval, NotFound
from clinic_scheduling.services.recurrence import (
    RecurrencePattern, SlotTemplate, Weekday, candidate_dates, plan_dates,
)

P = "dr-garcia"
MONDAY = date(2030, 1, 7)
F = models.Frequency


def series_count(session_factory) -> int:
    with session_factory() as session:
        return session.scalar(select(func.count()).select_from(models.RecurringSeries))


class TestCandidateDates:
    def test_weekly_mon_wed_over_four_weeks(self):
        pattern = RecurrencePattern(F.WEEKLY, until=date(2030, 2, 3), days_of_week={Weekday.MON, Weekday.WED})
        dates = list(candidate_dates(MONDAY, pattern))
        assert len(dates) == 8
        assert {d.weekday() for d in dates} == {0, 2}

    def test_weekly_every_other_week(self):
        pattern = RecurrencePattern(F.WEEKLY, until=date(2030, 2, 3), interval=2, days_of_week={Weekday.MON})
        assert list(candidate_dates(MONDAY, pattern)) == [date(2030, 1, 7), date(2030, 1, 21)]

    def test_weekly_start_mid_week(self):
        # starts on Wednesday: that week's Monday is already gone
        pattern = RecurrencePattern(F.WEEKLY, until=date(2030, 1, 20), days_of_week={0, 2})
        assert list(candidate_dates(date(2030, 1, 9), pattern)) == [
            date(2030, 1, 9), date(2030, 1, 14), date(2030, 1, 16),
        ]

    def test_daily_with_interval(self):
        pattern = RecurrencePattern(F.DAILY, until=date(2030, 1, 13), interval=3)
        assert list(candidate_dates(MONDAY, pattern)) == [
            date(2030, 1, 7), date(2030, 1, 10), date(2030, 1, 13),
        ]

    def test_monthly_skips_short_months(self):
        pattern = RecurrencePattern(F.MONTHLY, until=date(2030, 5, 31))
        assert list(candidate_dates(date(2030, 1, 31), pattern)) == [
            date(2030, 1, 31), date(2030, 3, 31), date(2030, 5, 31),
        ]

    def test_until_is_inclusive(self):
        pattern = RecurrencePattern(F.DAILY, until=MONDAY)
        assert list(candidate_dates(MONDAY, pattern)) == [MONDAY]

    @pytest.mark.parametrize(
        "pattern",
        [
            RecurrencePattern(F.DAILY, until=date(2030, 1, 6)),
            RecurrencePattern(F.DAILY, until=date(2030, 1, 10), interval=0),
            RecurrencePattern(F.WEEKLY, until=date(2030, 1, 31)),
        ],
    )
    def test_invalid_patterns(self, pattern):
        with pytest.raises(InvalidInterval):
            list(candidate_dates(MONDAY, pattern))

    def test_unknown_frequency_or_weekday(self):
        with pytest.raises(InvalidArgument) as exc:
            RecurrencePattern("HOURLY", until=date(2030, 1, 10))
        assert exc.value.details["field"] == "frequency"
        with pytest.raises(InvalidArgument):
            RecurrencePattern(F.WEEKLY, until=date(2030, 1, 10), days_of_week={7})

    def test_plan_dates_sets_exceptions_aside(self):
        pattern = RecurrencePattern(F.DAILY, until=date(2030, 1, 9), exceptions={date(2030, 1, 8)})
        dates, skipped = plan_dates(MONDAY, pattern)
        assert dates == [date(2030, 1, 7), date(2030, 1, 9)]
        assert [(s.date, s.code) for s in skipped] == [(date(2030, 1, 8), "exception")]


class TestSlotTemplate:
    def test_duration_fills_end(self):
        template = SlotTemplate(time(10, 0), duration=15)
        assert template.interval_on(MONDAY).end == time(10, 15)

    def test_mismatched_duration(self):
        with pytest.raises(InvalidInterval):
            SlotTemplate(time(10, 0), time(10, 30), duration=15).interval_on(MONDAY)

    def test_needs_end_or_duration(self):
        with pytest.raises(InvalidInterval):
            SlotTemplate(time(10, 0)).interval_on(MONDAY)

    def test_zero_capacity(self):
        with pytest.raises(InvalidArgument):
            SlotTemplate(time(10, 0), time(10, 30), max_occupancy=0).interval_on(MONDAY)

    def test_unknown_kind(self):
        with pytest.raises(InvalidArgument):
            SlotTemplate(time(10, 0), time(10, 30), kind="WALK_IN")


class TestCreateRecurringSlots:
    def test_weekly_creates_series(self, service):
        pattern = RecurrencePattern(F.WEEKLY, until=date(2030, 2, 3), days_of_week={Weekday.MON, Weekday.WED})
        result = service.create_recurring_slots(
            P, SlotTemplate(time(9, 0), time(9, 30), location="Room 2"), MONDAY, pattern, created_by="admin"
        )
        assert len(result.created) == 8
        assert result.skipped == []
        assert result.series_id is not None
        assert all(s.series_id == result.series_id for s in result.created)
        assert all(s.location == "Room 2" for s in result.created)

    def test_existing_slot_is_skipped_not_fatal(self, service, iv):
        service.create_slot(P, iv("10:00", "10:15", date(2030, 1, 8)))
        pattern = RecurrencePattern(F.DAILY, until=date(2030, 1, 10))
        result = service.create_recurring_slots(P, SlotTemplate(time(10, 0), time(10, 15)), MONDAY, pattern)

        assert result.created_dates == [date(2030, 1, 7), date(2030, 1, 9), date(2030, 1, 10)]
        assert [(s.date, s.code) for s in result.skipped] == [(date(2030, 1, 8), "slot_conflict")]

    def test_past_dates_are_skipped(self, service, clock):
        clock.advance(days=1)  # Tuesday 08:00
        pattern = RecurrencePattern(F.DAILY, until=date(2030, 1, 9))
        result = service.create_recurring_slots(P, SlotTemplate(time(7, 0), time(7, 30)), MONDAY, pattern)

        assert result.created_dates == [date(2030, 1, 9)]
        assert [s.code for s in result.skipped] == ["past_slot", "past_slot"]

    def test_bad_template_fails_whole_call(self, service):
        pattern = RecurrencePattern(F.DAILY, until=date(2030, 1, 10))
        with pytest.raises(InvalidInterval):
            service.create_recurring_slots(P, SlotTemplate(time(10, 0), time(9, 0)), MONDAY, pattern)
        assert service.list_slots(P, MONDAY, date(2030, 1, 10)) == []

    def test_zero_capacity_template_writes_nothing(self, service, session_factory):
        pattern = RecurrencePattern(F.DAILY, until=date(2030, 1, 10))
        with pytest.raises(InvalidArgument):
            service.create_recurring_slots(P, SlotTemplate(time(10, 0), time(10, 30), max_occupancy=0), MONDAY, pattern)
        assert series_count(session_factory) == 0
        assert service.list_slots(P, MONDAY, date(2030, 1, 10)) == []

    def test_no_matching_dates_writes_no_series(self, service, session_factory):
        # Monday to Friday never reaches a Saturday
        pattern = RecurrencePattern(F.WEEKLY, until=date(2030, 1, 11), days_of_week={Weekday.SAT})
        result = service.create_recurring_slots(P, SlotTemplate(time(9, 0), time(9, 30)), MONDAY, pattern)
        assert result.series_id is None
        assert result.created == []
        assert series_count(session_factory) == 0

    def test_only_exceptions_writes_no_series(self, service, session_factory):
        pattern = RecurrencePattern(
            F.DAILY, until=date(2030, 1, 8), exceptions={date(2030, 1, 7), date(2030, 1, 8)}
        )
        result = service.create_recurring_slots(P, SlotTemplate(time(9, 0), time(9, 30)), MONDAY, pattern)
        assert result.series_id is None
        assert result.skipped_dates == [date(2030, 1, 7), date(2030, 1, 8)]
        assert series_count(session_factory) == 0

    def test_delete_series_keeps_booked_slots(self, service, iv):
        pattern = RecurrencePattern(F.DAILY, until=date(2030, 1, 9))
        result = service.create_recurring_slots(P, SlotTemplate(time(9, 0), time(9, 30)), MONDAY, pattern)
        service.book_appointment(P, "patient-a", iv("09:00", "09:30", date(2030, 1, 8)))

        outcome = service.delete_series(result.series_id, actor="admin")

        kept = [s.id for s in result.created if s.date == date(2030, 1, 8)]
        assert outcome["kept"] == kept
        assert len(outcome["deleted"]) == 2
        assert [s.date for s in service.list_slots(P, MONDAY, date(2030, 1, 9))] == [date(2030, 1, 8)]

    def test_delete_missing_series(self, service):
        with pytest.raises(NotFound):
            service.delete_series(42)
