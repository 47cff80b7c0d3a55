"""Tests for admission: overlap, slot state, pending payments, reschedule and concurrency."""
import threading
from datetime import date

import pytest

from clinic_scheduling import models
from clinic_scheduling.config import settings
from clinic_scheduling.errors import (
    InvalidArgument, InvalidTransition, OutsideBookingWindow, PastSlotError, SchedulingConflict,
    SchedulingError, SlotUnavailable,
)

S = models.AppointmentStatus
P = "dr-garcia"
TUESDAY = date(2030, 1, 8)


class TestOverlap:
    def test_touching_appointments_do_not_conflict(self, service, iv):
        service.book_appointment(P, "patient-a", iv("09:00", "09:30"))
        service.book_appointment(P, "patient-b", iv("09:30", "10:00"))

    def test_one_minute_overlap_conflicts(self, service, iv):
        booked = service.book_appointment(P, "patient-a", iv("09:00", "09:30"))
        with pytest.raises(SchedulingConflict) as exc:
            service.book_appointment(P, "patient-b", iv("09:29", "10:00"))
        assert exc.value.details["conflicting_appointment_ids"] == [booked.id]

    def test_conflict_suggests_free_slots(self, service, iv):
        service.create_slot(P, iv("09:00", "09:30"))
        service.create_slot(P, iv("10:00", "10:30"))
        service.create_slot(P, iv("10:30", "11:00"))
        free = service.create_slot(P, iv("11:00", "11:30"))
        service.book_appointment(P, "patient-a", iv("09:00", "09:30"))
        # ad hoc booking straddling two free slots takes both out of the suggestions
        straddling = service.book_appointment(P, "patient-b", iv("10:20", "10:40"))
        assert straddling.slot_id is None

        with pytest.raises(SchedulingConflict) as exc:
            service.book_appointment(P, "patient-c", iv("09:00", "09:30"))
        assert exc.value.alternatives == [
            {"slot_id": free.id, "date": "2030-01-07", "start": "11:00", "end": "11:30"}
        ]
        assert exc.value.to_dict()["alternatives"] == exc.value.alternatives

    def test_priority_does_not_override(self, service, iv):
        service.book_appointment(P, "patient-a", iv("09:00", "09:30"))
        with pytest.raises(SchedulingConflict):
            service.book_appointment(P, "patient-b", iv("09:00", "09:30"), priority=models.Priority.urgent)

    def test_past_start_rejected(self, service, iv):
        with pytest.raises(PastSlotError):
            service.book_appointment(P, "patient-a", iv("07:30", "08:30"))

    def test_other_providers_are_independent(self, service, iv):
        service.book_appointment(P, "patient-a", iv("09:00", "09:30"))
        service.book_appointment("dr-lopez", "patient-b", iv("09:00", "09:30"))


class TestSlotState:
    def test_blocked_slot_unavailable(self, service, iv):
        slot = service.create_slot(P, iv("14:00", "14:30"))
        service.block_slot(slot.id, models.BlockReason.MEETING)
        with pytest.raises(SlotUnavailable) as exc:
            service.book_appointment(P, "patient-a", iv("14:00", "14:30"))
        assert exc.value.details["block_reason"] == "MEETING"

    def test_partial_overlap_with_blocked_slot(self, service, iv):
        slot = service.create_slot(P, iv("14:00", "14:30"))
        service.block_slot(slot.id, models.BlockReason.VACATION)
        with pytest.raises(SlotUnavailable):
            service.book_appointment(P, "patient-a", iv("14:20", "14:50"))

    def test_cancelled_slot_unavailable(self, service, iv):
        slot = service.create_slot(P, iv("14:00", "14:30"))
        service.cancel_slot(slot.id)
        with pytest.raises(SlotUnavailable):
            service.book_appointment(P, "patient-a", iv("14:00", "14:30"))

    def test_ad_hoc_booking_without_slot(self, service, iv):
        appt = service.book_appointment(P, "patient-a", iv("16:00", "16:45"))
        assert appt.slot_id is None
        assert appt.status == S.scheduled

    def test_booking_inside_longer_slot_reserves_it(self, service, iv):
        slot = service.create_slot(P, iv("09:00", "10:00"))
        appt = service.book_appointment(P, "patient-a", iv("09:00", "09:20"))
        assert appt.slot_id == slot.id
        with pytest.raises(SlotUnavailable):
            service.book_appointment(P, "patient-b", iv("09:20", "09:40"))


class TestPendingPayment:
    def test_pending_holds_no_time(self, service, iv):
        slot = service.create_slot(P, iv("09:00", "09:30"))
        pending = service.book_appointment(P, "patient-a", iv("09:00", "09:30"), status=S.pending_payment)
        assert pending.slot_id is None
        assert service.get_slot(slot.id).status == models.SlotStatus.AVAILABLE

        other = service.book_appointment(P, "patient-b", iv("09:00", "09:30"))
        assert other.slot_id == slot.id

    def test_settle_payment_reserves(self, service, iv):
        slot = service.create_slot(P, iv("09:00", "09:30"))
        pending = service.book_appointment(P, "patient-a", iv("09:00", "09:30"), status=S.pending_payment)
        settled = service.settle_payment(pending.id, actor="payments")
        assert settled.status == S.scheduled
        assert settled.slot_id == slot.id
        assert service.get_slot(slot.id).status == models.SlotStatus.BOOKED

    def test_settle_payment_after_time_was_taken(self, service, iv):
        pending = service.book_appointment(P, "patient-a", iv("09:00", "09:30"), status=S.pending_payment)
        service.book_appointment(P, "patient-b", iv("09:00", "09:30"))
        with pytest.raises(SchedulingConflict):
            service.settle_payment(pending.id)
        assert service.get_appointment(pending.id).status == S.pending_payment

    def test_settle_payment_only_from_pending(self, service, iv):
        appt = service.book_appointment(P, "patient-a", iv("09:00", "09:30"))
        with pytest.raises(InvalidTransition):
            service.settle_payment(appt.id)


class TestReschedule:
    def test_reschedule_to_other_slot(self, service, iv):
        old = service.create_slot(P, iv("09:00", "09:30"))
        new = service.create_slot(P, iv("11:00", "11:30"))
        appt = service.book_appointment(P, "patient-a", iv("09:00", "09:30"))

        moved = service.reschedule_appointment(appt.id, iv("11:00", "11:30"), actor="reception")

        assert moved.slot_id == new.id
        assert moved.interval == iv("11:00", "11:30")
        assert service.get_slot(old.id).status == models.SlotStatus.AVAILABLE
        assert service.get_slot(new.id).status == models.SlotStatus.BOOKED

    def test_failed_reschedule_keeps_original(self, service, iv):
        old = service.create_slot(P, iv("09:00", "09:30"))
        appt = service.book_appointment(P, "patient-a", iv("09:00", "09:30"))
        service.book_appointment(P, "patient-b", iv("10:00", "10:30"))

        with pytest.raises(SchedulingConflict):
            service.reschedule_appointment(appt.id, iv("10:15", "10:45"))

        unchanged = service.get_appointment(appt.id)
        assert unchanged.interval == iv("09:00", "09:30")
        assert unchanged.slot_id == old.id
        assert service.get_slot(old.id).current_occupancy == 1

    def test_reschedule_overlapping_itself(self, service, iv):
        appt = service.book_appointment(P, "patient-a", iv("09:00", "09:30"))
        moved = service.reschedule_appointment(appt.id, iv("09:10", "09:40"))
        assert moved.interval == iv("09:10", "09:40")

    def test_reschedule_across_days(self, service, iv):
        appt = service.book_appointment(P, "patient-a", iv("09:00", "09:30"))
        service.confirm_appointment(appt.id)
        moved = service.reschedule_appointment(appt.id, iv("09:00", "09:30", TUESDAY))
        assert moved.date == TUESDAY
        assert moved.status == S.confirmed
        assert service.list_appointments(provider_id=P, start_date=date(2030, 1, 7), end_date=date(2030, 1, 7)) == []

    def test_reschedule_in_progress_rejected(self, service, iv):
        appt = service.book_appointment(P, "patient-a", iv("09:00", "09:30"))
        service.confirm_appointment(appt.id)
        service.start_appointment(appt.id)
        with pytest.raises(InvalidTransition):
            service.reschedule_appointment(appt.id, iv("11:00", "11:30"))


class TestBookingWindow:
    """Lead time and horizon are measured from the facility clock (Mon 08:00)."""

    def test_minimum_lead_time(self, service, iv, monkeypatch):
        monkeypatch.setattr(settings, "MIN_ADVANCE_HOURS", 24)
        with pytest.raises(OutsideBookingWindow) as exc:
            service.book_appointment(P, "patient-a", iv("09:00", "09:30"))
        assert exc.value.code == "outside_booking_window"
        assert exc.value.details["min_advance_hours"] == 24

        # Tuesday 09:00 is 25 hours ahead
        appt = service.book_appointment(P, "patient-a", iv("09:00", "09:30", TUESDAY))
        assert appt.status == S.scheduled

    def test_maximum_horizon(self, service, iv):
        assert settings.MAX_ADVANCE_DAYS == 90
        with pytest.raises(OutsideBookingWindow) as exc:
            service.book_appointment(P, "patient-a", iv("09:00", "09:30", date(2030, 4, 8)))
        assert exc.value.details["max_advance_days"] == 90
        service.book_appointment(P, "patient-a", iv("09:00", "09:30", date(2030, 4, 5)))

    def test_zero_horizon_disables_the_limit(self, service, iv, monkeypatch):
        monkeypatch.setattr(settings, "MAX_ADVANCE_DAYS", 0)
        service.book_appointment(P, "patient-a", iv("09:00", "09:30", date(2030, 12, 2)))

    def test_reschedule_is_held_to_the_window(self, service, iv, monkeypatch):
        appt = service.book_appointment(P, "patient-a", iv("09:00", "09:30", TUESDAY))
        monkeypatch.setattr(settings, "MIN_ADVANCE_HOURS", 24)
        with pytest.raises(OutsideBookingWindow):
            service.reschedule_appointment(appt.id, iv("10:00", "10:30"))
        assert service.get_appointment(appt.id).date == TUESDAY

    def test_settle_payment_does_not_recheck_window(self, service, iv, clock, monkeypatch):
        monkeypatch.setattr(settings, "MIN_ADVANCE_HOURS", 24)
        pending = service.book_appointment(P, "patient-a", iv("09:00", "09:30", TUESDAY), status=S.pending_payment)
        clock.advance(hours=2)  # now 23 hours ahead
        assert service.settle_payment(pending.id).status == S.scheduled


class TestInvalidArguments:
    def test_unknown_status_and_priority(self, service, iv):
        with pytest.raises(InvalidArgument) as exc:
            service.book_appointment(P, "patient-a", iv("09:00", "09:30"), status="tentative")
        assert exc.value.details["field"] == "status"
        with pytest.raises(InvalidArgument) as exc:
            service.book_appointment(P, "patient-a", iv("09:00", "09:30"), priority="asap")
        assert exc.value.details["field"] == "priority"
        assert service.list_appointments(P) == []


class TestCancelThenRebook:
    def test_cancel_then_rebook_same_interval(self, service, iv):
        slot = service.create_slot(P, iv("09:00", "09:30"))
        first = service.book_appointment(P, "patient-a", iv("09:00", "09:30"))
        service.cancel_appointment(first.id)
        second = service.book_appointment(P, "patient-b", iv("09:00", "09:30"))
        assert second.slot_id == slot.id


class TestConcurrency:
    def test_concurrent_bookings_leave_one_winner(self, service, iv):
        slot = service.create_slot(P, iv("09:00", "09:30"))
        barrier = threading.Barrier(8)
        winners, losers, unexpected = [], [], []

        def attempt(n):
            barrier.wait()
            try:
                winners.append(service.book_appointment(P, f"patient-{n}", iv("09:00", "09:30")).id)
            except (SchedulingConflict, SlotUnavailable):
                losers.append(n)
            except Exception as e:  # pragma: no cover - reported below
                unexpected.append(e)

        threads = [threading.Thread(target=attempt, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert unexpected == []
        assert len(winners) == 1
        assert len(losers) == 7
        booked = service.get_slot(slot.id)
        assert booked.current_occupancy == 1
        assert booked.appointment_id == winners[0]

    def test_lock_timeout_surfaces_as_scheduling_error(self, service, iv):
        service.lock_timeout = 0.05
        key = (P, date(2030, 1, 7))
        with service.locks.hold([key], timeout=1):
            with pytest.raises(SchedulingError) as exc:
                service.book_appointment(P, "patient-a", iv("09:00", "09:30"))
        assert exc.value.code == "scheduling_timeout"
        assert service.list_appointments(provider_id=P) == []
