# clinic_scheduling/services/guard.py
"""
Conflict Guard: the only place that admits an appointment into calendar time.

Admission, for (provider_id, interval, exclude_appointment_id):
    1. validate the interval, refuse past starts and starts outside the
       booking window (MIN_ADVANCE_HOURS, MAX_ADVANCE_DAYS)
    2. load the provider's appointments holding time that day and test each
       with half-open overlap (start_new < end_old and start_old < end_new)
    3. cross-check the provider's slots over the interval: blocked,
       cancelled, completed or full slots refuse the request; an available
       slot that contains the interval is the one to reserve
    4. any conflict -> SchedulingConflict / SlotUnavailable, nothing written
    5. otherwise write the appointment and reserve capacity

It runs inside the caller's unit of work, which already holds the
(provider_id, date) lock and an open transaction, so steps 2-5 are one
atomic check-then-act. Priority never overrides a conflict.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from .. import models
from ..config import settings
from ..errors import OutsideBookingWindow, PastSlotError, SchedulingConflict, SlotUnavailable
from .appointments import AppointmentStore, check_transition, holds_capacity
from .intervals import TimeInterval, contains, overlaps, validate
from .slots import SlotStore

logger = logging.getLogger(__name__)

SlotStatus = models.SlotStatus
S = models.AppointmentStatus

# Slot states that make their time unbookable
CLOSED_SLOT_STATES = (SlotStatus.BLOCKED, SlotStatus.CANCELLED, SlotStatus.COMPLETED)


@dataclass
class Admission:
    interval: TimeInterval
    slot: Optional[models.Slot]


class ConflictGuard:
    def __init__(
        self,
        session: Session,
        slots: SlotStore,
        appointments: AppointmentStore,
        clock: Callable[[], datetime],
        alternatives_limit: int = 3,
    ):
        self.session = session
        self.slots = slots
        self.appointments = appointments
        self.clock = clock
        self.alternatives_limit = alternatives_limit

    # ------------------ admission ------------------

    def admit(
        self,
        provider_id: str,
        interval: TimeInterval,
        exclude_appointment_id: Optional[int] = None,
        check_window: bool = True,
    ) -> Admission:
        interval = validate(interval)
        now = self.clock()
        if interval.start_datetime <= now:
            raise PastSlotError("Appointments must start in the future", interval=str(interval))
        if check_window:
            self._check_window(interval, now)

        overlapping_slots = self.slots.find_overlapping(provider_id, interval)
        target = next((s for s in overlapping_slots if contains(s.interval, interval)), None)
        # a group slot shares its time between its own bookings; capacity governs those
        shared_slot_id = target.id if target is not None and target.max_occupancy > 1 else None

        conflicts = [
            a for a in self.appointments.active_on(provider_id, interval.date, exclude_appointment_id)
            if overlaps(a.interval, interval)
            and not (shared_slot_id is not None and a.slot_id == shared_slot_id)
        ]
        if conflicts:
            logger.info(
                "Scheduling conflict: provider=%s %s clashes with %s",
                provider_id, interval, [a.id for a in conflicts],
            )
            raise SchedulingConflict(
                "Provider is not available at the requested time",
                alternatives=self.suggest_alternatives(provider_id, interval, exclude_appointment_id),
                interval=str(interval),
                conflicting_appointment_ids=[a.id for a in conflicts],
            )

        for slot in overlapping_slots:
            if slot.status in CLOSED_SLOT_STATES:
                raise SlotUnavailable(
                    f"Requested time falls on a {slot.status.value} slot",
                    slot_id=slot.id,
                    status=slot.status.value,
                    block_reason=slot.block_reason.value if slot.block_reason else None,
                )
        if target is not None and target.current_occupancy >= target.max_occupancy:
            raise SlotUnavailable("Slot is at maximum capacity", slot_id=target.id)

        return Admission(interval, target)

    def _check_window(self, interval: TimeInterval, now: datetime) -> None:
        lead = interval.start_datetime - now
        if lead < timedelta(hours=settings.MIN_ADVANCE_HOURS):
            raise OutsideBookingWindow(
                f"Appointments must be booked at least {settings.MIN_ADVANCE_HOURS:g} hours in advance",
                interval=str(interval),
                min_advance_hours=settings.MIN_ADVANCE_HOURS,
            )
        if settings.MAX_ADVANCE_DAYS and lead > timedelta(days=settings.MAX_ADVANCE_DAYS):
            raise OutsideBookingWindow(
                f"Appointments cannot be booked more than {settings.MAX_ADVANCE_DAYS} days in advance",
                interval=str(interval),
                max_advance_days=settings.MAX_ADVANCE_DAYS,
            )

    def suggest_alternatives(
        self,
        provider_id: str,
        interval: TimeInterval,
        exclude_appointment_id: Optional[int] = None,
    ) -> List[dict]:
        """Free slots the same day; a courtesy, not a reservation."""
        if self.alternatives_limit <= 0:
            return []
        out = []
        for slot in self.slots.find_available(provider_id, interval.date, exclude_appointment_id):
            out.append({
                "slot_id": slot.id,
                "date": slot.date.isoformat(),
                "start": slot.start_time.strftime("%H:%M"),
                "end": slot.end_time.strftime("%H:%M"),
            })
            if len(out) >= self.alternatives_limit:
                break
        return out

    def _reserve(self, appt: models.Appointment, admission: Admission) -> None:
        if admission.slot is not None:
            self.slots.reserve(admission.slot.id, appt.id)
            appt.slot_id = admission.slot.id
        else:
            appt.slot_id = None

    # ------------------ operations ------------------

    def book(
        self,
        provider_id: str,
        patient_id: str,
        interval: TimeInterval,
        status: S = S.scheduled,
        priority: models.Priority = models.Priority.normal,
        **metadata,
    ) -> models.Appointment:
        """
        Admits and writes a new appointment. A `pending-payment` booking is
        checked the same way but reserves nothing until settle_payment.
        """
        admission = self.admit(provider_id, interval)
        appt = self.appointments.create(
            provider_id, patient_id, admission.interval, status=status, priority=priority, **metadata
        )
        if appt.status in models.ACTIVE_STATUSES:
            self._reserve(appt, admission)
        logger.info(
            "Appointment booked: id=%s provider=%s %s status=%s slot=%s",
            appt.id, provider_id, admission.interval, appt.status.value, appt.slot_id,
        )
        return appt

    def settle_payment(self, appt: models.Appointment, actor: Optional[str] = None) -> models.Appointment:
        check_transition(appt, "settle_payment")
        # the booking window was checked when the time was first requested
        admission = self.admit(appt.provider_id, appt.interval, exclude_appointment_id=appt.id, check_window=False)
        self.appointments.settle_payment(appt, actor)
        self._reserve(appt, admission)
        return appt

    def reschedule(
        self,
        appt: models.Appointment,
        new_interval: TimeInterval,
        actor: Optional[str] = None,
    ) -> models.Appointment:
        """
        Release-then-admit in one transaction: if admission of the new
        interval fails, the caller's rollback restores the old reservation.
        """
        check_transition(appt, "reschedule")
        old_interval = appt.interval
        if holds_capacity(appt):
            self.slots.release(appt.slot_id, appt.id)
            appt.slot_id = None

        admission = self.admit(appt.provider_id, new_interval, exclude_appointment_id=appt.id)
        self.appointments.move(appt, admission.interval)
        if appt.status in models.ACTIVE_STATUSES:
            self._reserve(appt, admission)
        self.appointments.record_reschedule(appt, old_interval, actor)
        logger.info("Appointment %s rescheduled: %s -> %s", appt.id, old_interval, admission.interval)
        return appt

    def cancel(self, appointment_id: int, reason: Optional[str] = None, actor: Optional[str] = None) -> models.Appointment:
        return self.appointments.cancel(appointment_id, reason, actor)

    def mark_no_show(self, appointment_id: int, actor: Optional[str] = None) -> models.Appointment:
        return self.appointments.mark_no_show(appointment_id, actor)
