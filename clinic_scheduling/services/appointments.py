# clinic_scheduling/services/appointments.py
"""
Appointment Store and its lifecycle state machine.

    pending-payment -> scheduled -> confirmed -> in-progress -> completed
    cancelled / no-show reachable before completion

Only `scheduled`, `confirmed` and `in-progress` hold calendar time. Moves
into that set (booking, settle_payment, reschedule) are admitted by the
Conflict Guard; this module never changes an appointment's interval.
"""
from __future__ import annotations
import logging
from datetime import date, datetime
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from .. import models
from ..errors import InvalidTransition, NotFound
from . import audit
from .intervals import TimeInterval
from .slots import SlotStore

logger = logging.getLogger(__name__)

S = models.AppointmentStatus

NON_TERMINAL: FrozenSet[S] = frozenset(set(S) - set(models.TERMINAL_STATUSES))

# action -> (allowed source states, target state); None keeps the current state
TRANSITIONS: Dict[str, Tuple[FrozenSet[S], Optional[S]]] = {
    "settle_payment": (frozenset({S.pending_payment}), S.scheduled),
    "confirm": (frozenset({S.scheduled}), S.confirmed),
    "start": (frozenset({S.confirmed}), S.in_progress),
    "complete": (frozenset({S.in_progress}), S.completed),
    "cancel": (NON_TERMINAL, S.cancelled),
    "mark_no_show": (frozenset({S.confirmed, S.in_progress}), S.no_show),
    "reschedule": (frozenset({S.pending_payment, S.scheduled, S.confirmed}), None),
}

INITIAL_STATES: FrozenSet[S] = frozenset({S.pending_payment, S.scheduled})


def check_transition(appt: models.Appointment, action: str) -> Optional[S]:
    """Returns the target state for `action` or raises InvalidTransition."""
    allowed, target = TRANSITIONS[action]
    if appt.status not in allowed:
        raise InvalidTransition(
            f"Cannot {action.replace('_', ' ')} an appointment that is {appt.status.value}",
            appointment_id=appt.id,
            status=appt.status.value,
            action=action,
        )
    return target


def holds_capacity(appt: models.Appointment) -> bool:
    return appt.slot_id is not None and appt.status in models.ACTIVE_STATUSES


class AppointmentStore:
    def __init__(self, session: Session, slots: SlotStore, clock: Callable[[], datetime]):
        self.session = session
        self.slots = slots
        self.clock = clock

    # ------------------ lookups ------------------

    def get(self, appointment_id: int) -> models.Appointment:
        appt = self.session.get(models.Appointment, appointment_id)
        if appt is None:
            raise NotFound(f"Appointment {appointment_id} not found", appointment_id=appointment_id)
        return appt

    def active_on(
        self,
        provider_id: str,
        day: date,
        exclude_appointment_id: Optional[int] = None,
    ) -> List[models.Appointment]:
        """Appointments of the provider on `day` that currently hold calendar time."""
        stmt = (
            select(models.Appointment)
            .where(
                models.Appointment.provider_id == provider_id,
                models.Appointment.date == day,
                models.Appointment.status.in_(models.ACTIVE_STATUSES),
            )
            .order_by(models.Appointment.start_time)
        )
        if exclude_appointment_id is not None:
            stmt = stmt.where(models.Appointment.id != exclude_appointment_id)
        return list(self.session.scalars(stmt))

    def list_appointments(
        self,
        provider_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        statuses: Optional[List[S]] = None,
    ) -> List[models.Appointment]:
        stmt = select(models.Appointment)
        if provider_id:
            stmt = stmt.where(models.Appointment.provider_id == provider_id)
        if patient_id:
            stmt = stmt.where(models.Appointment.patient_id == patient_id)
        if start_date:
            stmt = stmt.where(models.Appointment.date >= start_date)
        if end_date:
            stmt = stmt.where(models.Appointment.date <= end_date)
        if statuses:
            stmt = stmt.where(models.Appointment.status.in_(statuses))
        stmt = stmt.order_by(models.Appointment.date, models.Appointment.start_time, models.Appointment.id)
        return list(self.session.scalars(stmt))

    def pending_since(self, cutoff: datetime) -> List[models.Appointment]:
        stmt = (
            select(models.Appointment)
            .where(
                models.Appointment.status == S.pending_payment,
                models.Appointment.created_at < cutoff,
            )
            .order_by(models.Appointment.created_at)
        )
        return list(self.session.scalars(stmt))

    # ------------------ writes ------------------

    def create(
        self,
        provider_id: str,
        patient_id: str,
        interval: TimeInterval,
        status: S = S.scheduled,
        priority: models.Priority = models.Priority.normal,
        **metadata,
    ) -> models.Appointment:
        """Inserts the row. Admission (overlap, slot capacity) is the guard's job."""
        status = models.coerce(S, status, "status")
        if status not in INITIAL_STATES:
            raise InvalidTransition(f"Appointments cannot be created as {status.value}", status=status.value)
        if "appointment_type" in metadata:
            metadata["appointment_type"] = models.coerce(
                models.AppointmentType, metadata["appointment_type"], "appointment type"
            )

        appt = models.Appointment(
            provider_id=provider_id,
            patient_id=patient_id,
            date=interval.date,
            start_time=interval.start,
            end_time=interval.end,
            status=status,
            priority=models.coerce(models.Priority, priority, "priority"),
            created_at=self.clock(),
            **metadata,
        )
        self.session.add(appt)
        self.session.flush()
        audit.record(self.session, "BOOK_APPOINTMENT", "appointment", appt.id, provider_id, patient_id, str(interval))
        return appt

    def move(self, appt: models.Appointment, interval: TimeInterval) -> None:
        appt.date = interval.date
        appt.start_time = interval.start
        appt.end_time = interval.end

    def _apply(self, appt: models.Appointment, action: str, actor: Optional[str] = None) -> models.Appointment:
        target = check_transition(appt, action)
        previous = appt.status
        if target is not None:
            appt.status = target
        audit.record(
            self.session, action.upper(), "appointment", appt.id, appt.provider_id, actor,
            f"{previous.value} -> {appt.status.value}",
        )
        logger.info("Appointment %s: %s -> %s", appt.id, previous.value, appt.status.value)
        return appt

    def settle_payment(self, appt: models.Appointment, actor: Optional[str] = None) -> models.Appointment:
        return self._apply(appt, "settle_payment", actor)

    def confirm(self, appointment_id: int, actor: Optional[str] = None) -> models.Appointment:
        return self._apply(self.get(appointment_id), "confirm", actor)

    def start(self, appointment_id: int, actor: Optional[str] = None) -> models.Appointment:
        return self._apply(self.get(appointment_id), "start", actor)

    def complete(self, appointment_id: int, actor: Optional[str] = None) -> models.Appointment:
        appt = self.get(appointment_id)
        check_transition(appt, "complete")
        if holds_capacity(appt):
            self.slots.complete(appt.slot_id)
        return self._apply(appt, "complete", actor)

    def cancel(self, appointment_id: int, reason: Optional[str] = None, actor: Optional[str] = None) -> models.Appointment:
        appt = self.get(appointment_id)
        check_transition(appt, "cancel")
        if holds_capacity(appt):
            self.slots.release(appt.slot_id, appt.id)
        appt.cancellation_reason = reason
        appt.cancelled_by = actor
        appt.cancelled_at = self.clock()
        return self._apply(appt, "cancel", actor)

    def mark_no_show(self, appointment_id: int, actor: Optional[str] = None) -> models.Appointment:
        appt = self.get(appointment_id)
        check_transition(appt, "mark_no_show")
        if holds_capacity(appt):
            self.slots.release(appt.slot_id, appt.id)
        return self._apply(appt, "mark_no_show", actor)

    def record_reschedule(self, appt: models.Appointment, old_interval: TimeInterval, actor: Optional[str] = None) -> None:
        check_transition(appt, "reschedule")
        audit.record(
            self.session, "RESCHEDULE", "appointment", appt.id, appt.provider_id, actor,
            f"{old_interval} -> {appt.interval}",
        )
