# clinic_scheduling/services/booking.py
"""
SchedulingService: the inbound operations of the scheduling core.

Each mutating call is one unit of work:

    partition lock(s) (provider_id, date)   in-process, bounded wait
      -> session + transaction
        -> advisory lock(s) on PostgreSQL
          -> stores / guard do check-then-act
      <- commit (or rollback on any error)
    <- locks released
    -> domain events published

Operations addressed by id first read the row's partition, then re-check it
once the lock is held; an appointment can move between partitions through
a concurrent reschedule.
"""
from __future__ import annotations
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Iterator, List, Optional

import pytz
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .. import models
from ..config import settings
from ..database import SessionLocal
from ..errors import InvalidTransition, NotFound, SchedulingConflict, SchedulingTimeout
from . import events as ev
from .appointments import AppointmentStore
from .events import EventBus
from .guard import ConflictGuard
from .intervals import TimeInterval
from .locks import PartitionKey, PartitionLocks, acquire_db_locks
from .recurrence import ExpansionResult, RecurrencePattern, RecurringSlotExpander, SlotTemplate, plan_dates
from .slots import SlotStore, summarize

logger = logging.getLogger(__name__)

# attempts to pin an appointment's partition before giving up
PARTITION_ATTEMPTS = 3


def facility_now() -> datetime:
    """Current facility-local time, naive."""
    return datetime.now(pytz.timezone(settings.TIMEZONE)).replace(tzinfo=None)


@dataclass
class UnitOfWork:
    session: Session
    slots: SlotStore
    appointments: AppointmentStore
    guard: ConflictGuard
    events: List[ev.Event] = field(default_factory=list)

    def emit(self, event: ev.Event) -> None:
        self.events.append(event)


class AvailabilityView:
    """
    Lazy, restartable view over a provider-day's free slots. Every iteration
    opens its own session and reflects the calendar at that moment.
    """

    def __init__(self, service: "SchedulingService", provider_id: str, day: date):
        self._service = service
        self.provider_id = provider_id
        self.day = day

    def __iter__(self) -> Iterator[models.Slot]:
        with self._service.session_factory() as session:
            store = SlotStore(session, self._service.clock)
            yield from store.find_available(self.provider_id, self.day)


def _booked_event(appt: models.Appointment) -> ev.AppointmentBooked:
    return ev.AppointmentBooked(
        appointment_id=appt.id,
        provider_id=appt.provider_id,
        patient_id=appt.patient_id,
        date=appt.date,
        start=appt.start_time,
        status=appt.status.value,
    )


class SchedulingService:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        locks: Optional[PartitionLocks] = None,
        bus: Optional[EventBus] = None,
        lock_timeout: Optional[float] = None,
        alternatives_limit: Optional[int] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock or facility_now
        self.locks = locks or PartitionLocks()
        self.bus = bus or EventBus()
        self.lock_timeout = settings.LOCK_TIMEOUT_SECONDS if lock_timeout is None else lock_timeout
        self.alternatives_limit = settings.ALTERNATIVES_LIMIT if alternatives_limit is None else alternatives_limit

    # ------------------ units of work ------------------

    def _stores(self, session: Session) -> UnitOfWork:
        slots = SlotStore(session, self.clock)
        appointments = AppointmentStore(session, slots, self.clock)
        guard = ConflictGuard(session, slots, appointments, self.clock, self.alternatives_limit)
        return UnitOfWork(session, slots, appointments, guard)

    @contextmanager
    def _unit_of_work(self, *keys: PartitionKey) -> Iterator[UnitOfWork]:
        with self.locks.hold(keys, self.lock_timeout):
            session = self.session_factory()
            uow = self._stores(session)
            try:
                with session.begin():
                    acquire_db_locks(session, keys, self.lock_timeout)
                    yield uow
            except StaleDataError as e:
                logger.warning("Concurrent slot update detected: partitions=%s", keys)
                raise SchedulingConflict("Calendar changed concurrently, try again") from e
            finally:
                session.close()
        self.bus.publish_all(uow.events)

    def _slot_partition(self, slot_id: int) -> PartitionKey:
        with self.session_factory() as session:
            slot = session.get(models.Slot, slot_id)
            if slot is None:
                raise NotFound(f"Slot {slot_id} not found", slot_id=slot_id)
            return (slot.provider_id, slot.date)

    def _appointment_partition(self, appointment_id: int) -> PartitionKey:
        with self.session_factory() as session:
            appt = session.get(models.Appointment, appointment_id)
            if appt is None:
                raise NotFound(f"Appointment {appointment_id} not found", appointment_id=appointment_id)
            return (appt.provider_id, appt.date)

    @contextmanager
    def _slot_unit(self, slot_id: int) -> Iterator[UnitOfWork]:
        # slots never change partition
        with self._unit_of_work(self._slot_partition(slot_id)) as uow:
            yield uow

    @contextmanager
    def _appointment_unit(self, appointment_id: int, also_on: Optional[date] = None):
        """
        Yields (uow, appointment) with the appointment's current partition
        locked, plus (provider, also_on) when given.
        """
        for _ in range(PARTITION_ATTEMPTS):
            key = self._appointment_partition(appointment_id)
            keys = [key] if also_on is None else [key, (key[0], also_on)]
            with self._unit_of_work(*keys) as uow:
                appt = uow.appointments.get(appointment_id)
                if (appt.provider_id, appt.date) == key:
                    yield uow, appt
                    return
            logger.info("Appointment %s moved while waiting for its lock, retrying", appointment_id)
        raise SchedulingTimeout("Appointment keeps moving, try again", appointment_id=appointment_id)

    # ------------------ slots ------------------

    def create_slot(
        self,
        provider_id: str,
        interval: TimeInterval,
        kind: models.SlotKind = models.SlotKind.REGULAR,
        max_occupancy: int = 1,
        *,
        created_by: Optional[str] = None,
        instructions: Optional[str] = None,
        location: Optional[str] = None,
    ) -> models.Slot:
        with self._unit_of_work((provider_id, interval.date)) as uow:
            slot = uow.slots.create_slot(
                provider_id, interval, models.coerce(models.SlotKind, kind, "slot kind"), max_occupancy,
                created_by=created_by, instructions=instructions, location=location,
            )
            uow.emit(ev.SlotCreated(slot.id, provider_id, slot.date, slot.start_time, slot.end_time))
        return slot

    def block_slot(
        self,
        slot_id: int,
        reason: models.BlockReason,
        actor: Optional[str] = None,
        description: Optional[str] = None,
    ) -> models.Slot:
        with self._slot_unit(slot_id) as uow:
            slot = uow.slots.block_slot(slot_id, reason, actor, description)
            uow.emit(ev.SlotBlocked(slot.id, slot.provider_id, slot.block_reason.value, actor))
        logger.info("Slot %s blocked: reason=%s", slot_id, slot.block_reason.value)
        return slot

    def unblock_slot(self, slot_id: int, actor: Optional[str] = None) -> models.Slot:
        with self._slot_unit(slot_id) as uow:
            slot = uow.slots.unblock_slot(slot_id, actor)
            uow.emit(ev.SlotUnblocked(slot.id, slot.provider_id, actor))
        logger.info("Slot %s unblocked", slot_id)
        return slot

    def quick_block(
        self,
        provider_id: str,
        interval: TimeInterval,
        reason: models.BlockReason,
        actor: Optional[str] = None,
        description: Optional[str] = None,
    ) -> List[models.Slot]:
        with self._unit_of_work((provider_id, interval.date)) as uow:
            blocked = uow.slots.quick_block(provider_id, interval, reason, actor, description)
            for slot in blocked:
                uow.emit(ev.SlotBlocked(slot.id, provider_id, slot.block_reason.value, actor))
        logger.info("Quick block: provider=%s %s blocked=%d", provider_id, interval, len(blocked))
        return blocked

    def cancel_slot(self, slot_id: int, actor: Optional[str] = None) -> models.Slot:
        with self._slot_unit(slot_id) as uow:
            slot = uow.slots.cancel_slot(slot_id, actor)
            uow.emit(ev.SlotCancelled(slot.id, slot.provider_id, actor))
        return slot

    def delete_slot(self, slot_id: int, actor: Optional[str] = None) -> None:
        with self._slot_unit(slot_id) as uow:
            uow.slots.delete_slot(slot_id, actor)
        logger.info("Slot %s deleted", slot_id)

    # ------------------ recurring slots ------------------

    def create_recurring_slots(
        self,
        provider_id: str,
        template: SlotTemplate,
        start_date: date,
        pattern: RecurrencePattern,
        created_by: Optional[str] = None,
    ) -> ExpansionResult:
        """
        Partial success: each date is its own unit of work, so a conflict or a
        busy partition on one date is reported in `skipped` and the rest go on.
        Malformed templates or patterns fail the whole call before anything
        is written.
        """
        first = template.interval_on(start_date)
        pattern.check(start_date)
        dates, skipped = plan_dates(start_date, pattern)
        if not dates:
            logger.info(
                "Recurring slots: nothing to create for provider=%s (%s from %s until %s)",
                provider_id, pattern.frequency.value, start_date, pattern.until,
            )
            return ExpansionResult(skipped=skipped)

        with self.session_factory() as session, session.begin():
            series = models.RecurringSeries(
                provider_id=provider_id,
                frequency=pattern.frequency,
                interval=pattern.interval,
                days_of_week=sorted(int(d) for d in pattern.days_of_week),
                start_date=start_date,
                until=pattern.until,
                exceptions=sorted(d.isoformat() for d in pattern.exceptions),
                start_time=first.start,
                end_time=first.end,
                kind=template.kind,
                max_occupancy=template.max_occupancy,
                created_by=created_by,
                created_at=self.clock(),
            )
            session.add(series)
            session.flush()
            series_id = series.id

        def create_one(interval: TimeInterval) -> models.Slot:
            with self._unit_of_work((provider_id, interval.date)) as uow:
                return uow.slots.create_slot(
                    provider_id, interval, template.kind, template.max_occupancy,
                    created_by=created_by,
                    instructions=template.instructions,
                    location=template.location,
                    series_id=series_id,
                )

        result = RecurringSlotExpander(create_one).run(template, start_date, pattern)
        result.series_id = series_id
        self.bus.publish(ev.RecurringSlotsCreated(series_id, provider_id, len(result.created), len(result.skipped)))
        return result

    def delete_series(self, series_id: int, actor: Optional[str] = None) -> dict:
        """
        Deletes the series' slots that were never booked; booked ones are kept
        and reported. The series row goes once it has no slots left.
        """
        with self.session_factory() as session:
            series = session.get(models.RecurringSeries, series_id)
            if series is None:
                raise NotFound(f"Series {series_id} not found", series_id=series_id)
            refs = [(s.id, s.provider_id, s.date) for s in series.slots]

        deleted: List[int] = []
        kept: List[int] = []
        for slot_id, provider_id, day in refs:
            try:
                with self._unit_of_work((provider_id, day)) as uow:
                    uow.slots.delete_slot(slot_id, actor)
                deleted.append(slot_id)
            except InvalidTransition:
                kept.append(slot_id)
            except NotFound:
                # removed since the series was read
                continue

        if not kept:
            with self.session_factory() as session, session.begin():
                series = session.get(models.RecurringSeries, series_id)
                if series is not None:
                    session.delete(series)

        logger.info("Series %s deleted: slots_deleted=%d slots_kept=%d", series_id, len(deleted), len(kept))
        return {"series_id": series_id, "deleted": deleted, "kept": kept}

    # ------------------ appointments ------------------

    def book_appointment(
        self,
        provider_id: str,
        patient_id: str,
        interval: TimeInterval,
        status: models.AppointmentStatus = models.AppointmentStatus.scheduled,
        priority: models.Priority = models.Priority.normal,
        **metadata,
    ) -> models.Appointment:
        with self._unit_of_work((provider_id, interval.date)) as uow:
            appt = uow.guard.book(provider_id, patient_id, interval, status=status, priority=priority, **metadata)
            uow.emit(_booked_event(appt))
        return appt

    def reschedule_appointment(
        self,
        appointment_id: int,
        new_interval: TimeInterval,
        actor: Optional[str] = None,
    ) -> models.Appointment:
        with self._appointment_unit(appointment_id, also_on=new_interval.date) as (uow, appt):
            old_date, old_start = appt.date, appt.start_time
            uow.guard.reschedule(appt, new_interval, actor)
            uow.emit(ev.AppointmentRescheduled(
                appt.id, appt.provider_id, appt.patient_id,
                old_date=old_date, old_start=old_start,
                new_date=appt.date, new_start=appt.start_time,
            ))
        return appt

    def cancel_appointment(
        self,
        appointment_id: int,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> models.Appointment:
        with self._appointment_unit(appointment_id) as (uow, appt):
            uow.guard.cancel(appt.id, reason, actor)
            uow.emit(ev.AppointmentCancelled(appt.id, appt.provider_id, appt.patient_id, reason=reason, actor=actor))
        return appt

    def settle_payment(self, appointment_id: int, actor: Optional[str] = None) -> models.Appointment:
        with self._appointment_unit(appointment_id) as (uow, appt):
            uow.guard.settle_payment(appt, actor)
            uow.emit(ev.PaymentSettled(appt.id, appt.provider_id, appt.patient_id))
        return appt

    def confirm_appointment(self, appointment_id: int, actor: Optional[str] = None) -> models.Appointment:
        with self._appointment_unit(appointment_id) as (uow, appt):
            uow.appointments.confirm(appt.id, actor)
            uow.emit(ev.AppointmentConfirmed(appt.id, appt.provider_id, appt.patient_id))
        return appt

    def start_appointment(self, appointment_id: int, actor: Optional[str] = None) -> models.Appointment:
        with self._appointment_unit(appointment_id) as (uow, appt):
            uow.appointments.start(appt.id, actor)
            uow.emit(ev.AppointmentStarted(appt.id, appt.provider_id, appt.patient_id))
        return appt

    def complete_appointment(self, appointment_id: int, actor: Optional[str] = None) -> models.Appointment:
        with self._appointment_unit(appointment_id) as (uow, appt):
            uow.appointments.complete(appt.id, actor)
            uow.emit(ev.AppointmentCompleted(appt.id, appt.provider_id, appt.patient_id))
        return appt

    def mark_no_show(self, appointment_id: int, actor: Optional[str] = None) -> models.Appointment:
        with self._appointment_unit(appointment_id) as (uow, appt):
            uow.guard.mark_no_show(appt.id, actor)
            uow.emit(ev.AppointmentNoShow(appt.id, appt.provider_id, appt.patient_id))
        return appt

    # ------------------ reads ------------------

    def find_available(self, provider_id: str, day: date) -> AvailabilityView:
        """Free, bookable slots; ad hoc appointments hide the slots they overlap."""
        return AvailabilityView(self, provider_id, day)

    def get_slot(self, slot_id: int) -> models.Slot:
        with self.session_factory() as session:
            return SlotStore(session, self.clock).get(slot_id)

    def list_slots(self, provider_id: str, start_date: date, end_date: Optional[date] = None) -> List[models.Slot]:
        with self.session_factory() as session:
            return SlotStore(session, self.clock).list_slots(provider_id, start_date, end_date)

    def schedule_summary(self, provider_id: str, start_date: date, end_date: Optional[date] = None) -> dict:
        out = summarize(self.list_slots(provider_id, start_date, end_date))
        out["provider_id"] = provider_id
        return out

    def get_appointment(self, appointment_id: int) -> models.Appointment:
        with self.session_factory() as session:
            return self._stores(session).appointments.get(appointment_id)

    def list_appointments(
        self,
        provider_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        statuses: Optional[List[models.AppointmentStatus]] = None,
    ) -> List[models.Appointment]:
        with self.session_factory() as session:
            return self._stores(session).appointments.list_appointments(
                provider_id, patient_id, start_date, end_date, statuses
            )

    def stale_pending_payments(self, cutoff: datetime) -> List[int]:
        """Ids of pending-payment appointments created before `cutoff`."""
        with self.session_factory() as session:
            return [a.id for a in self._stores(session).appointments.pending_since(cutoff)]
