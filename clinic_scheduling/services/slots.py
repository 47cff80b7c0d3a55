# clinic_scheduling/services/slots.py
"""
Slot Store: the bookable and blocked units of a provider's calendar.

Every method runs inside the caller's transaction; the partition lock for
(provider_id, date) is taken by the caller (see services/booking.py).
Status rules:
    occupancy > 0  -> BOOKED
    occupancy == 0 -> AVAILABLE | BLOCKED | CANCELLED | COMPLETED
"""
from __future__ import annotations
import logging
from collections import Counter, defaultdict
from datetime import date, datetime
from typing import Callable, Iterator, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models
from ..errors import InvalidArgument, InvalidInterval, InvalidTransition, NotFound, PastSlotError, SlotConflict, SlotUnavailable
from . import audit
from .intervals import TimeInterval, normalize, overlaps, validate

logger = logging.getLogger(__name__)

SlotStatus = models.SlotStatus


class AvailableSlots:
    """
    AVAILABLE, future slots of one provider-day ordered by start time,
    minus those overlapped by an active appointment (ad hoc bookings reserve
    no slot but still hold the time).
    Each iteration runs a fresh query, so the sequence can be walked again.
    """

    def __init__(
        self,
        session: Session,
        provider_id: str,
        day: date,
        clock: Callable[[], datetime],
        exclude_appointment_id: Optional[int] = None,
    ):
        self._session = session
        self.provider_id = provider_id
        self.day = day
        self._clock = clock
        self.exclude_appointment_id = exclude_appointment_id

    def _taken(self) -> List[TimeInterval]:
        stmt = select(models.Appointment).where(
            models.Appointment.provider_id == self.provider_id,
            models.Appointment.date == self.day,
            models.Appointment.status.in_(models.ACTIVE_STATUSES),
        )
        if self.exclude_appointment_id is not None:
            stmt = stmt.where(models.Appointment.id != self.exclude_appointment_id)
        return [a.interval for a in self._session.scalars(stmt)]

    def __iter__(self) -> Iterator[models.Slot]:
        now = self._clock()
        if self.day < now.date():
            return
        stmt = (
            select(models.Slot)
            .where(
                models.Slot.provider_id == self.provider_id,
                models.Slot.date == self.day,
                models.Slot.status == SlotStatus.AVAILABLE,
            )
            .order_by(models.Slot.start_time)
        )
        taken = self._taken()
        for slot in self._session.scalars(stmt):
            if slot.interval.start_datetime <= now:
                continue
            if any(overlaps(slot.interval, t) for t in taken):
                continue
            yield slot


class SlotStore:
    def __init__(self, session: Session, clock: Callable[[], datetime]):
        self.session = session
        self.clock = clock

    # ------------------ lookups ------------------

    def get(self, slot_id: int) -> models.Slot:
        slot = self.session.get(models.Slot, slot_id)
        if slot is None:
            raise NotFound(f"Slot {slot_id} not found", slot_id=slot_id)
        return slot

    def slots_on(self, provider_id: str, day: date) -> List[models.Slot]:
        stmt = (
            select(models.Slot)
            .where(models.Slot.provider_id == provider_id, models.Slot.date == day)
            .order_by(models.Slot.start_time)
        )
        return list(self.session.scalars(stmt))

    def find_overlapping(
        self,
        provider_id: str,
        interval: TimeInterval,
        exclude_slot_id: Optional[int] = None,
    ) -> List[models.Slot]:
        return [
            s for s in self.slots_on(provider_id, interval.date)
            if s.id != exclude_slot_id and overlaps(s.interval, interval)
        ]

    def find_available(
        self, provider_id: str, day: date, exclude_appointment_id: Optional[int] = None
    ) -> AvailableSlots:
        return AvailableSlots(self.session, provider_id, day, self.clock, exclude_appointment_id)

    def list_slots(self, provider_id: str, start_date: date, end_date: Optional[date] = None) -> List[models.Slot]:
        end_date = end_date or start_date
        stmt = (
            select(models.Slot)
            .where(
                models.Slot.provider_id == provider_id,
                models.Slot.date >= start_date,
                models.Slot.date <= end_date,
            )
            .order_by(models.Slot.date, models.Slot.start_time)
        )
        return list(self.session.scalars(stmt))

    # ------------------ creation ------------------

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
        series_id: Optional[int] = None,
    ) -> models.Slot:
        interval = validate(interval)
        if max_occupancy < 1:
            raise InvalidArgument("max_occupancy must be >= 1", field="max_occupancy", value=max_occupancy)

        if interval.start_datetime <= self.clock():
            raise PastSlotError("Cannot create slots in the past", interval=str(interval))

        clashing = self.find_overlapping(provider_id, interval)
        if clashing:
            raise SlotConflict(
                "Time slot conflicts with existing slots",
                interval=str(interval),
                conflicting_slot_ids=[s.id for s in clashing],
            )

        slot = models.Slot(
            provider_id=provider_id,
            date=interval.date,
            start_time=interval.start,
            end_time=interval.end,
            status=SlotStatus.AVAILABLE,
            kind=kind,
            max_occupancy=max_occupancy,
            current_occupancy=0,
            created_by=created_by,
            instructions=instructions,
            location=location,
            series_id=series_id,
        )
        self.session.add(slot)
        try:
            self.session.flush()
        except IntegrityError as e:
            # same bounds inserted by another writer
            raise SlotConflict("Slot with identical bounds already exists", interval=str(interval)) from e

        audit.record(self.session, "CREATE_SLOT", "slot", slot.id, provider_id, created_by, str(interval))
        logger.info("Slot created: id=%s provider=%s %s", slot.id, provider_id, interval)
        return slot

    # ------------------ blocking ------------------

    def block_slot(
        self,
        slot_id: int,
        reason: models.BlockReason,
        actor: Optional[str] = None,
        description: Optional[str] = None,
    ) -> models.Slot:
        reason = models.coerce(models.BlockReason, reason, "block reason")
        slot = self.get(slot_id)
        if slot.status == SlotStatus.BOOKED:
            raise InvalidTransition("Cannot block a slot that is already booked", slot_id=slot.id)
        if slot.status in (SlotStatus.COMPLETED, SlotStatus.CANCELLED):
            raise InvalidTransition(f"Cannot block a {slot.status.value} slot", slot_id=slot.id)

        if slot.status != SlotStatus.BLOCKED:
            slot.kind_before_block = slot.kind
        slot.status = SlotStatus.BLOCKED
        slot.kind = models.SlotKind.BLOCKED
        slot.block_reason = reason
        slot.block_description = description
        slot.blocked_by = actor
        slot.blocked_at = self.clock()

        audit.record(self.session, "BLOCK_SLOT", "slot", slot.id, slot.provider_id, actor, slot.block_reason.value)
        return slot

    def unblock_slot(self, slot_id: int, actor: Optional[str] = None) -> models.Slot:
        slot = self.get(slot_id)
        if slot.status != SlotStatus.BLOCKED:
            raise InvalidTransition("Slot is not currently blocked", slot_id=slot.id)

        slot.status = SlotStatus.AVAILABLE
        slot.kind = slot.kind_before_block or models.SlotKind.REGULAR
        slot.kind_before_block = None
        slot.block_reason = None
        slot.block_description = None
        slot.blocked_by = None
        slot.blocked_at = None

        audit.record(self.session, "UNBLOCK_SLOT", "slot", slot.id, slot.provider_id, actor)
        return slot

    def quick_block(
        self,
        provider_id: str,
        interval: TimeInterval,
        reason: models.BlockReason,
        actor: Optional[str] = None,
        description: Optional[str] = None,
    ) -> List[models.Slot]:
        """Blocks every AVAILABLE slot that overlaps `interval`; others are left alone."""
        reason = models.coerce(models.BlockReason, reason, "block reason")
        interval = normalize(interval)
        if interval.end <= interval.start:
            raise InvalidInterval("End time must be after start time", interval=str(interval))
        targets = [
            s for s in self.find_overlapping(provider_id, interval)
            if s.status == SlotStatus.AVAILABLE
        ]
        return [self.block_slot(s.id, reason, actor, description) for s in targets]

    # ------------------ capacity ------------------

    def reserve(self, slot_id: int, appointment_id: Optional[int] = None) -> models.Slot:
        slot = self.get(slot_id)
        if slot.status not in (SlotStatus.AVAILABLE, SlotStatus.BOOKED):
            raise SlotUnavailable(
                f"Slot is {slot.status.value}",
                slot_id=slot.id,
                status=slot.status.value,
                block_reason=slot.block_reason.value if slot.block_reason else None,
            )
        if slot.current_occupancy >= slot.max_occupancy:
            raise SlotUnavailable("Slot is at maximum capacity", slot_id=slot.id)

        slot.current_occupancy += 1
        slot.status = SlotStatus.BOOKED
        slot.ever_booked = True
        if slot.max_occupancy == 1:
            slot.appointment_id = appointment_id
        return slot

    def release(self, slot_id: int, appointment_id: Optional[int] = None) -> models.Slot:
        slot = self.get(slot_id)
        if slot.current_occupancy <= 0:
            raise InvalidTransition("Slot has no reservation to release", slot_id=slot.id)

        slot.current_occupancy -= 1
        if slot.current_occupancy == 0 and slot.status == SlotStatus.BOOKED:
            slot.status = SlotStatus.AVAILABLE
        if slot.appointment_id is not None and slot.appointment_id == appointment_id:
            slot.appointment_id = None
        return slot

    def complete(self, slot_id: int) -> models.Slot:
        """The visit happened: capacity is consumed, not returned to the pool."""
        slot = self.get(slot_id)
        if slot.current_occupancy <= 0:
            raise InvalidTransition("Slot has no reservation to complete", slot_id=slot.id)

        slot.current_occupancy -= 1
        if slot.current_occupancy == 0:
            slot.status = SlotStatus.COMPLETED
        return slot

    # ------------------ withdrawal ------------------

    def cancel_slot(self, slot_id: int, actor: Optional[str] = None) -> models.Slot:
        slot = self.get(slot_id)
        if slot.status in (SlotStatus.BOOKED, SlotStatus.COMPLETED):
            raise InvalidTransition(f"Cannot cancel a {slot.status.value} slot", slot_id=slot.id)
        slot.status = SlotStatus.CANCELLED
        audit.record(self.session, "CANCEL_SLOT", "slot", slot.id, slot.provider_id, actor)
        return slot

    def delete_slot(self, slot_id: int, actor: Optional[str] = None) -> None:
        slot = self.get(slot_id)
        if slot.ever_booked or slot.current_occupancy > 0:
            raise InvalidTransition("Slots that were ever booked cannot be deleted", slot_id=slot.id)
        audit.record(self.session, "DELETE_SLOT", "slot", slot.id, slot.provider_id, actor, str(slot.interval))
        self.session.delete(slot)
        self.session.flush()


def summarize(slots: List[models.Slot]) -> dict:
    """Counts by status, by kind and by date."""
    by_status = Counter(s.status.value for s in slots)
    by_kind = Counter(s.kind.value for s in slots)
    by_date: dict[str, int] = defaultdict(int)
    for s in slots:
        by_date[s.date.isoformat()] += 1
    return {
        "total": len(slots),
        "available": by_status.get(SlotStatus.AVAILABLE.value, 0),
        "booked": by_status.get(SlotStatus.BOOKED.value, 0),
        "blocked": by_status.get(SlotStatus.BLOCKED.value, 0),
        "completed": by_status.get(SlotStatus.COMPLETED.value, 0),
        "cancelled": by_status.get(SlotStatus.CANCELLED.value, 0),
        "by_kind": dict(by_kind),
        "by_date": dict(by_date),
    }
