from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import (
    Integer, String, Date, Time, DateTime, Enum, ForeignKey, Boolean, Text, JSON,
    UniqueConstraint, Index,
)
import datetime as dt
import enum
from .database import Base
from .errors import InvalidArgument
from .services.intervals import TimeInterval


def _values(enum_cls):
    # persist the enum *value* ("pending-payment"), not the member name
    return [m.value for m in enum_cls]


class SlotStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    BLOCKED = "BLOCKED"
    BOOKED = "BOOKED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class SlotKind(str, enum.Enum):
    REGULAR = "REGULAR"
    EMERGENCY = "EMERGENCY"
    CONSULTATION = "CONSULTATION"
    FOLLOW_UP = "FOLLOW_UP"
    BLOCKED = "BLOCKED"


class BlockReason(str, enum.Enum):
    PERSONAL_TIME = "PERSONAL_TIME"
    MEETING = "MEETING"
    SURGERY = "SURGERY"
    EMERGENCY = "EMERGENCY"
    TRAINING = "TRAINING"
    VACATION = "VACATION"
    SICK_LEAVE = "SICK_LEAVE"
    ADMINISTRATIVE = "ADMINISTRATIVE"
    OTHER = "OTHER"


class Frequency(str, enum.Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class AppointmentStatus(str, enum.Enum):
    pending_payment = "pending-payment"
    scheduled = "scheduled"
    confirmed = "confirmed"
    in_progress = "in-progress"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no-show"


# Statuses that hold calendar time and take part in the overlap check
ACTIVE_STATUSES = (
    AppointmentStatus.scheduled,
    AppointmentStatus.confirmed,
    AppointmentStatus.in_progress,
)

TERMINAL_STATUSES = (
    AppointmentStatus.completed,
    AppointmentStatus.cancelled,
    AppointmentStatus.no_show,
)


class Priority(str, enum.Enum):
    low = "low"
    normal = "normal"
    high = "high"
    urgent = "urgent"


def coerce(enum_cls, value, field: str):
    """Enum member for `value`, or InvalidArgument naming the allowed values."""
    try:
        return enum_cls(value)
    except ValueError as e:
        raise InvalidArgument(
            f"Invalid {field}: {value!r}", field=field, allowed=_values(enum_cls)
        ) from e


class AppointmentType(str, enum.Enum):
    consultation = "consultation"
    follow_up = "follow-up"
    check_up = "check-up"
    emergency = "emergency"
    routine = "routine"


# one named type shared by every column that stores a SlotKind
SLOT_KIND_TYPE = Enum(SlotKind, name="slot_kind")


class RecurringSeries(Base):
    __tablename__ = "recurring_series"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    frequency: Mapped[Frequency] = mapped_column(Enum(Frequency, name="recurrence_frequency"), nullable=False)
    interval: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # weekday numbers, 0=Monday..6=Sunday
    days_of_week: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    start_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    until: Mapped[dt.date] = mapped_column(Date, nullable=False)
    exceptions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    start_time: Mapped[dt.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[dt.time] = mapped_column(Time, nullable=False)
    kind: Mapped[SlotKind] = mapped_column(SLOT_KIND_TYPE, nullable=False, default=SlotKind.REGULAR)
    max_occupancy: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow)

    slots = relationship("Slot", back_populates="series")


class Slot(Base):
    __tablename__ = "slots"
    __table_args__ = (
        UniqueConstraint("provider_id", "date", "start_time", "end_time", name="uq_slots_provider_bounds"),
        Index("ix_slots_provider_date", "provider_id", "date"),
        Index("ix_slots_provider_status_date", "provider_id", "status", "date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[dt.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[dt.time] = mapped_column(Time, nullable=False)

    status: Mapped[SlotStatus] = mapped_column(
        Enum(SlotStatus, name="slot_status"), nullable=False, default=SlotStatus.AVAILABLE
    )
    kind: Mapped[SlotKind] = mapped_column(SLOT_KIND_TYPE, nullable=False, default=SlotKind.REGULAR)
    # kind to restore on unblock
    kind_before_block: Mapped[Optional[SlotKind]] = mapped_column(SLOT_KIND_TYPE, nullable=True)
    max_occupancy: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    current_occupancy: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    block_reason: Mapped[Optional[BlockReason]] = mapped_column(Enum(BlockReason, name="block_reason"), nullable=True)
    block_description: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    blocked_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    blocked_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)

    # Back-reference to the single active appointment (max_occupancy == 1 only).
    # Plain column: appointments.slot_id is the owning FK.
    appointment_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    ever_booked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    series_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("recurring_series.id", ondelete="SET NULL"), nullable=True, index=True
    )
    instructions: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    series = relationship("RecurringSeries", back_populates="slots")

    __mapper_args__ = {"version_id_col": version}

    @property
    def interval(self):
        return TimeInterval(self.date, self.start_time, self.end_time)

    @property
    def available_spots(self) -> int:
        return self.max_occupancy - self.current_occupancy


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_provider_date_status", "provider_id", "date", "status"),
        Index("ix_appointments_patient_date", "patient_id", "date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[dt.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[dt.time] = mapped_column(Time, nullable=False)

    status: Mapped[AppointmentStatus] = mapped_column(
        Enum(AppointmentStatus, name="appointment_status", values_callable=_values),
        default=AppointmentStatus.scheduled,
        nullable=False,
    )
    priority: Mapped[Priority] = mapped_column(
        Enum(Priority, name="appointment_priority", values_callable=_values),
        default=Priority.normal,
        nullable=False,
    )
    appointment_type: Mapped[AppointmentType] = mapped_column(
        Enum(AppointmentType, name="appointment_type", values_callable=_values),
        default=AppointmentType.consultation,
        nullable=False,
    )

    # Opaque to the core
    chief_complaint: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    payment_status: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    slot_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("slots.id", ondelete="SET NULL"), nullable=True
    )

    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    cancelled_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow)

    slot = relationship("Slot", foreign_keys=[slot_id])

    @property
    def interval(self):
        return TimeInterval(self.date, self.start_time, self.end_time)


class AuditEntry(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    action: Mapped[str] = mapped_column(String(40), index=True)
    resource_type: Mapped[str] = mapped_column(String(20))
    resource_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    provider_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    actor: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow)
