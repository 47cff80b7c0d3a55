from __future__ import annotations
import datetime as dt
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import AppointmentStatus, AppointmentType, BlockReason, Frequency, Priority, SlotKind, SlotStatus


# ------------------ requests ------------------

class IntervalIn(BaseModel):
    date: dt.date
    start_time: dt.time
    end_time: dt.time


class SlotCreate(IntervalIn):
    provider_id: str
    kind: SlotKind = SlotKind.REGULAR
    max_occupancy: int = Field(default=1, ge=1)
    created_by: Optional[str] = None
    instructions: Optional[str] = None
    location: Optional[str] = None


class BlockRequest(BaseModel):
    reason: BlockReason
    actor: Optional[str] = None
    description: Optional[str] = None


class QuickBlockRequest(IntervalIn):
    provider_id: str
    reason: BlockReason
    actor: Optional[str] = None
    description: Optional[str] = None


class ActorIn(BaseModel):
    actor: Optional[str] = None


class RecurringRequest(BaseModel):
    provider_id: str
    start_date: dt.date
    until: dt.date
    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    days_of_week: list[Annotated[int, Field(ge=0, le=6)]] = Field(default_factory=list, description="0=Monday .. 6=Sunday")
    exceptions: list[dt.date] = Field(default_factory=list)
    start_time: dt.time
    end_time: Optional[dt.time] = None
    duration: Optional[int] = Field(default=None, description="minutes")
    kind: SlotKind = SlotKind.REGULAR
    max_occupancy: int = Field(default=1, ge=1)
    instructions: Optional[str] = None
    location: Optional[str] = None
    created_by: Optional[str] = None


class BookRequest(IntervalIn):
    provider_id: str
    patient_id: str
    status: AppointmentStatus = AppointmentStatus.scheduled
    priority: Priority = Priority.normal
    appointment_type: AppointmentType = AppointmentType.consultation
    chief_complaint: Optional[str] = None
    notes: Optional[str] = None


class RescheduleRequest(IntervalIn):
    actor: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None
    actor: Optional[str] = None


# ------------------ responses ------------------

class SlotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    provider_id: str
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    status: SlotStatus
    kind: SlotKind
    max_occupancy: int
    current_occupancy: int
    block_reason: Optional[BlockReason] = None
    block_description: Optional[str] = None
    series_id: Optional[int] = None
    instructions: Optional[str] = None
    location: Optional[str] = None


class AppointmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    provider_id: str
    patient_id: str
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    status: AppointmentStatus
    priority: Priority
    appointment_type: AppointmentType
    slot_id: Optional[int] = None
    chief_complaint: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[dt.datetime] = None


class SkippedOut(BaseModel):
    date: dt.date
    reason: str
    code: str


class ExpansionOut(BaseModel):
    series_id: Optional[int]
    created: list[SlotOut]
    skipped: list[SkippedOut]


class SeriesDeleteOut(BaseModel):
    series_id: int
    deleted: list[int]
    kept: list[int]


class SummaryOut(BaseModel):
    provider_id: str
    total: int
    available: int
    booked: int
    blocked: int
    completed: int
    cancelled: int
    by_kind: dict[str, int]
    by_date: dict[str, int]
