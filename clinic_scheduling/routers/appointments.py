# clinic_scheduling/routers/appointments.py
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .. import models, schemas
from ..services.booking import SchedulingService
from ..services.intervals import TimeInterval
from .slots import get_service

router = APIRouter(prefix="/appointments", tags=["appointments"])


@router.post("", response_model=schemas.AppointmentOut, status_code=status.HTTP_201_CREATED)
def book(req: schemas.BookRequest, svc: SchedulingService = Depends(get_service)):
    return svc.book_appointment(
        req.provider_id,
        req.patient_id,
        TimeInterval(req.date, req.start_time, req.end_time),
        status=req.status,
        priority=req.priority,
        appointment_type=req.appointment_type,
        chief_complaint=req.chief_complaint,
        notes=req.notes,
    )


@router.get("", response_model=list[schemas.AppointmentOut])
def list_appointments(
    provider_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    statuses: Optional[list[models.AppointmentStatus]] = Query(None, alias="status"),
    svc: SchedulingService = Depends(get_service),
):
    return svc.list_appointments(provider_id, patient_id, start_date, end_date, statuses)


@router.get("/{appointment_id}", response_model=schemas.AppointmentOut)
def get_appointment(appointment_id: int, svc: SchedulingService = Depends(get_service)):
    return svc.get_appointment(appointment_id)


@router.post("/{appointment_id}/reschedule", response_model=schemas.AppointmentOut)
def reschedule(appointment_id: int, req: schemas.RescheduleRequest, svc: SchedulingService = Depends(get_service)):
    new_interval = TimeInterval(req.date, req.start_time, req.end_time)
    return svc.reschedule_appointment(appointment_id, new_interval, req.actor)


@router.post("/{appointment_id}/cancel", response_model=schemas.AppointmentOut)
def cancel(appointment_id: int, req: schemas.CancelRequest, svc: SchedulingService = Depends(get_service)):
    return svc.cancel_appointment(appointment_id, req.reason, req.actor)


@router.post("/{appointment_id}/settle-payment", response_model=schemas.AppointmentOut)
def settle_payment(appointment_id: int, req: schemas.ActorIn, svc: SchedulingService = Depends(get_service)):
    return svc.settle_payment(appointment_id, req.actor)


@router.post("/{appointment_id}/confirm", response_model=schemas.AppointmentOut)
def confirm(appointment_id: int, req: schemas.ActorIn, svc: SchedulingService = Depends(get_service)):
    return svc.confirm_appointment(appointment_id, req.actor)


@router.post("/{appointment_id}/start", response_model=schemas.AppointmentOut)
def start(appointment_id: int, req: schemas.ActorIn, svc: SchedulingService = Depends(get_service)):
    return svc.start_appointment(appointment_id, req.actor)


@router.post("/{appointment_id}/complete", response_model=schemas.AppointmentOut)
def complete(appointment_id: int, req: schemas.ActorIn, svc: SchedulingService = Depends(get_service)):
    return svc.complete_appointment(appointment_id, req.actor)


@router.post("/{appointment_id}/no-show", response_model=schemas.AppointmentOut)
def no_show(appointment_id: int, req: schemas.ActorIn, svc: SchedulingService = Depends(get_service)):
    return svc.mark_no_show(appointment_id, req.actor)
