# clinic_scheduling/routers/slots.py
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from .. import schemas
from ..services.booking import SchedulingService
from ..services.intervals import TimeInterval
from ..services.recurrence import RecurrencePattern, SlotTemplate

router = APIRouter(prefix="/slots", tags=["slots"])


def get_service(request: Request) -> SchedulingService:
    return request.app.state.service


def _interval(req: schemas.IntervalIn) -> TimeInterval:
    return TimeInterval(req.date, req.start_time, req.end_time)


@router.post("", response_model=schemas.SlotOut, status_code=status.HTTP_201_CREATED)
def create_slot(req: schemas.SlotCreate, svc: SchedulingService = Depends(get_service)):
    return svc.create_slot(
        req.provider_id,
        _interval(req),
        req.kind,
        req.max_occupancy,
        created_by=req.created_by,
        instructions=req.instructions,
        location=req.location,
    )


@router.get("", response_model=list[schemas.SlotOut])
def list_slots(
    provider_id: str,
    start_date: date = Query(..., description="YYYY-MM-DD"),
    end_date: Optional[date] = Query(None, description="YYYY-MM-DD, defaults to start_date"),
    svc: SchedulingService = Depends(get_service),
):
    return svc.list_slots(provider_id, start_date, end_date)


@router.get("/available", response_model=list[schemas.SlotOut])
def available_slots(
    provider_id: str,
    day: date = Query(..., alias="date", description="YYYY-MM-DD"),
    svc: SchedulingService = Depends(get_service),
):
    return list(svc.find_available(provider_id, day))


@router.get("/summary", response_model=schemas.SummaryOut)
def schedule_summary(
    provider_id: str,
    start_date: date,
    end_date: Optional[date] = None,
    svc: SchedulingService = Depends(get_service),
):
    return svc.schedule_summary(provider_id, start_date, end_date)


@router.post("/quick-block", response_model=list[schemas.SlotOut])
def quick_block(req: schemas.QuickBlockRequest, svc: SchedulingService = Depends(get_service)):
    return svc.quick_block(req.provider_id, _interval(req), req.reason, req.actor, req.description)


@router.post("/recurring", response_model=schemas.ExpansionOut, status_code=status.HTTP_201_CREATED)
def create_recurring(req: schemas.RecurringRequest, svc: SchedulingService = Depends(get_service)):
    template = SlotTemplate(
        start_time=req.start_time,
        end_time=req.end_time,
        duration=req.duration,
        kind=req.kind,
        max_occupancy=req.max_occupancy,
        instructions=req.instructions,
        location=req.location,
    )
    pattern = RecurrencePattern(
        frequency=req.frequency,
        until=req.until,
        interval=req.interval,
        days_of_week=req.days_of_week,
        exceptions=req.exceptions,
    )
    result = svc.create_recurring_slots(req.provider_id, template, req.start_date, pattern, req.created_by)
    return schemas.ExpansionOut(
        series_id=result.series_id,
        created=[schemas.SlotOut.model_validate(s) for s in result.created],
        skipped=[schemas.SkippedOut(date=s.date, reason=s.reason, code=s.code) for s in result.skipped],
    )


@router.delete("/series/{series_id}", response_model=schemas.SeriesDeleteOut)
def delete_series(series_id: int, actor: Optional[str] = None, svc: SchedulingService = Depends(get_service)):
    return svc.delete_series(series_id, actor)


@router.get("/{slot_id}", response_model=schemas.SlotOut)
def get_slot(slot_id: int, svc: SchedulingService = Depends(get_service)):
    return svc.get_slot(slot_id)


@router.post("/{slot_id}/block", response_model=schemas.SlotOut)
def block_slot(slot_id: int, req: schemas.BlockRequest, svc: SchedulingService = Depends(get_service)):
    return svc.block_slot(slot_id, req.reason, req.actor, req.description)


@router.post("/{slot_id}/unblock", response_model=schemas.SlotOut)
def unblock_slot(slot_id: int, req: schemas.ActorIn, svc: SchedulingService = Depends(get_service)):
    return svc.unblock_slot(slot_id, req.actor)


@router.post("/{slot_id}/cancel", response_model=schemas.SlotOut)
def cancel_slot(slot_id: int, req: schemas.ActorIn, svc: SchedulingService = Depends(get_service)):
    return svc.cancel_slot(slot_id, req.actor)


@router.delete("/{slot_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_slot(slot_id: int, actor: Optional[str] = None, svc: SchedulingService = Depends(get_service)):
    svc.delete_slot(slot_id, actor)
