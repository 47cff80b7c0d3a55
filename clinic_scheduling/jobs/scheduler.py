import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import settings
from ..errors import SchedulingError
from ..services.booking import SchedulingService

logger = logging.getLogger(__name__)


def cleanup_pending_payments(service: SchedulingService, now: Optional[datetime] = None) -> int:
    """
    Cancels pending-payment appointments older than PENDING_PAYMENT_TTL_MIN.
    Returns how many were cancelled.
    """
    now = now or service.clock()
    cutoff = now - timedelta(minutes=settings.PENDING_PAYMENT_TTL_MIN)

    cancelled = 0
    for appointment_id in service.stale_pending_payments(cutoff):
        try:
            service.cancel_appointment(appointment_id, reason="payment not settled", actor="system")
            cancelled += 1
        except SchedulingError as e:
            # settled or cancelled meanwhile, or its calendar is busy; next run retries
            logger.info("Pending cleanup skipped appointment %s: %s", appointment_id, e.code)

    if cancelled:
        logger.info("Pending cleanup: cancelled %d appointment(s) older than %s", cancelled, cutoff)
    return cancelled


def start_scheduler(service: SchedulingService) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone=settings.TIMEZONE)
    scheduler.add_job(
        cleanup_pending_payments,
        IntervalTrigger(minutes=settings.CLEANUP_INTERVAL_MIN),
        args=[service],
        id="cleanup_pending_payments",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("Scheduler started: pending cleanup every %d min", settings.CLEANUP_INTERVAL_MIN)
    return scheduler
