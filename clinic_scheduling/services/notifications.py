# clinic_scheduling/services/notifications.py
"""
Notification subscriber. Delivery belongs to an external channel; here the
messages are composed and handed to `deliver`, which by default only logs
the recipient identifier.
"""
import logging
from typing import Callable, Optional

from .events import (
    AppointmentBooked, AppointmentCancelled, AppointmentConfirmed,
    AppointmentRescheduled, EventBus, PaymentSettled,
)

logger = logging.getLogger(__name__)

Deliver = Callable[[str, str], None]


def confirmation_message(event: AppointmentBooked) -> str:
    return (
        "Appointment booked\n"
        f"Date and time: {event.date.isoformat()} {event.start:%H:%M}\n"
        f"Status: {event.status}"
    )


def reschedule_message(event: AppointmentRescheduled) -> str:
    return (
        "Appointment rescheduled\n"
        f"Before: {event.old_date.isoformat()} {event.old_start:%H:%M}\n"
        f"Now: {event.new_date.isoformat()} {event.new_start:%H:%M}"
    )


def cancellation_message(event: AppointmentCancelled) -> str:
    body = "Appointment cancelled"
    if event.reason:
        body += f"\nReason: {event.reason}"
    return body


def _log_only(patient_id: str, body: str) -> None:
    # identifiers only, never message content
    logger.info("[NOTIFY] to=%s chars=%d", patient_id, len(body))


def register(bus: EventBus, deliver: Optional[Deliver] = None) -> None:
    """Subscribes the patient-facing notifications to `bus`."""
    send = deliver or _log_only

    bus.subscribe(AppointmentBooked, lambda e: send(e.patient_id, confirmation_message(e)))
    bus.subscribe(AppointmentRescheduled, lambda e: send(e.patient_id, reschedule_message(e)))
    bus.subscribe(AppointmentCancelled, lambda e: send(e.patient_id, cancellation_message(e)))
    bus.subscribe(PaymentSettled, lambda e: send(e.patient_id, "Payment received, your appointment is scheduled"))
    bus.subscribe(AppointmentConfirmed, lambda e: send(e.patient_id, "Appointment confirmed"))
