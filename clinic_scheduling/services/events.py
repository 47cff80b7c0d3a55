# clinic_scheduling/services/events.py
"""
Domain events, published after the unit of work that produced them commits.
Subscribers (notifications, audit sinks) never affect the outcome of the
operation: their failures are logged and dropped.
"""
from __future__ import annotations
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, time
from typing import Callable, Dict, List, Optional, Tuple, Type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    pass


# ------------------ slots ------------------

@dataclass(frozen=True)
class SlotCreated(Event):
    slot_id: int
    provider_id: str
    date: date
    start: time
    end: time


@dataclass(frozen=True)
class SlotBlocked(Event):
    slot_id: int
    provider_id: str
    reason: str
    actor: Optional[str] = None


@dataclass(frozen=True)
class SlotUnblocked(Event):
    slot_id: int
    provider_id: str
    actor: Optional[str] = None


@dataclass(frozen=True)
class SlotCancelled(Event):
    slot_id: int
    provider_id: str
    actor: Optional[str] = None


@dataclass(frozen=True)
class RecurringSlotsCreated(Event):
    series_id: int
    provider_id: str
    created: int
    skipped: int


# ------------------ appointments ------------------

@dataclass(frozen=True)
class AppointmentEvent(Event):
    appointment_id: int
    provider_id: str
    patient_id: str


@dataclass(frozen=True)
class AppointmentBooked(AppointmentEvent):
    date: Optional[date] = None
    start: Optional[time] = None
    status: str = "scheduled"


@dataclass(frozen=True)
class AppointmentRescheduled(AppointmentEvent):
    old_date: Optional[date] = None
    old_start: Optional[time] = None
    new_date: Optional[date] = None
    new_start: Optional[time] = None


@dataclass(frozen=True)
class AppointmentCancelled(AppointmentEvent):
    reason: Optional[str] = None
    actor: Optional[str] = None


@dataclass(frozen=True)
class PaymentSettled(AppointmentEvent):
    pass


@dataclass(frozen=True)
class AppointmentConfirmed(AppointmentEvent):
    pass


@dataclass(frozen=True)
class AppointmentStarted(AppointmentEvent):
    pass


@dataclass(frozen=True)
class AppointmentCompleted(AppointmentEvent):
    pass


@dataclass(frozen=True)
class AppointmentNoShow(AppointmentEvent):
    pass


Handler = Callable[[Event], None]


class EventBus:
    """In-process publish/subscribe keyed by event class (subclasses match too)."""

    def __init__(self):
        self._handlers: Dict[Type[Event], List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type[Event], handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def _handlers_for(self, event: Event) -> List[Tuple[Type[Event], Handler]]:
        return [
            (etype, h)
            for etype, handlers in list(self._handlers.items())
            if isinstance(event, etype)
            for h in handlers
        ]

    def publish(self, event: Event) -> None:
        for _, handler in self._handlers_for(event):
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, type(event).__name__)

    def publish_all(self, events: List[Event]) -> None:
        for event in events:
            self.publish(event)
