# clinic_scheduling/errors.py
"""
Error kinds returned by the scheduling core.

Every inbound operation either returns its value or raises one of these.
`code` is stable and is what the HTTP layer (or any other caller) keys on.
"""
from __future__ import annotations
from typing import Any, Optional


class SchedulingError(Exception):
    code = "scheduling_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        out = {"error": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class InvalidInterval(SchedulingError):
    code = "invalid_interval"


class PastSlotError(SchedulingError):
    code = "past_slot"


class SlotConflict(SchedulingError):
    code = "slot_conflict"


class SchedulingConflict(SchedulingError):
    """The provider already has a committed appointment in that range."""

    code = "scheduling_conflict"

    def __init__(self, message: str, alternatives: Optional[list] = None, **details: Any):
        super().__init__(message, **details)
        self.alternatives = alternatives or []

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["alternatives"] = self.alternatives
        return out


class SlotUnavailable(SchedulingError):
    code = "slot_unavailable"


class InvalidTransition(SchedulingError):
    code = "invalid_transition"


class SchedulingTimeout(SchedulingError):
    code = "scheduling_timeout"


class NotFound(SchedulingError):
    code = "not_found"


class InvalidArgument(SchedulingError):
    """A value outside its allowed set or range (kind, reason, capacity...)."""

    code = "invalid_argument"


class OutsideBookingWindow(SchedulingError):
    code = "outside_booking_window"
