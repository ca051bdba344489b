"""Candidate slot generation from a provider's working hours."""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

from .errors import ValidationError
from .models import CandidateSlot, TimeRange, WorkingHours

DEFAULT_SLOT = timedelta(minutes=30)


def day_bounds(day: date) -> TimeRange:
    """UTC midnight-to-midnight range for a calendar day."""
    start = datetime.combine(day, time(0, 0), tzinfo=timezone.utc)
    return TimeRange(start=start, end=start + timedelta(days=1))


def working_window(hours: WorkingHours, day: date) -> TimeRange:
    return TimeRange(
        start=datetime.combine(day, hours.start, tzinfo=timezone.utc),
        end=datetime.combine(day, hours.end, tzinfo=timezone.utc),
    )


def generate_slots(
    hours: WorkingHours,
    day: date,
    duration: timedelta = DEFAULT_SLOT,
) -> list[CandidateSlot]:
    """Back-to-back slots of exactly ``duration`` inside the working window.

    A trailing remainder shorter than ``duration`` is dropped. The result does
    not look at bookings; every slot comes back marked available.
    """
    if duration <= timedelta(0):
        raise ValidationError("slot duration must be positive")

    window = working_window(hours, day)
    slots: list[CandidateSlot] = []
    cursor = window.start
    while cursor + duration <= window.end:
        slots.append(CandidateSlot(start=cursor, end=cursor + duration))
        cursor += duration
    return slots
