"""Free-slot resolution against local bookings and external busy time."""
from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import date, datetime, timedelta

from .calendar_client import CalendarAdapter, bounded
from .clock import Clock
from .credentials import CredentialManager
from .errors import CalendarSyncError, NotFoundError
from .intervals import merge, overlaps_any
from .models import (
    Appointment,
    AppointmentStatus,
    Availability,
    BusyInterval,
    CandidateSlot,
    Provider,
    TimeRange,
)
from .slots import DEFAULT_SLOT, day_bounds, generate_slots, working_window
from .store import Store

logger = logging.getLogger(__name__)


def mark_availability(
    candidates: Sequence[CandidateSlot],
    appointments: Iterable[Appointment],
    busy: Iterable[TimeRange],
    now: datetime,
) -> list[CandidateSlot]:
    """Copy of ``candidates`` with ``available`` set per slot.

    A slot is free when it starts strictly after ``now`` and overlaps neither
    a scheduled appointment nor a busy interval. Touching boundaries are not
    overlaps.
    """
    occupied = [
        appt.time_range for appt in appointments if appt.status is AppointmentStatus.SCHEDULED
    ]
    occupied.extend(busy)
    blocked = merge(occupied)
    return [
        slot.model_copy(
            update={"available": slot.start > now and not overlaps_any(slot, blocked)}
        )
        for slot in candidates
    ]


def resolve_free_slots(
    candidates: Sequence[CandidateSlot],
    appointments: Iterable[Appointment],
    busy: Iterable[TimeRange],
    now: datetime,
) -> list[CandidateSlot]:
    return [slot for slot in mark_availability(candidates, appointments, busy, now) if slot.available]


class AvailabilityService:
    def __init__(
        self,
        store: Store,
        adapter: CalendarAdapter,
        credentials: CredentialManager,
        clock: Clock,
        *,
        slot_duration: timedelta = DEFAULT_SLOT,
        timeout: float = 15.0,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._credentials = credentials
        self._clock = clock
        self._slot_duration = slot_duration
        self._timeout = timeout

    async def list_available_slots(self, provider_id: str, day: date) -> Availability:
        provider = await self._store.find_provider(provider_id)
        if provider is None:
            raise NotFoundError(f"provider {provider_id} not found")

        candidates = generate_slots(provider.working_hours, day, self._slot_duration)
        appointments = await self._store.find_scheduled_overlapping(provider.id, day_bounds(day))
        busy, sync_error = await self._external_busy(provider, working_window(provider.working_hours, day))

        now = self._clock.now()
        marked = mark_availability(candidates, appointments, busy, now)
        return Availability(
            provider_id=provider.id,
            day=day,
            slots=[slot for slot in marked if slot.available],
            degraded=sync_error is not None,
            sync_error=sync_error,
            upcoming_candidates=sum(1 for slot in marked if slot.start > now),
        )

    async def _external_busy(
        self, provider: Provider, window: TimeRange
    ) -> tuple[list[BusyInterval], str | None]:
        if not provider.sync_active:
            return [], None
        try:
            credential = await self._credentials.ensure_fresh(provider)
            if credential is None:
                return [], None
            busy = await bounded(
                self._adapter.fetch_busy_intervals(
                    access_token=credential.access_token,
                    calendar_id=provider.calendar_id,
                    start=window.start,
                    end=window.end,
                ),
                self._timeout,
            )
        except CalendarSyncError as exc:
            logger.warning(
                "availability for provider %s computed without calendar sync: %s", provider.id, exc
            )
            return [], str(exc)
        return busy, None
