"""Booking write path: validated, race-safe creation and status changes."""
from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone

from .calendar_client import CalendarAdapter, bounded
from .clock import Clock
from .credentials import CredentialManager
from .errors import (
    CalendarSyncError,
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from .intervals import overlaps
from .models import (
    Appointment,
    AppointmentStatus,
    BookingResult,
    ContactFields,
    MirrorStatus,
    Provider,
    StatusChangeResult,
    TimeRange,
)
from .slots import day_bounds
from .store import Store

logger = logging.getLogger(__name__)

TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED}),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.COMPLETED: frozenset(),
}


def check_transition(current: AppointmentStatus, requested: AppointmentStatus) -> None:
    if requested not in TRANSITIONS[current]:
        raise IllegalTransitionError(current.value, requested.value)


def validate_range(start: datetime, end: datetime, now: datetime) -> TimeRange:
    """Build a UTC TimeRange or raise ValidationError.

    Ordering is checked before anything else so a zero-length or inverted
    request never reaches the store.
    """
    if start.tzinfo is None or end.tzinfo is None:
        raise ValidationError("timestamps must carry a UTC offset")
    start = start.astimezone(timezone.utc)
    end = end.astimezone(timezone.utc)
    if start >= end:
        raise ValidationError("start must be before end")
    if start <= now:
        raise ValidationError("requested time is in the past")
    return TimeRange(start=start, end=end)


class BookingService:
    def __init__(
        self,
        store: Store,
        adapter: CalendarAdapter,
        credentials: CredentialManager,
        clock: Clock,
        *,
        timeout: float = 15.0,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._credentials = credentials
        self._clock = clock
        self._timeout = timeout

    async def create_booking(
        self, provider_id: str, start: datetime, end: datetime, contact: ContactFields
    ) -> BookingResult:
        now = self._clock.now()
        time_range = validate_range(start, end, now)

        provider = await self._store.find_provider(provider_id)
        if provider is None:
            raise NotFoundError(f"provider {provider_id} not found")

        async with self._store.transaction(provider.id) as tx:
            clashes = await tx.find_scheduled_overlapping(provider.id, time_range)
            if clashes:
                logger.debug(
                    "booking for provider %s rejected, overlaps %s",
                    provider.id,
                    [appt.id for appt in clashes],
                )
                raise ConflictError(
                    "requested time overlaps an existing appointment",
                    conflicting_ids=[appt.id for appt in clashes],
                )
            appointment = await tx.insert_appointment(
                Appointment(
                    id=uuid.uuid4().hex,
                    provider_id=provider.id,
                    time_range=time_range,
                    patient_name=contact.patient_name,
                    patient_phone=contact.patient_phone,
                    notes=contact.notes,
                    status=AppointmentStatus.SCHEDULED,
                    created_at=now,
                    updated_at=now,
                )
            )

        return await self._mirror_insert(provider, appointment)

    async def update_booking_status(
        self, appointment_id: str, new_status: AppointmentStatus | str
    ) -> StatusChangeResult:
        try:
            requested = AppointmentStatus(new_status)
        except ValueError as exc:
            raise ValidationError(f"unknown appointment status {new_status!r}") from exc

        existing = await self._store.find_appointment(appointment_id)
        if existing is None:
            raise NotFoundError(f"appointment {appointment_id} not found")

        async with self._store.transaction(existing.provider_id) as tx:
            current = await tx.get_appointment(appointment_id)
            if current is None:
                raise NotFoundError(f"appointment {appointment_id} not found")
            check_transition(current.status, requested)
            updated = await tx.update_status(appointment_id, requested, self._clock.now())

        if not updated.external_event_id:
            return StatusChangeResult(appointment=updated, mirror=MirrorStatus.SKIPPED)
        provider = await self._store.find_provider(updated.provider_id)
        if provider is None or not provider.sync_active:
            return StatusChangeResult(appointment=updated, mirror=MirrorStatus.SKIPPED)
        return await self._mirror_delete(provider, updated)

    async def list_bookings(
        self,
        provider_id: str,
        status: AppointmentStatus | None = None,
        day: date | None = None,
    ) -> list[Appointment]:
        provider = await self._store.find_provider(provider_id)
        if provider is None:
            raise NotFoundError(f"provider {provider_id} not found")
        bookings = await self._store.list_appointments(provider.id)
        if status is not None:
            bookings = [appt for appt in bookings if appt.status is status]
        if day is not None:
            bounds = day_bounds(day)
            bookings = [appt for appt in bookings if overlaps(appt.time_range, bounds)]
        return bookings

    async def _mirror_insert(self, provider: Provider, appointment: Appointment) -> BookingResult:
        if not provider.sync_active:
            return BookingResult(appointment=appointment, mirror=MirrorStatus.SKIPPED)
        try:
            credential = await self._credentials.ensure_fresh(provider)
            if credential is None:
                return BookingResult(appointment=appointment, mirror=MirrorStatus.SKIPPED)
            event_id = await bounded(
                self._adapter.insert_event(
                    access_token=credential.access_token,
                    calendar_id=provider.calendar_id,
                    time_range=appointment.time_range,
                    metadata={
                        "appointment_id": appointment.id,
                        "patient_name": appointment.patient_name,
                        "patient_phone": appointment.patient_phone,
                        "notes": appointment.notes or "",
                    },
                ),
                self._timeout,
            )
        except CalendarSyncError as exc:
            logger.warning("calendar mirror for appointment %s failed: %s", appointment.id, exc)
            return BookingResult(appointment=appointment, mirror=MirrorStatus.FAILED, mirror_error=str(exc))

        async with self._store.transaction(appointment.provider_id) as tx:
            current = await tx.get_appointment(appointment.id)
            if current is not None and current.status is AppointmentStatus.SCHEDULED:
                appointment = await tx.set_external_event_id(appointment.id, event_id)
                return BookingResult(appointment=appointment, mirror=MirrorStatus.SYNCED)

        # status changed while the insert was in flight; the event must not outlive it
        return await self._retract_event(provider, current or appointment, event_id, credential.access_token)

    async def _retract_event(
        self, provider: Provider, appointment: Appointment, event_id: str, access_token: str
    ) -> BookingResult:
        try:
            await bounded(
                self._adapter.delete_event(
                    access_token=access_token, calendar_id=provider.calendar_id, event_id=event_id
                ),
                self._timeout,
            )
        except CalendarSyncError as exc:
            logger.warning(
                "appointment %s is %s but its calendar event %s could not be removed: %s",
                appointment.id,
                appointment.status.value,
                event_id,
                exc,
            )
            appointment = await self._store.set_external_event_id(appointment.id, event_id)
            return BookingResult(appointment=appointment, mirror=MirrorStatus.FAILED, mirror_error=str(exc))
        logger.info("removed calendar event %s for %s appointment %s", event_id, appointment.status.value, appointment.id)
        return BookingResult(appointment=appointment, mirror=MirrorStatus.SYNCED)

    async def _mirror_delete(self, provider: Provider, appointment: Appointment) -> StatusChangeResult:
        try:
            credential = await self._credentials.ensure_fresh(provider)
            if credential is None:
                return StatusChangeResult(appointment=appointment, mirror=MirrorStatus.SKIPPED)
            await bounded(
                self._adapter.delete_event(
                    access_token=credential.access_token,
                    calendar_id=provider.calendar_id,
                    event_id=appointment.external_event_id,
                ),
                self._timeout,
            )
        except CalendarSyncError as exc:
            logger.warning(
                "could not remove calendar event %s for appointment %s: %s",
                appointment.external_event_id,
                appointment.id,
                exc,
            )
            return StatusChangeResult(
                appointment=appointment, mirror=MirrorStatus.FAILED, mirror_error=str(exc)
            )
        return StatusChangeResult(appointment=appointment, mirror=MirrorStatus.SYNCED)
