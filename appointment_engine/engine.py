"""Facade exposing the scheduling operations to the transport layer."""
from __future__ import annotations

from datetime import date, datetime, timedelta

from .availability import AvailabilityService
from .booking import BookingService
from .calendar_client import CalendarAdapter, GoogleCalendarAdapter
from .clock import Clock, SystemClock
from .config import Settings
from .credentials import CredentialManager
from .errors import NotFoundError
from .models import (
    Appointment,
    AppointmentStatus,
    Availability,
    BookingResult,
    ContactFields,
    ProviderProfile,
    StatusChangeResult,
    WorkingHours,
)
from .store import InMemoryStore, Store


class SchedulingEngine:
    def __init__(
        self,
        store: Store,
        adapter: CalendarAdapter,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or Settings()
        clock = clock or SystemClock()
        timeout = settings.calendar_timeout_seconds
        self.store = store
        self._adapter = adapter
        self.credentials = CredentialManager(
            store,
            adapter,
            clock,
            skew=timedelta(seconds=settings.token_refresh_skew_seconds),
            timeout=timeout,
        )
        self._availability = AvailabilityService(
            store,
            adapter,
            self.credentials,
            clock,
            slot_duration=timedelta(minutes=settings.slot_minutes),
            timeout=timeout,
        )
        self._bookings = BookingService(store, adapter, self.credentials, clock, timeout=timeout)

    async def list_available_slots(self, provider_id: str, day: date) -> Availability:
        return await self._availability.list_available_slots(provider_id, day)

    async def create_booking(
        self, provider_id: str, start: datetime, end: datetime, contact: ContactFields
    ) -> BookingResult:
        return await self._bookings.create_booking(provider_id, start, end, contact)

    async def update_booking_status(
        self, appointment_id: str, new_status: AppointmentStatus | str
    ) -> StatusChangeResult:
        return await self._bookings.update_booking_status(appointment_id, new_status)

    async def list_bookings(
        self,
        provider_id: str,
        status: AppointmentStatus | None = None,
        day: date | None = None,
    ) -> list[Appointment]:
        return await self._bookings.list_bookings(provider_id, status=status, day=day)

    async def get_provider(self, provider_id: str) -> ProviderProfile:
        provider = await self.store.find_provider(provider_id)
        if provider is None:
            raise NotFoundError(f"provider {provider_id} not found")
        return ProviderProfile.from_provider(provider)

    async def list_providers(self) -> list[ProviderProfile]:
        return [ProviderProfile.from_provider(p) for p in await self.store.list_providers()]

    async def update_working_hours(self, provider_id: str, hours: WorkingHours) -> ProviderProfile:
        if await self.store.find_provider(provider_id) is None:
            raise NotFoundError(f"provider {provider_id} not found")
        return ProviderProfile.from_provider(await self.store.update_working_hours(provider_id, hours))

    async def begin_calendar_link(self, provider_id: str) -> str:
        return await self.credentials.begin_link(provider_id)

    async def complete_calendar_link(self, correlation_token: str, code: str) -> None:
        await self.credentials.complete_link(correlation_token, code)

    async def aclose(self) -> None:
        await self._adapter.aclose()


def build_engine(settings: Settings, store: Store | None = None) -> SchedulingEngine:
    """Process-start wiring: one adapter and one store shared by every request."""
    clock = SystemClock()
    adapter = GoogleCalendarAdapter(settings, clock=clock)
    return SchedulingEngine(store or InMemoryStore(), adapter, clock=clock, settings=settings)
