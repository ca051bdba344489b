"""Record store contract and the in-memory implementation.

``transaction(provider_id)`` is the serialization point for a provider's
appointments: the overlap check and the write it guards must both happen
inside it.
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import Protocol

from .errors import NotFoundError, ValidationError
from .intervals import overlaps
from .models import Appointment, AppointmentStatus, Credential, Provider, TimeRange, WorkingHours


class StoreTransaction(Protocol):
    async def find_scheduled_overlapping(self, provider_id: str, time_range: TimeRange) -> list[Appointment]: ...

    async def insert_appointment(self, appointment: Appointment) -> Appointment: ...

    async def get_appointment(self, appointment_id: str) -> Appointment | None: ...

    async def update_status(
        self, appointment_id: str, status: AppointmentStatus, at: datetime
    ) -> Appointment: ...

    async def set_external_event_id(self, appointment_id: str, event_id: str) -> Appointment: ...


class Store(Protocol):
    def transaction(self, provider_id: str) -> AbstractAsyncContextManager[StoreTransaction]: ...

    async def find_provider(self, provider_id: str) -> Provider | None: ...

    async def find_provider_by_link_state(self, link_state: str) -> Provider | None: ...

    async def list_providers(self) -> list[Provider]: ...

    async def add_provider(self, provider: Provider) -> Provider: ...

    async def update_working_hours(self, provider_id: str, hours: WorkingHours) -> Provider: ...

    async def update_provider_credential(self, provider_id: str, credential: Credential) -> Provider: ...

    async def set_link_state(self, provider_id: str, link_state: str) -> Provider: ...

    async def save_calendar_link(
        self, provider_id: str, *, credential: Credential, calendar_id: str, code_digest: str
    ) -> Provider: ...

    async def disable_sync(self, provider_id: str, reason: str) -> Provider: ...

    async def find_appointment(self, appointment_id: str) -> Appointment | None: ...

    async def find_scheduled_overlapping(self, provider_id: str, time_range: TimeRange) -> list[Appointment]: ...

    async def list_appointments(self, provider_id: str) -> list[Appointment]: ...

    async def set_external_event_id(self, appointment_id: str, event_id: str) -> Appointment: ...


class _InMemoryTransaction:
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    async def find_scheduled_overlapping(self, provider_id: str, time_range: TimeRange) -> list[Appointment]:
        return await self._store.find_scheduled_overlapping(provider_id, time_range)

    async def insert_appointment(self, appointment: Appointment) -> Appointment:
        await asyncio.sleep(0)
        if appointment.id in self._store._appointments:
            raise ValidationError(f"appointment {appointment.id} already exists")
        self._store._appointments[appointment.id] = appointment
        return appointment

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        return await self._store.find_appointment(appointment_id)

    async def update_status(
        self, appointment_id: str, status: AppointmentStatus, at: datetime
    ) -> Appointment:
        current = self._store._appointments.get(appointment_id)
        if current is None:
            raise NotFoundError(f"appointment {appointment_id} not found")
        updated = current.model_copy(update={"status": status, "updated_at": at})
        self._store._appointments[appointment_id] = updated
        return updated

    async def set_external_event_id(self, appointment_id: str, event_id: str) -> Appointment:
        return await self._store.set_external_event_id(appointment_id, event_id)


class InMemoryStore:
    """Dict-backed store. Reads yield to the event loop like real I/O would."""

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}
        self._appointments: dict[str, Appointment] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def transaction(self, provider_id: str) -> AsyncIterator[_InMemoryTransaction]:
        async with self._locks[provider_id]:
            yield _InMemoryTransaction(self)

    async def find_provider(self, provider_id: str) -> Provider | None:
        await asyncio.sleep(0)
        return self._providers.get(provider_id)

    async def find_provider_by_link_state(self, link_state: str) -> Provider | None:
        await asyncio.sleep(0)
        for provider in self._providers.values():
            if provider.link_state == link_state:
                return provider
        return None

    async def list_providers(self) -> list[Provider]:
        await asyncio.sleep(0)
        return sorted(self._providers.values(), key=lambda provider: provider.id)

    async def add_provider(self, provider: Provider) -> Provider:
        if provider.id in self._providers:
            raise ValidationError(f"provider {provider.id} already exists")
        self._providers[provider.id] = provider
        return provider

    async def update_working_hours(self, provider_id: str, hours: WorkingHours) -> Provider:
        return self._update_provider(provider_id, working_hours=hours)

    async def update_provider_credential(self, provider_id: str, credential: Credential) -> Provider:
        return self._update_provider(provider_id, credential=credential)

    async def set_link_state(self, provider_id: str, link_state: str) -> Provider:
        return self._update_provider(provider_id, link_state=link_state)

    async def save_calendar_link(
        self, provider_id: str, *, credential: Credential, calendar_id: str, code_digest: str
    ) -> Provider:
        return self._update_provider(
            provider_id,
            credential=credential,
            calendar_id=calendar_id,
            linked_code_digest=code_digest,
            sync_disabled_reason=None,
        )

    async def disable_sync(self, provider_id: str, reason: str) -> Provider:
        return self._update_provider(provider_id, sync_disabled_reason=reason)

    async def find_appointment(self, appointment_id: str) -> Appointment | None:
        await asyncio.sleep(0)
        return self._appointments.get(appointment_id)

    async def find_scheduled_overlapping(self, provider_id: str, time_range: TimeRange) -> list[Appointment]:
        await asyncio.sleep(0)
        return sorted(
            (
                appt
                for appt in self._appointments.values()
                if appt.provider_id == provider_id
                and appt.status is AppointmentStatus.SCHEDULED
                and overlaps(appt.time_range, time_range)
            ),
            key=lambda appt: appt.time_range.start,
        )

    async def list_appointments(self, provider_id: str) -> list[Appointment]:
        await asyncio.sleep(0)
        return sorted(
            (appt for appt in self._appointments.values() if appt.provider_id == provider_id),
            key=lambda appt: appt.time_range.start,
        )

    async def set_external_event_id(self, appointment_id: str, event_id: str) -> Appointment:
        current = self._appointments.get(appointment_id)
        if current is None:
            raise NotFoundError(f"appointment {appointment_id} not found")
        updated = current.model_copy(update={"external_event_id": event_id})
        self._appointments[appointment_id] = updated
        return updated

    def _update_provider(self, provider_id: str, **changes: object) -> Provider:
        current = self._providers.get(provider_id)
        if current is None:
            raise NotFoundError(f"provider {provider_id} not found")
        updated = current.model_copy(update=changes)
        self._providers[provider_id] = updated
        return updated
