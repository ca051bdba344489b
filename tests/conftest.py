import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest
import pytest_asyncio

from appointment_engine.config import Settings
from appointment_engine.engine import SchedulingEngine
from appointment_engine.errors import NotFoundError
from appointment_engine.models import BusyInterval, Credential, Provider
from appointment_engine.store import InMemoryStore

DAY = date(2026, 3, 2)
NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
CALENDAR_ID = "dr-house@example.com"


def at(hour: int, minute: int = 0, day: date = DAY) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> None:
        self.current += delta


class FakeCalendarAdapter:
    """In-process stand-in for the Google adapter; records every call."""

    def __init__(self, clock: FrozenClock) -> None:
        self.clock = clock
        self.busy: list[BusyInterval] = []
        self.calls: list[str] = []
        self.events: dict[str, dict] = {}
        self.deleted: list[str] = []
        self.primary_calendar_id: str | None = CALENDAR_ID
        self.refresh_delay = 0.0
        self.call_delay = 0.0
        self.fail_busy: Exception | None = None
        self.fail_insert: Exception | None = None
        self.fail_delete: Exception | None = None
        self.fail_refresh: Exception | None = None
        self.fail_exchange: Exception | None = None
        self.rotate_refresh_token = True
        self.closed = False
        self._counter = 0

    def count(self, name: str) -> int:
        return self.calls.count(name)

    async def aclose(self) -> None:
        self.closed = True

    def build_authorization_url(self, correlation_token: str) -> str:
        self.calls.append("build_authorization_url")
        return f"https://accounts.example.com/auth?state={correlation_token}"

    async def exchange_code(self, code: str) -> Credential:
        self.calls.append("exchange_code")
        await asyncio.sleep(0)
        if self.fail_exchange:
            raise self.fail_exchange
        return Credential(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            expiry=self.clock.now() + timedelta(hours=1),
        )

    async def refresh_token(self, refresh_token: str) -> Credential:
        self.calls.append("refresh_token")
        await asyncio.sleep(self.refresh_delay)
        if self.fail_refresh:
            raise self.fail_refresh
        self._counter += 1
        return Credential(
            access_token=f"access-{self._counter}",
            refresh_token=f"refresh-{self._counter}" if self.rotate_refresh_token else None,
            expiry=self.clock.now() + timedelta(hours=1),
        )

    async def get_primary_calendar_id(self, *, access_token: str) -> str:
        self.calls.append("get_primary_calendar_id")
        if self.primary_calendar_id is None:
            raise NotFoundError("Could not find primary calendar")
        return self.primary_calendar_id

    async def fetch_busy_intervals(self, *, access_token, calendar_id, start, end):
        self.calls.append("fetch_busy_intervals")
        await asyncio.sleep(self.call_delay)
        if self.fail_busy:
            raise self.fail_busy
        return [iv for iv in self.busy if iv.start < end and start < iv.end]

    async def insert_event(self, *, access_token, calendar_id, time_range, metadata) -> str:
        self.calls.append("insert_event")
        await asyncio.sleep(self.call_delay)
        if self.fail_insert:
            raise self.fail_insert
        event_id = f"evt-{len(self.events) + 1}"
        self.events[event_id] = {"calendar_id": calendar_id, "range": time_range, "metadata": metadata}
        return event_id

    async def delete_event(self, *, access_token, calendar_id, event_id) -> None:
        self.calls.append("delete_event")
        if self.fail_delete:
            raise self.fail_delete
        self.deleted.append(event_id)


def linked_credential(clock: FrozenClock, expires_in: timedelta = timedelta(hours=1)) -> Credential:
    return Credential(access_token="access-0", refresh_token="refresh-0", expiry=clock.now() + expires_in)


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def adapter(clock):
    return FakeCalendarAdapter(clock)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def settings():
    return Settings(calendar_timeout_seconds=0.5)


@pytest.fixture
def engine(store, adapter, clock, settings):
    return SchedulingEngine(store, adapter, clock=clock, settings=settings)


@pytest_asyncio.fixture
async def provider(store):
    return await store.add_provider(Provider(id="doc-1", name="Dr. Local"))


@pytest_asyncio.fixture
async def linked_provider(store, clock):
    return await store.add_provider(
        Provider(
            id="doc-2",
            name="Dr. Synced",
            calendar_id=CALENDAR_ID,
            credential=linked_credential(clock),
        )
    )


