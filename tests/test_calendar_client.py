import asyncio
import json
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import respx

from appointment_engine.calendar_client import GoogleCalendarAdapter, bounded
from appointment_engine.config import GOOGLE_CALENDAR_API, GOOGLE_TOKEN_URL, Settings
from appointment_engine.errors import AdapterUnavailableError, AuthExchangeError, NotFoundError, RefreshError
from appointment_engine.models import TimeRange

from conftest import CALENDAR_ID, NOW, FrozenClock, at

SETTINGS = Settings(google_client_id="client-id", google_client_secret="client-secret")
TOKEN_RESP = {"access_token": "fresh", "refresh_token": "rotated", "expires_in": 3600}


@pytest.fixture
def google():
    return GoogleCalendarAdapter(SETTINGS, http_client=httpx.AsyncClient(), clock=FrozenClock(NOW))


def test_authorization_url_carries_state():
    url = GoogleCalendarAdapter(SETTINGS, http_client=httpx.AsyncClient()).build_authorization_url("corr-1")
    query = parse_qs(urlparse(url).query)
    assert query["state"] == ["corr-1"]
    assert query["access_type"] == ["offline"]
    assert query["prompt"] == ["consent"]
    assert query["client_id"] == ["client-id"]


@pytest.mark.asyncio
async def test_exchange_code(google):
    with respx.mock() as m:
        route = m.post(GOOGLE_TOKEN_URL).respond(200, json=TOKEN_RESP)
        cred = await google.exchange_code("auth-code")
    assert cred.access_token == "fresh"
    assert cred.refresh_token == "rotated"
    assert cred.expiry == NOW + timedelta(hours=1)
    body = parse_qs(route.calls.last.request.content.decode())
    assert body["grant_type"] == ["authorization_code"]
    assert body["code"] == ["auth-code"]


@pytest.mark.asyncio
async def test_exchange_rejected(google):
    with respx.mock() as m:
        m.post(GOOGLE_TOKEN_URL).respond(400, json={"error": "invalid_grant"})
        with pytest.raises(AuthExchangeError, match="invalid_grant"):
            await google.exchange_code("used-code")


@pytest.mark.asyncio
async def test_refresh_without_rotation(google):
    with respx.mock() as m:
        m.post(GOOGLE_TOKEN_URL).respond(200, json={"access_token": "fresh", "expires_in": 600})
        cred = await google.refresh_token("refresh-0")
    assert cred.refresh_token is None
    assert cred.expiry == NOW + timedelta(minutes=10)


@pytest.mark.asyncio
async def test_refresh_revoked_vs_unavailable(google):
    with respx.mock() as m:
        m.post(GOOGLE_TOKEN_URL).respond(400, json={"error": "invalid_grant"})
        with pytest.raises(RefreshError):
            await google.refresh_token("revoked")
    with respx.mock() as m:
        m.post(GOOGLE_TOKEN_URL).respond(503)
        with pytest.raises(AdapterUnavailableError):
            await google.refresh_token("refresh-0")
    with respx.mock() as m:
        m.post(GOOGLE_TOKEN_URL).mock(side_effect=httpx.ConnectTimeout("boom"))
        with pytest.raises(AdapterUnavailableError):
            await google.refresh_token("refresh-0")


@pytest.mark.asyncio
async def test_primary_calendar(google):
    listing = {"items": [{"id": "team@example.com"}, {"id": CALENDAR_ID, "primary": True}]}
    with respx.mock() as m:
        route = m.get(f"{GOOGLE_CALENDAR_API}/users/me/calendarList").respond(200, json=listing)
        assert await google.get_primary_calendar_id(access_token="tok") == CALENDAR_ID
    assert route.calls.last.request.headers["Authorization"] == "Bearer tok"

    with respx.mock() as m:
        m.get(f"{GOOGLE_CALENDAR_API}/users/me/calendarList").respond(200, json={"items": []})
        with pytest.raises(NotFoundError):
            await google.get_primary_calendar_id(access_token="tok")


@pytest.mark.asyncio
async def test_fetch_busy_intervals(google):
    payload = {
        "calendars": {
            CALENDAR_ID: {
                "busy": [
                    {"start": "2026-03-02T14:00:00Z", "end": "2026-03-02T15:00:00Z"},
                    {"start": "2026-03-02T16:00:00+01:00", "end": "2026-03-02T16:30:00+01:00"},
                    {"start": "2026-03-02T12:00:00Z", "end": "2026-03-02T12:00:00Z"},
                ]
            }
        }
    }
    with respx.mock() as m:
        route = m.post(f"{GOOGLE_CALENDAR_API}/freeBusy").respond(200, json=payload)
        busy = await google.fetch_busy_intervals(
            access_token="tok", calendar_id=CALENDAR_ID, start=at(9), end=at(17)
        )
    assert [(b.start, b.end) for b in busy] == [(at(14), at(15)), (at(15), at(15, 30))]
    sent = json.loads(route.calls.last.request.content)
    assert sent["timeMin"] == "2026-03-02T09:00:00Z"
    assert sent["items"] == [{"id": CALENDAR_ID}]


@pytest.mark.asyncio
async def test_fetch_busy_calendar_error(google):
    payload = {"calendars": {CALENDAR_ID: {"errors": [{"reason": "notFound"}], "busy": []}}}
    with respx.mock() as m:
        m.post(f"{GOOGLE_CALENDAR_API}/freeBusy").respond(200, json=payload)
        with pytest.raises(AdapterUnavailableError, match="notFound"):
            await google.fetch_busy_intervals(access_token="tok", calendar_id=CALENDAR_ID, start=at(9), end=at(17))


@pytest.mark.asyncio
async def test_insert_event(google):
    with respx.mock() as m:
        route = m.post(url__regex=r".*/calendars/dr-house(%40|@)example\.com/events$").respond(200, json={"id": "evt-9"})
        event_id = await google.insert_event(
            access_token="tok",
            calendar_id=CALENDAR_ID,
            time_range=TimeRange(start=at(9), end=at(9, 30)),
            metadata={"patient_name": "Ada", "patient_phone": "+1 555 0100", "notes": "", "appointment_id": "a1"},
        )
    assert event_id == "evt-9"
    body = json.loads(route.calls.last.request.content)
    assert body["summary"] == "Appointment with Ada"
    assert body["description"] == "Patient Phone: +1 555 0100"
    assert body["start"] == {"dateTime": "2026-03-02T09:00:00Z", "timeZone": "UTC"}
    assert body["reminders"]["overrides"][0] == {"method": "email", "minutes": 1440}


@pytest.mark.asyncio
async def test_insert_event_server_error(google):
    with respx.mock() as m:
        m.post(url__regex=r".*/events$").respond(500, json={"error": {"message": "backendError"}})
        with pytest.raises(AdapterUnavailableError, match="backendError"):
            await google.insert_event(
                access_token="tok",
                calendar_id=CALENDAR_ID,
                time_range=TimeRange(start=at(9), end=at(9, 30)),
                metadata={},
            )


@pytest.mark.asyncio
async def test_delete_event_not_found_is_success(google):
    path = r".*/calendars/dr-house(%40|@)example\.com/events/evt-1$"
    with respx.mock() as m:
        m.delete(url__regex=path).respond(404)
        await google.delete_event(access_token="tok", calendar_id=CALENDAR_ID, event_id="evt-1")
    with respx.mock() as m:
        m.delete(url__regex=path).respond(204)
        await google.delete_event(access_token="tok", calendar_id=CALENDAR_ID, event_id="evt-1")
    with respx.mock() as m:
        m.delete(url__regex=path).respond(500)
        with pytest.raises(AdapterUnavailableError):
            await google.delete_event(access_token="tok", calendar_id=CALENDAR_ID, event_id="evt-1")


@pytest.mark.asyncio
async def test_bounded_turns_timeout_into_adapter_error():
    import asyncio

    with pytest.raises(AdapterUnavailableError, match="timed out"):
        await bounded(asyncio.sleep(1), 0.01)


@pytest.mark.asyncio
async def test_aclose_only_closes_owned_client():
    injected = httpx.AsyncClient()
    await GoogleCalendarAdapter(SETTINGS, http_client=injected).aclose()
    assert not injected.is_closed
    await injected.aclose()

    owned = GoogleCalendarAdapter(SETTINGS)
    await owned.aclose()
    assert owned._client.is_closed
