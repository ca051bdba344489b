"""Async Google Calendar adapter.

The engine only depends on the ``CalendarAdapter`` protocol; the Google
implementation is built once at startup with a shared ``httpx.AsyncClient``
and handed to the engine.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol, TypeVar
from urllib.parse import quote

import httpx

from .clock import Clock, SystemClock
from .config import CALENDAR_SCOPES, Settings
from .errors import AdapterUnavailableError, AuthExchangeError, NotFoundError, RefreshError
from .models import BusyInterval, Credential, TimeRange

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CalendarAdapter(Protocol):
    def build_authorization_url(self, correlation_token: str) -> str: ...

    async def exchange_code(self, code: str) -> Credential: ...

    async def refresh_token(self, refresh_token: str) -> Credential: ...

    async def get_primary_calendar_id(self, *, access_token: str) -> str: ...

    async def fetch_busy_intervals(
        self, *, access_token: str, calendar_id: str, start: datetime, end: datetime
    ) -> list[BusyInterval]: ...

    async def insert_event(
        self,
        *,
        access_token: str,
        calendar_id: str,
        time_range: TimeRange,
        metadata: dict[str, str],
    ) -> str: ...

    async def delete_event(self, *, access_token: str, calendar_id: str, event_id: str) -> None: ...

    async def aclose(self) -> None: ...


async def bounded(call: Awaitable[T], timeout: float) -> T:
    """Await an adapter call, turning a timeout into AdapterUnavailableError."""
    try:
        return await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError as exc:
        raise AdapterUnavailableError(f"calendar call timed out after {timeout:g}s") from exc


def _rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_rfc3339(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _error_code(resp: httpx.Response) -> str:
    """Short, secret-free description of a failed response."""
    try:
        payload = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, str):
            return f"HTTP {resp.status_code}: {err}"
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return f"HTTP {resp.status_code}: {err['message']}"
    return f"HTTP {resp.status_code}"


class GoogleCalendarAdapter:
    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._settings = settings
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            http2=True, timeout=settings.calendar_timeout_seconds
        )
        self._clock = clock or SystemClock()

    async def aclose(self) -> None:
        # injected clients belong to the caller
        if self._owns_client:
            await self._client.aclose()

    def build_authorization_url(self, correlation_token: str) -> str:
        params = {
            "client_id": self._settings.google_client_id,
            "redirect_uri": self._settings.google_redirect_uri,
            "response_type": "code",
            "scope": " ".join(CALENDAR_SCOPES),
            "access_type": "offline",
            "include_granted_scopes": "true",
            # consent forces Google to hand back a refresh token every time
            "prompt": "consent",
            "state": correlation_token,
        }
        return str(httpx.URL(self._settings.auth_url, params=params))

    async def exchange_code(self, code: str) -> Credential:
        payload = await self._token_request(
            {
                "code": code,
                "client_id": self._settings.google_client_id,
                "client_secret": self._settings.google_client_secret,
                "redirect_uri": self._settings.google_redirect_uri,
                "grant_type": "authorization_code",
            },
            rejected=AuthExchangeError,
        )
        return self._credential_from(payload, rejected=AuthExchangeError)

    async def refresh_token(self, refresh_token: str) -> Credential:
        payload = await self._token_request(
            {
                "client_id": self._settings.google_client_id,
                "client_secret": self._settings.google_client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            rejected=RefreshError,
        )
        return self._credential_from(payload, rejected=RefreshError)

    async def get_primary_calendar_id(self, *, access_token: str) -> str:
        resp = await self._request("GET", "/users/me/calendarList", access_token=access_token)
        payload = self._json_or_raise(resp)
        for item in payload.get("items", []):
            if item.get("primary") and item.get("id"):
                return item["id"]
        raise NotFoundError("Could not find primary calendar")

    async def fetch_busy_intervals(
        self, *, access_token: str, calendar_id: str, start: datetime, end: datetime
    ) -> list[BusyInterval]:
        resp = await self._request(
            "POST",
            "/freeBusy",
            access_token=access_token,
            json={
                "timeMin": _rfc3339(start),
                "timeMax": _rfc3339(end),
                "timeZone": "UTC",
                "items": [{"id": calendar_id}],
            },
        )
        payload = self._json_or_raise(resp)
        calendars = payload.get("calendars") or {}
        entry = calendars.get(calendar_id)
        if entry is None and len(calendars) == 1:
            entry = next(iter(calendars.values()))
        if not isinstance(entry, dict):
            raise AdapterUnavailableError("freeBusy response has no entry for the calendar")
        if entry.get("errors"):
            reason = entry["errors"][0].get("reason", "unknown")
            raise AdapterUnavailableError(f"freeBusy reported an error for the calendar: {reason}")

        busy: list[BusyInterval] = []
        for window in entry.get("busy", []):
            try:
                window_start = _parse_rfc3339(window["start"])
                window_end = _parse_rfc3339(window["end"])
            except (KeyError, TypeError, ValueError) as exc:
                raise AdapterUnavailableError("freeBusy returned a malformed busy window") from exc
            if window_end <= window_start:
                continue
            busy.append(BusyInterval(start=window_start, end=window_end))
        return busy

    async def insert_event(
        self,
        *,
        access_token: str,
        calendar_id: str,
        time_range: TimeRange,
        metadata: dict[str, str],
    ) -> str:
        description = f"Patient Phone: {metadata.get('patient_phone', '')}"
        if metadata.get("notes"):
            description += f"\n\nNotes: {metadata['notes']}"
        body: dict[str, Any] = {
            "summary": f"Appointment with {metadata.get('patient_name', 'patient')}",
            "description": description,
            "start": {"dateTime": _rfc3339(time_range.start), "timeZone": "UTC"},
            "end": {"dateTime": _rfc3339(time_range.end), "timeZone": "UTC"},
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": 24 * 60},
                    {"method": "popup", "minutes": 30},
                ],
            },
        }
        if metadata.get("appointment_id"):
            body["extendedProperties"] = {"private": {"appointment_id": metadata["appointment_id"]}}

        resp = await self._request(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            access_token=access_token,
            json=body,
        )
        event = self._json_or_raise(resp)
        event_id = event.get("id")
        if not event_id:
            raise AdapterUnavailableError("calendar API returned an event without an id")
        return event_id

    async def delete_event(self, *, access_token: str, calendar_id: str, event_id: str) -> None:
        resp = await self._request(
            "DELETE",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            access_token=access_token,
        )
        # already gone
        if resp.status_code in (404, 410):
            logger.debug("event %s already removed from calendar", event_id)
            return
        if not resp.is_success:
            raise AdapterUnavailableError(f"event delete failed ({_error_code(resp)})")

    async def _token_request(
        self, data: dict[str, str], *, rejected: type[Exception]
    ) -> dict[str, Any]:
        try:
            resp = await self._client.post(
                self._settings.token_url, data=data, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as exc:
            raise AdapterUnavailableError(f"token endpoint unreachable: {exc}") from exc

        if resp.status_code >= 500:
            raise AdapterUnavailableError(f"token endpoint failed ({_error_code(resp)})")
        if not resp.is_success:
            raise rejected(f"token request rejected ({_error_code(resp)})")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise rejected("token endpoint returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise rejected("token endpoint returned an unexpected payload")
        return payload

    def _credential_from(self, payload: dict[str, Any], *, rejected: type[Exception]) -> Credential:
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise rejected("token response is missing access_token")
        try:
            expires_in = int(payload.get("expires_in", 3600))
        except (TypeError, ValueError):
            expires_in = 3600
        refresh_token = payload.get("refresh_token")
        return Credential(
            access_token=access_token.strip(),
            refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else None,
            expiry=self._clock.now() + timedelta(seconds=expires_in),
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        try:
            return await self._client.request(
                method,
                f"{self._settings.calendar_api_base_url}{path}",
                headers=headers,
                params=params,
                json=json,
            )
        except httpx.HTTPError as exc:
            raise AdapterUnavailableError(f"calendar request failed: {exc}") from exc

    @staticmethod
    def _json_or_raise(resp: httpx.Response) -> dict[str, Any]:
        if not resp.is_success:
            raise AdapterUnavailableError(f"calendar API request failed ({_error_code(resp)})")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise AdapterUnavailableError("calendar API returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise AdapterUnavailableError("calendar API returned an unexpected payload")
        return payload
