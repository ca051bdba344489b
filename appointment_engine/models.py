from __future__ import annotations

import re
from datetime import date, datetime, time
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

_HHMM = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")


class TimeRange(BaseModel):
    """Half-open [start, end) range of absolute instants."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _ordered(self) -> TimeRange:
        if self.start >= self.end:
            raise ValueError("start must be before end")
        return self


class BusyInterval(TimeRange):
    pass


class CandidateSlot(TimeRange):
    available: bool = True


class WorkingHours(BaseModel):
    """Daily wall-clock window; HH:mm strings are accepted."""

    start: time = time(9, 0)
    end: time = time(17, 0)

    @field_validator("start", "end", mode="before")
    @classmethod
    def _parse_hhmm(cls, value: object) -> object:
        if isinstance(value, str):
            if not _HHMM.match(value.strip()):
                raise ValueError("Invalid time format. Use HH:mm format")
            hour, minute = value.strip().split(":")
            return time(int(hour), int(minute))
        return value

    @model_validator(mode="after")
    def _ordered(self) -> WorkingHours:
        if self.start >= self.end:
            raise ValueError("working hours start must be before end")
        return self


class Credential(BaseModel):
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expiry: datetime

    def __repr__(self) -> str:
        refresh = "<REDACTED>" if self.refresh_token else None
        return f"Credential(access_token=<REDACTED>, refresh_token={refresh}, expiry={self.expiry!r})"

    __str__ = __repr__


class Provider(BaseModel):
    id: str
    name: str = ""
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    calendar_id: str | None = None
    credential: Credential | None = None
    link_state: str | None = None
    linked_code_digest: str | None = None
    sync_disabled_reason: str | None = None

    @property
    def sync_active(self) -> bool:
        return self.credential is not None and self.calendar_id is not None


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class ContactFields(BaseModel):
    patient_name: str
    patient_phone: str
    notes: str | None = None


class Appointment(BaseModel):
    id: str
    provider_id: str
    time_range: TimeRange
    patient_name: str
    patient_phone: str
    notes: str | None = None
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    external_event_id: str | None = None
    created_at: datetime
    updated_at: datetime


class MirrorStatus(str, Enum):
    SYNCED = "synced"
    SKIPPED = "skipped"
    FAILED = "failed"


class Availability(BaseModel):
    provider_id: str
    day: date
    slots: list[CandidateSlot]
    degraded: bool = False
    sync_error: str | None = None
    # candidates still in the future, booked or not
    upcoming_candidates: int = 0

    @computed_field
    @property
    def fully_booked(self) -> bool:
        return self.upcoming_candidates > 0 and not self.slots and not self.degraded


class BookingResult(BaseModel):
    appointment: Appointment
    mirror: MirrorStatus
    mirror_error: str | None = None

    @computed_field
    @property
    def partial_success(self) -> bool:
        return self.mirror is MirrorStatus.FAILED


class StatusChangeResult(BaseModel):
    appointment: Appointment
    mirror: MirrorStatus
    mirror_error: str | None = None


# Transport payloads

class BookRequest(BaseModel):
    provider_id: str
    start: datetime
    end: datetime
    patient_name: str
    patient_phone: str
    notes: str | None = None


class StatusUpdateRequest(BaseModel):
    status: AppointmentStatus


class LinkResponse(BaseModel):
    url: str


class ProviderProfile(BaseModel):
    """Public view of a provider; credentials and link state stay out."""

    id: str
    name: str
    working_hours: WorkingHours
    calendar_linked: bool
    sync_disabled_reason: str | None = None

    @classmethod
    def from_provider(cls, provider: Provider) -> ProviderProfile:
        return cls(
            id=provider.id,
            name=provider.name,
            working_hours=provider.working_hours,
            calendar_linked=provider.sync_active,
            sync_disabled_reason=provider.sync_disabled_reason,
        )
