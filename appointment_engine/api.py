import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import Settings, get_settings
from .engine import SchedulingEngine, build_engine
from .errors import (
    AuthExchangeError,
    CalendarSyncError,
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    SchedulingError,
    ValidationError,
)
from .models import (
    Appointment,
    AppointmentStatus,
    Availability,
    BookingResult,
    BookRequest,
    ContactFields,
    LinkResponse,
    ProviderProfile,
    StatusChangeResult,
    StatusUpdateRequest,
    WorkingHours,
)

logger = logging.getLogger(__name__)

# HTTPBearer scheme so Swagger-UI can attach the Authorization header globally
auth_scheme = HTTPBearer(auto_error=False)

_engine: Optional[SchedulingEngine] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _engine
    yield
    # the adapter owns a pooled http client
    if _engine is not None:
        await _engine.aclose()
        _engine = None


app = FastAPI(title="Appointment Scheduling Service", lifespan=lifespan)

_STATUS_CODES: list[tuple[type[SchedulingError], int]] = [
    (ValidationError, 422),
    (ConflictError, 409),
    (IllegalTransitionError, 409),
    (NotFoundError, 404),
    (AuthExchangeError, 502),
    (CalendarSyncError, 503),
]


def get_engine() -> SchedulingEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings())
    return _engine


def verify_key(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    settings: Settings = Depends(get_settings),
):
    """Validate Bearer token provided via Authorization header"""
    if credentials is None or credentials.scheme.lower() != "bearer" or credentials.credentials != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError):
    status_code = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 500)
    body = {"error": type(exc).__name__, "detail": str(exc)}
    if isinstance(exc, ConflictError):
        body["conflicting_ids"] = exc.conflicting_ids
    return JSONResponse(status_code=status_code, content=body)


# Availability & booking -----------------------------------------------------

@app.get("/providers/{provider_id}/slots", dependencies=[Depends(verify_key)], response_model=Availability)
async def available_slots(
    provider_id: str,
    day: date = Query(..., alias="date", description="YYYY-MM-DD day, UTC"),
    engine: SchedulingEngine = Depends(get_engine),
):
    """Free slots for a provider's day; ``degraded`` marks results computed without calendar sync."""
    return await engine.list_available_slots(provider_id, day)


@app.post("/appointments", dependencies=[Depends(verify_key)], response_model=BookingResult, status_code=201)
async def book(req: BookRequest, engine: SchedulingEngine = Depends(get_engine)):
    contact = ContactFields(patient_name=req.patient_name, patient_phone=req.patient_phone, notes=req.notes)
    return await engine.create_booking(req.provider_id, req.start, req.end, contact)


@app.get("/providers/{provider_id}/appointments", dependencies=[Depends(verify_key)], response_model=list[Appointment])
async def provider_appointments(
    provider_id: str,
    status: Optional[AppointmentStatus] = Query(None),
    day: Optional[date] = Query(None, alias="date"),
    engine: SchedulingEngine = Depends(get_engine),
):
    return await engine.list_bookings(provider_id, status=status, day=day)


@app.patch("/appointments/{appointment_id}", dependencies=[Depends(verify_key)], response_model=StatusChangeResult)
async def update_status(
    appointment_id: str,
    req: StatusUpdateRequest,
    engine: SchedulingEngine = Depends(get_engine),
):
    return await engine.update_booking_status(appointment_id, req.status)


@app.delete("/appointments/{appointment_id}", dependencies=[Depends(verify_key)], response_model=StatusChangeResult)
async def cancel(appointment_id: str, engine: SchedulingEngine = Depends(get_engine)):
    """Cancel an appointment. The record is kept with status ``cancelled``."""
    return await engine.update_booking_status(appointment_id, AppointmentStatus.CANCELLED)


# Calendar linking -----------------------------------------------------------

@app.get("/providers/{provider_id}/calendar/link", dependencies=[Depends(verify_key)], response_model=LinkResponse)
async def begin_link(provider_id: str, engine: SchedulingEngine = Depends(get_engine)):
    return LinkResponse(url=await engine.begin_calendar_link(provider_id))


@app.get("/calendar/callback")
async def link_callback(
    code: str = Query(...),
    state: str = Query(..., description="Correlation token minted by the link request"),
    engine: SchedulingEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
):
    """OAuth redirect target. The browser lands here from Google, so send it back to the dashboard."""
    dashboard = f"{settings.frontend_url.rstrip('/')}/dashboard"
    try:
        await engine.complete_calendar_link(state, code)
    except SchedulingError as exc:
        logger.warning("calendar link callback failed: %s", exc)
        return RedirectResponse(f"{dashboard}?calendar_error=true", status_code=303)
    return RedirectResponse(f"{dashboard}?calendar_connected=true", status_code=303)


# Provider profiles ----------------------------------------------------------

@app.get("/providers", dependencies=[Depends(verify_key)], response_model=list[ProviderProfile])
async def list_providers(engine: SchedulingEngine = Depends(get_engine)):
    return await engine.list_providers()


@app.get("/providers/{provider_id}", dependencies=[Depends(verify_key)], response_model=ProviderProfile)
async def get_provider(provider_id: str, engine: SchedulingEngine = Depends(get_engine)):
    return await engine.get_provider(provider_id)


@app.patch("/providers/{provider_id}/working-hours", dependencies=[Depends(verify_key)], response_model=ProviderProfile)
async def update_working_hours(
    provider_id: str,
    hours: WorkingHours,
    engine: SchedulingEngine = Depends(get_engine),
):
    """Body is ``{"start": "HH:mm", "end": "HH:mm"}``; malformed or inverted hours get a 422."""
    return await engine.update_working_hours(provider_id, hours)
