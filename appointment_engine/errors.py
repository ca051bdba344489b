"""Error taxonomy shared by the scheduling engine and its adapters."""


class SchedulingError(Exception):
    """Base class for every error the engine raises on purpose."""


class ValidationError(SchedulingError):
    """Malformed time range (start >= end, naive timestamp, or in the past)."""


class ConflictError(SchedulingError):
    """Requested range overlaps a scheduled appointment at commit time."""

    def __init__(self, message: str, conflicting_ids: list[str] | None = None) -> None:
        super().__init__(message)
        self.conflicting_ids = conflicting_ids or []


class IllegalTransitionError(SchedulingError):
    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"cannot move appointment from {current!r} to {requested!r}")
        self.current = current
        self.requested = requested


class NotFoundError(SchedulingError):
    pass


class CalendarSyncError(SchedulingError):
    """External calendar could not be used for this request."""


class AdapterUnavailableError(CalendarSyncError):
    """Calendar provider unreachable, erroring, or timed out."""


class AuthExchangeError(CalendarSyncError):
    """Authorization code could not be exchanged for tokens."""


class RefreshError(CalendarSyncError):
    """Refresh token rejected, missing, or sync disabled for the provider."""
