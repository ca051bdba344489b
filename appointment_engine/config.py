"""Environment-driven settings. Values come from the process env or a .env file."""
from __future__ import annotations

import os
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]


class Settings(BaseModel):
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = "http://localhost:8000/calendar/callback"
    calendar_api_base_url: str = GOOGLE_CALENDAR_API
    token_url: str = GOOGLE_TOKEN_URL
    auth_url: str = GOOGLE_AUTH_URL
    calendar_timeout_seconds: float = Field(default=15.0, gt=0)
    token_refresh_skew_seconds: int = Field(default=300, ge=0)
    slot_minutes: int = Field(default=30, gt=0)
    api_key: str = ""
    frontend_url: str = "http://localhost:5173"

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            google_client_id=os.getenv("GOOGLE_CLIENT_ID", ""),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET", ""),
            google_redirect_uri=os.getenv(
                "GOOGLE_REDIRECT_URI", "http://localhost:8000/calendar/callback"
            ),
            calendar_api_base_url=os.getenv("CALENDAR_API_BASE_URL", GOOGLE_CALENDAR_API),
            token_url=os.getenv("GOOGLE_TOKEN_URL", GOOGLE_TOKEN_URL),
            auth_url=os.getenv("GOOGLE_AUTH_URL", GOOGLE_AUTH_URL),
            calendar_timeout_seconds=float(os.getenv("CALENDAR_TIMEOUT_SECONDS", "15")),
            token_refresh_skew_seconds=int(os.getenv("TOKEN_REFRESH_SKEW_SECONDS", "300")),
            slot_minutes=int(os.getenv("SLOT_MINUTES", "30")),
            api_key=os.getenv("SCHEDULER_API_KEY", ""),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173"),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
