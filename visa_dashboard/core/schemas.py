"""
Pydantic views of the ORM models and request payloads. JSON uses camelCase keys;
responses serialize from ORM rows via from_attributes.
"""
import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class SettingsUpdate(CamelModel):
    """Body of POST /api/monitoring/settings. isActive is not accepted; start/stop own it."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore", str_strip_whitespace=True
    )

    check_interval: int = Field(60, ge=5, le=86400, description="Seconds between scheduled checks")
    visa_type: str = Field("B1B2", min_length=1, max_length=32)
    sound_alerts: bool = True
    browser_notifications: bool = True
    email_notifications: bool = False
    email_address: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    @field_validator("email_address", "telegram_bot_token", "telegram_chat_id", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("telegram_chat_id", mode="before")
    @classmethod
    def chat_id_to_str(cls, v):
        # Telegram chat ids are often sent as numbers
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("email_address")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not _EMAIL_RE.match(v):
            raise ValueError("emailAddress is not a valid email address")
        return v


class SettingsResponse(CamelModel):
    id: Optional[int] = None
    user_id: Optional[int] = None
    check_interval: int = 60
    visa_type: str = "B1B2"
    sound_alerts: bool = True
    browser_notifications: bool = True
    email_notifications: bool = False
    email_address: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    is_active: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AppointmentCheckResponse(CamelModel):
    id: Optional[int] = None
    user_id: Optional[int] = None
    check_time: Optional[datetime] = None
    status: str
    message: Optional[str] = None
    response_time_ms: Optional[int] = None
    error_details: Optional[str] = None


class ActivityLogResponse(CamelModel):
    id: Optional[int] = None
    user_id: Optional[int] = None
    action: str
    message: str
    timestamp: Optional[datetime] = None
    metadata: Optional[str] = Field(None, validation_alias="log_metadata", serialization_alias="metadata")


class SystemStatsResponse(CamelModel):
    total_checks: int = 0
    successful_checks: int = 0
    error_count: int = 0
    average_response_time_ms: float = 0.0
    last_updated: Optional[datetime] = None


class CheckResultResponse(CamelModel):
    is_available: bool
    message: str
    response_time_ms: int
    error: Optional[str] = None


class MonitoringStatusResponse(CamelModel):
    is_active: bool
    settings: Optional[SettingsResponse] = None
    recent_checks: List[AppointmentCheckResponse] = []
    last_check: Optional[AppointmentCheckResponse] = None


class ActionResponse(CamelModel):
    success: bool
    message: str


class EmailTestRequest(CamelModel):
    email: str = Field(..., min_length=3)


class TelegramTestRequest(CamelModel):
    bot_token: str = Field(..., min_length=1)
    chat_id: str = Field(..., min_length=1)

    @field_validator("chat_id", mode="before")
    @classmethod
    def chat_id_to_str(cls, v):
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class ActiveTimerResponse(CamelModel):
    """One active monitor timer (in-memory; not from DB)."""

    name: str = ""
    next_run_at: Optional[datetime] = None


def settings_to_dict(settings) -> Optional[dict]:
    """JSON-ready camelCase dict of a MonitoringSettings row (None passes through)."""
    if settings is None:
        return None
    return SettingsResponse.model_validate(settings).model_dump(by_alias=True, mode="json")
