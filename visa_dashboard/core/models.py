"""
Core DB models: users, per-user monitoring settings, appointment check history,
activity audit trail and the global stats singleton.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text

from visa_dashboard.core.db import Base

CHECK_STATUS_NO_APPOINTMENTS = "no_appointments"
CHECK_STATUS_AVAILABLE = "appointments_available"
CHECK_STATUS_ERROR = "error"

SYSTEM_STATS_ID = 1


def _utc_now() -> datetime:
    """UTC now as naive datetime for DateTime(timezone=False) columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    """Account owning monitoring config. The demo user is created at startup and never deleted."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=False), default=_utc_now, nullable=False)


class MonitoringSettings(Base):
    """Per-user monitoring config. is_active mirrors whether a timer is registered for the user."""
    __tablename__ = "monitoring_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False, index=True)
    check_interval = Column(Integer, nullable=False, default=60)  # seconds
    visa_type = Column(String(32), nullable=False, default="B1B2")
    sound_alerts = Column(Boolean, nullable=False, default=True)
    browser_notifications = Column(Boolean, nullable=False, default=True)
    email_notifications = Column(Boolean, nullable=False, default=False)
    email_address = Column(String(320), nullable=True)
    telegram_bot_token = Column(String(255), nullable=True)
    telegram_chat_id = Column(String(64), nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=False), default=_utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=False), default=_utc_now, nullable=False)


class AppointmentCheck(Base):
    """One probe result. Never mutated."""
    __tablename__ = "appointment_checks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    check_time = Column(DateTime(timezone=False), default=_utc_now, nullable=False, index=True)
    status = Column(String(32), nullable=False)  # no_appointments | appointments_available | error
    message = Column(Text, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    error_details = Column(Text, nullable=True)


class ActivityLog(Base):
    """Human-readable audit trail entry. metadata is an opaque JSON string."""
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    action = Column(String(64), nullable=False)
    message = Column(Text, nullable=False)
    timestamp = Column(DateTime(timezone=False), default=_utc_now, nullable=False, index=True)
    # "metadata" is reserved on declarative classes
    log_metadata = Column("metadata", Text, nullable=True)


class SystemStats(Base):
    """Global counters; a single row with id SYSTEM_STATS_ID, seeded by the store."""
    __tablename__ = "system_stats"

    id = Column(Integer, primary_key=True)
    total_checks = Column(Integer, nullable=False, default=0)
    successful_checks = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    average_response_time_ms = Column(Float, nullable=False, default=0.0)
    last_updated = Column(DateTime(timezone=False), default=_utc_now, nullable=False)
