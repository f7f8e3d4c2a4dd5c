"""
Persistence store: the only place that reads or writes the database.

Every call runs inside one session guarded by a store-wide lock, so timer threads,
the API threadpool and the stats read-modify-write never interleave.
"""
import logging
import threading
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select

from visa_dashboard.core.db import Database
from visa_dashboard.core.models import (
    SYSTEM_STATS_ID,
    ActivityLog,
    AppointmentCheck,
    MonitoringSettings,
    SystemStats,
    User,
    _utc_now,
)

logger = logging.getLogger(__name__)

# Columns a settings upsert may touch; is_active is owned by the monitoring lifecycle
SETTINGS_FIELDS = frozenset(
    {
        "check_interval",
        "visa_type",
        "sound_alerts",
        "browser_notifications",
        "email_notifications",
        "email_address",
        "telegram_bot_token",
        "telegram_chat_id",
    }
)


class Store:
    def __init__(self, database: Database):
        self.database = database
        self._lock = threading.RLock()
        self.database.init()
        self._ensure_system_stats()

    # Users

    def get_user(self, user_id: int) -> Optional[User]:
        with self._lock, self.database.session_scope() as session:
            return session.get(User, user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._lock, self.database.session_scope() as session:
            return session.execute(select(User).where(User.username == username)).scalars().first()

    def create_user(self, username: str) -> User:
        with self._lock, self.database.session_scope() as session:
            user = User(username=username, created_at=_utc_now())
            session.add(user)
            session.flush()
            logger.info(f"Created user {username} (id={user.id})")
            return user

    def ensure_user(self, username: str) -> User:
        """Return the user with this username, creating it on first call."""
        with self._lock:
            user = self.get_user_by_username(username)
            if user is None:
                user = self.create_user(username)
            return user

    # Monitoring settings

    def get_monitoring_settings(self, user_id: int) -> Optional[MonitoringSettings]:
        with self._lock, self.database.session_scope() as session:
            return (
                session.execute(select(MonitoringSettings).where(MonitoringSettings.user_id == user_id))
                .scalars().first()
            )

    def get_active_monitoring_settings(self) -> List[MonitoringSettings]:
        """All settings rows persisted with is_active set (used to reconcile timers at startup)."""
        with self._lock, self.database.session_scope() as session:
            return list(
                session.execute(select(MonitoringSettings).where(MonitoringSettings.is_active.is_(True)))
                .scalars().all()
            )

    def upsert_monitoring_settings(self, user_id: int, values: Dict[str, Any]) -> MonitoringSettings:
        """
        Create or update the user's settings. New row: unspecified fields take column defaults.
        Existing row: only the given fields change. updated_at always advances.
        """
        unknown = set(values) - SETTINGS_FIELDS
        if unknown:
            raise ValueError(f"Unknown settings fields: {sorted(unknown)}")
        with self._lock, self.database.session_scope() as session:
            row = (
                session.execute(select(MonitoringSettings).where(MonitoringSettings.user_id == user_id))
                .scalars().first()
            )
            now = _utc_now()
            if row:
                for key, value in values.items():
                    setattr(row, key, value)
                row.updated_at = now
            else:
                row = MonitoringSettings(user_id=user_id, created_at=now, updated_at=now, **values)
                session.add(row)
            session.flush()
            return row

    def set_monitoring_active(self, user_id: int, active: bool) -> Optional[MonitoringSettings]:
        """Flip is_active. Returns None (and changes nothing) when the user has no settings."""
        with self._lock, self.database.session_scope() as session:
            row = (
                session.execute(select(MonitoringSettings).where(MonitoringSettings.user_id == user_id))
                .scalars().first()
            )
            if row is None:
                return None
            row.is_active = active
            row.updated_at = _utc_now()
            return row

    # Appointment checks

    def create_appointment_check(
        self,
        user_id: int,
        status: str,
        message: Optional[str],
        response_time_ms: int,
        error_details: Optional[str] = None,
    ) -> AppointmentCheck:
        with self._lock, self.database.session_scope() as session:
            check = AppointmentCheck(
                user_id=user_id,
                check_time=_utc_now(),
                status=status,
                message=message,
                response_time_ms=response_time_ms,
                error_details=error_details,
            )
            session.add(check)
            session.flush()
            return check

    def get_recent_appointment_checks(self, user_id: int, limit: int = 50) -> List[AppointmentCheck]:
        """Newest first."""
        with self._lock, self.database.session_scope() as session:
            stmt = (
                select(AppointmentCheck)
                .where(AppointmentCheck.user_id == user_id)
                .order_by(AppointmentCheck.check_time.desc(), AppointmentCheck.id.desc())
                .limit(limit)
            )
            return list(session.execute(stmt).scalars().all())

    # Activity logs

    def create_activity_log(
        self, user_id: int, action: str, message: str, metadata: Optional[str] = None
    ) -> ActivityLog:
        with self._lock, self.database.session_scope() as session:
            log = ActivityLog(
                user_id=user_id,
                action=action,
                message=message,
                timestamp=_utc_now(),
                log_metadata=metadata,
            )
            session.add(log)
            session.flush()
            return log

    def get_activity_logs(self, user_id: int, limit: int = 100) -> List[ActivityLog]:
        """Newest first."""
        with self._lock, self.database.session_scope() as session:
            stmt = (
                select(ActivityLog)
                .where(ActivityLog.user_id == user_id)
                .order_by(ActivityLog.timestamp.desc(), ActivityLog.id.desc())
                .limit(limit)
            )
            return list(session.execute(stmt).scalars().all())

    def clear_activity_logs(self, user_id: int) -> int:
        """Delete this user's activity logs only. Appointment checks are untouched."""
        with self._lock, self.database.session_scope() as session:
            result = session.execute(delete(ActivityLog).where(ActivityLog.user_id == user_id))
            return result.rowcount or 0

    # System stats

    def _ensure_system_stats(self) -> None:
        with self._lock, self.database.session_scope() as session:
            if session.get(SystemStats, SYSTEM_STATS_ID) is None:
                session.add(SystemStats(id=SYSTEM_STATS_ID, last_updated=_utc_now()))
                logger.debug("Seeded system stats row")

    def get_system_stats(self) -> Optional[SystemStats]:
        with self._lock, self.database.session_scope() as session:
            return session.get(SystemStats, SYSTEM_STATS_ID)

    def update_system_stats(
        self, response_time_ms: float, success: bool, error: bool = False
    ) -> Optional[SystemStats]:
        """
        Count one finished check and fold its response time into the running mean.
        Returns None without updating when the stats row is missing.
        """
        with self._lock, self.database.session_scope() as session:
            stats = session.get(SystemStats, SYSTEM_STATS_ID)
            if stats is None:
                logger.warning("System stats row missing; check not counted")
                return None
            previous_total = stats.total_checks
            stats.total_checks = previous_total + 1
            stats.successful_checks += 1 if success else 0
            stats.error_count += 1 if error else 0
            stats.average_response_time_ms = (
                stats.average_response_time_ms * previous_total + response_time_ms
            ) / stats.total_checks
            stats.last_updated = _utc_now()
            return stats
