"""
Monitoring lifecycle: per-user Stopped/Active state backed by one recurring timer,
and the check pipeline (probe -> persist -> notify -> stats -> broadcast).

A check never raises to its caller; faults are recorded as error checks.
"""
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from visa_dashboard.core.errors import NoSettingsError, ProbeError, ValidationError
from visa_dashboard.core.models import (
    CHECK_STATUS_AVAILABLE,
    CHECK_STATUS_ERROR,
    CHECK_STATUS_NO_APPOINTMENTS,
    ActivityLog,
    AppointmentCheck,
    MonitoringSettings,
)
from visa_dashboard.core.schemas import SettingsUpdate, settings_to_dict
from visa_dashboard.core.store import Store
from visa_dashboard.core.task_manager import TaskManager
from visa_dashboard.monitoring.probers import AppointmentProber
from visa_dashboard.notifications import NotificationService
from visa_dashboard.notifications.service import DEFAULT_EMBASSY_NAME
from visa_dashboard.realtime import Broadcaster, EventType

ERROR_CHECK_MESSAGE = "Error checking appointment availability"

TRIGGER_MANUAL = "manual"
TRIGGER_SCHEDULED = "scheduled"


@dataclass
class CheckResult:
    is_available: bool
    message: str
    response_time_ms: int
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "isAvailable": self.is_available,
            "message": self.message,
            "responseTimeMs": self.response_time_ms,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class MonitoringStatus:
    is_active: bool
    settings: Optional[MonitoringSettings]
    recent_checks: List[AppointmentCheck] = field(default_factory=list)
    last_check: Optional[AppointmentCheck] = None


def monitor_task_name(user_id: int) -> str:
    return f"monitor:{user_id}"


def _elapsed_ms(start: float) -> int:
    return int(round((time.monotonic() - start) * 1000))


class MonitoringService:
    def __init__(
        self,
        store: Store,
        task_manager: TaskManager,
        notification_service: NotificationService,
        prober: AppointmentProber,
        broadcaster: Optional[Broadcaster] = None,
        probe_timeout: float = 30,
        recent_checks_limit: int = 10,
        embassy_name: str = DEFAULT_EMBASSY_NAME,
        probe_workers: int = 4,
    ):
        self.store = store
        self.task_manager = task_manager
        self.notification_service = notification_service
        self.prober = prober
        self.broadcaster = broadcaster
        self.probe_timeout = probe_timeout
        self.recent_checks_limit = recent_checks_limit
        self.embassy_name = embassy_name
        self.logger = logging.getLogger(self.__class__.__name__)
        # A probe that outlives probe_timeout keeps its worker until it returns;
        # once probe_workers of them hang, later checks queue and time out too.
        self._probe_executor = ThreadPoolExecutor(max_workers=probe_workers, thread_name_prefix="probe")
        # Serializes the timer registry and is_active writes per user
        self._user_locks: Dict[int, threading.RLock] = {}
        self._user_locks_guard = threading.Lock()

    def _user_lock(self, user_id: int) -> threading.RLock:
        with self._user_locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.RLock()
            return lock

    # Checks

    def check_appointment_availability(self, user_id: int, trigger: str = TRIGGER_MANUAL) -> CheckResult:
        """Run one probe for the user and record it. Never raises."""
        start = time.monotonic()
        try:
            self.store.create_activity_log(
                user_id,
                f"{trigger}_check",
                f"{trigger.capitalize()} appointment availability check initiated",
            )

            probe = self._run_probe()
            response_time = _elapsed_ms(start)
            result = CheckResult(probe.is_available, probe.message, response_time)

            self.store.create_appointment_check(
                user_id,
                CHECK_STATUS_AVAILABLE if probe.is_available else CHECK_STATUS_NO_APPOINTMENTS,
                probe.message,
                response_time,
            )
            self.store.create_activity_log(
                user_id,
                "check_result",
                f"Appointment check completed: {probe.message}",
                json.dumps({"responseTime": response_time, "isAvailable": probe.is_available}),
            )

            if probe.is_available:
                self._handle_appointment_available(user_id)

            self.store.update_system_stats(response_time, success=True)
            self.logger.info(f"Check for user {user_id} ({trigger}): {probe.message} in {response_time}ms")
        except Exception as e:
            result = self._record_check_error(user_id, start, e)

        self._broadcast(user_id, EventType.APPOINTMENT_CHECK, result.to_dict())
        return result

    def _run_probe(self):
        future = self._probe_executor.submit(self.prober.probe)
        try:
            return future.result(timeout=self.probe_timeout)
        except FutureTimeoutError:
            future.cancel()
            raise ProbeError(f"Probe timed out after {self.probe_timeout}s")

    def _record_check_error(self, user_id: int, start: float, error: Exception) -> CheckResult:
        response_time = _elapsed_ms(start)
        error_message = getattr(error, "message", None) or str(error) or error.__class__.__name__
        self.logger.error(f"Check for user {user_id} failed: {error_message}", exc_info=not isinstance(error, ProbeError))
        try:
            self.store.create_appointment_check(
                user_id, CHECK_STATUS_ERROR, ERROR_CHECK_MESSAGE, response_time, error_details=error_message
            )
            self.store.create_activity_log(
                user_id,
                "check_error",
                f"Error during appointment check: {error_message}",
                json.dumps({"responseTime": response_time, "error": error_message}),
            )
            self.store.update_system_stats(response_time, success=False, error=True)
        except Exception:
            self.logger.exception(f"Could not record failed check for user {user_id}")
        return CheckResult(False, ERROR_CHECK_MESSAGE, response_time, error=error_message)

    def _handle_appointment_available(self, user_id: int) -> None:
        self.store.create_activity_log(user_id, "appointment_found", "Appointment availability detected!")
        settings = self.store.get_monitoring_settings(user_id)
        if settings is None:
            self.logger.info(f"User {user_id} has no settings; skipping notifications")
            return
        outcomes = self.notification_service.notify_appointment_available(settings, self.embassy_name)
        for channel, error in outcomes.items():
            if error is None:
                continue
            self.store.create_activity_log(
                user_id,
                "notification_failed",
                f"Failed to send {channel} notification: {error}",
                json.dumps({"channel": channel, "error": error}),
            )

    # Lifecycle

    def start_monitoring(self, user_id: int) -> MonitoringSettings:
        """Stopped -> Active. Restarting an active monitor replaces its timer."""
        with self._user_lock(user_id):
            settings = self.store.get_monitoring_settings(user_id)
            if settings is None:
                raise NoSettingsError(user_id)

            self.task_manager.cancel_task(monitor_task_name(user_id))
            self._schedule(user_id, settings.check_interval)
            settings = self.store.set_monitoring_active(user_id, True)

            self.store.create_activity_log(
                user_id,
                "monitoring_started",
                f"Monitoring started for {settings.visa_type} visa appointments ({settings.check_interval}s interval)",
            )
            self.logger.info(f"Monitoring started for user {user_id} every {settings.check_interval}s")
            self._broadcast(user_id, EventType.MONITORING_STARTED, {"isActive": True})
            return settings

    def stop_monitoring(self, user_id: int) -> None:
        """Active -> Stopped. A no-op transition (but still logged) when already stopped."""
        with self._user_lock(user_id):
            if self.task_manager.cancel_task(monitor_task_name(user_id)):
                self.logger.info(f"Monitoring stopped for user {user_id}")
            self.store.set_monitoring_active(user_id, False)
            self.store.create_activity_log(user_id, "monitoring_stopped", "Monitoring stopped")
            self._broadcast(user_id, EventType.MONITORING_STOPPED, {"isActive": False})

    def _schedule(self, user_id: int, interval: int) -> None:
        self.task_manager.schedule_recurring(
            monitor_task_name(user_id),
            lambda: self.check_appointment_availability(user_id, trigger=TRIGGER_SCHEDULED),
            interval,
        )

    def is_monitoring_active(self, user_id: int) -> bool:
        return self.task_manager.has_task(monitor_task_name(user_id))

    def get_monitoring_status(self, user_id: int, limit: Optional[int] = None) -> MonitoringStatus:
        settings = self.store.get_monitoring_settings(user_id)
        recent_checks = self.store.get_recent_appointment_checks(user_id, limit or self.recent_checks_limit)
        return MonitoringStatus(
            is_active=self.is_monitoring_active(user_id),
            settings=settings,
            recent_checks=recent_checks,
            last_check=recent_checks[0] if recent_checks else None,
        )

    # Settings and activity

    def get_settings(self, user_id: int) -> Optional[MonitoringSettings]:
        return self.store.get_monitoring_settings(user_id)

    def save_settings(self, user_id: int, payload: Dict[str, Any]) -> MonitoringSettings:
        """Validate and upsert the user's settings; re-arm the timer if the interval changed while active."""
        try:
            update = SettingsUpdate.model_validate(payload or {})
        except PydanticValidationError as e:
            raise ValidationError(_format_validation_error(e), {"errors": e.errors(include_url=False)}) from e

        with self._user_lock(user_id):
            existing = self.store.get_monitoring_settings(user_id)
            values = update.model_dump(exclude_unset=existing is not None)
            settings = self.store.upsert_monitoring_settings(user_id, values)

            if (
                existing is not None
                and existing.check_interval != settings.check_interval
                and self.is_monitoring_active(user_id)
            ):
                self._schedule(user_id, settings.check_interval)
                self.store.create_activity_log(
                    user_id,
                    "monitoring_rescheduled",
                    f"Check interval changed from {existing.check_interval}s to {settings.check_interval}s",
                )

            self._broadcast(user_id, EventType.SETTINGS_UPDATED, settings_to_dict(settings))
            return settings

    def get_activity_logs(self, user_id: int, limit: int = 50) -> List[ActivityLog]:
        return self.store.get_activity_logs(user_id, limit)

    def clear_activity_logs(self, user_id: int) -> int:
        removed = self.store.clear_activity_logs(user_id)
        self.logger.info(f"Cleared {removed} activity log(s) for user {user_id}")
        self._broadcast(user_id, EventType.LOGS_CLEARED, {})
        return removed

    # Process lifecycle

    def restore_active_monitors(self, resume: bool = True) -> int:
        """
        Reconcile persisted is_active flags with the (empty) timer registry after a restart:
        resume those monitors, or mark them stopped. Returns how many were resumed.
        """
        resumed = 0
        for settings in self.store.get_active_monitoring_settings():
            with self._user_lock(settings.user_id):
                if self.is_monitoring_active(settings.user_id):
                    continue
                if resume:
                    self.logger.info(f"Resuming monitoring for user {settings.user_id}")
                    self.start_monitoring(settings.user_id)
                    resumed += 1
                else:
                    self.store.set_monitoring_active(settings.user_id, False)
                    self.logger.info(f"Monitoring for user {settings.user_id} was active at shutdown; marked stopped")
        return resumed

    def shutdown(self) -> None:
        for timer in self.task_manager.get_active_timers():
            if timer["name"].startswith("monitor:"):
                self.task_manager.cancel_task(timer["name"])
        self._probe_executor.shutdown(wait=False)

    def _broadcast(self, user_id: int, event_type: EventType, data: Any) -> None:
        if self.broadcaster is None:
            return
        try:
            self.broadcaster.broadcast(user_id, event_type, data)
        except Exception as e:
            self.logger.warning(f"Broadcast of {event_type.value} to user {user_id} failed: {e}")


def _format_validation_error(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors(include_url=False):
        location = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg')}" if location else str(item.get("msg")))
    return "Invalid settings: " + "; ".join(parts)
