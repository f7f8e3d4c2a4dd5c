"""
Tests for the monitoring lifecycle and the check pipeline
"""
import json
import threading
import time
from unittest.mock import patch

import pytest
import requests

from visa_dashboard.core.errors import NoSettingsError, ProbeError, ValidationError
from visa_dashboard.core.models import CHECK_STATUS_AVAILABLE, CHECK_STATUS_ERROR, CHECK_STATUS_NO_APPOINTMENTS
from visa_dashboard.core.schemas import settings_to_dict
from visa_dashboard.monitoring.service import (
    ERROR_CHECK_MESSAGE,
    TRIGGER_SCHEDULED,
    MonitoringService,
    monitor_task_name,
)
from visa_dashboard.notifications import NotificationService

from conftest import FakeProber


def actions(store, user_id):
    return [log.action for log in store.get_activity_logs(user_id)]


class TestCheckAppointmentAvailability:
    """Tests for a single availability check"""

    def test_no_appointments(self, service, store, user, broadcaster):
        result = service.check_appointment_availability(user.id)

        assert result.is_available is False
        assert result.message == "No Appointments Available"
        assert result.error is None
        assert result.response_time_ms >= 0

        (check,) = store.get_recent_appointment_checks(user.id)
        assert check.status == CHECK_STATUS_NO_APPOINTMENTS
        assert check.message == "No Appointments Available"

        assert actions(store, user.id) == ["check_result", "manual_check"]
        metadata = json.loads(store.get_activity_logs(user.id)[0].log_metadata)
        assert metadata["isAvailable"] is False

        stats = store.get_system_stats()
        assert stats.total_checks == 1
        assert stats.successful_checks == 1
        assert stats.error_count == 0

        assert broadcaster.events == [(user.id, "appointment_check", result.to_dict())]

    def test_available_notifies(self, service, store, user, prober, notifier):
        """Test a positive probe logs appointment_found and fans out notifications"""
        prober.available = True
        store.upsert_monitoring_settings(user.id, {"email_notifications": True, "email_address": "a@b.co"})

        result = service.check_appointment_availability(user.id)

        assert result.is_available is True
        assert store.get_recent_appointment_checks(user.id)[0].status == CHECK_STATUS_AVAILABLE
        assert "appointment_found" in actions(store, user.id)
        notifier.notify_appointment_available.assert_called_once()
        settings_arg = notifier.notify_appointment_available.call_args[0][0]
        assert settings_arg.email_address == "a@b.co"

    def test_available_without_settings_skips_notifications(self, service, store, user, prober, notifier):
        prober.available = True

        result = service.check_appointment_availability(user.id)

        assert result.is_available is True
        notifier.notify_appointment_available.assert_not_called()

    def test_notification_failure_is_logged(self, service, store, user, prober, notifier):
        """Test a failed channel is recorded but the check still succeeds"""
        prober.available = True
        store.upsert_monitoring_settings(user.id, {"telegram_bot_token": "t", "telegram_chat_id": "1"})
        notifier.notify_appointment_available.return_value = {"telegram": "Telegram API error: 401"}

        result = service.check_appointment_availability(user.id)

        assert result.error is None
        failed = [log for log in store.get_activity_logs(user.id) if log.action == "notification_failed"]
        assert len(failed) == 1
        assert "telegram" in failed[0].message
        assert store.get_system_stats().successful_checks == 1

    def test_probe_error_recorded(self, service, store, user, prober, broadcaster):
        """Test a failing probe becomes an error check and never raises"""
        prober.error = ProbeError("site down")

        result = service.check_appointment_availability(user.id)

        assert result.is_available is False
        assert result.message == ERROR_CHECK_MESSAGE
        assert result.error == "site down"

        (check,) = store.get_recent_appointment_checks(user.id)
        assert check.status == CHECK_STATUS_ERROR
        assert check.error_details == "site down"
        assert "check_error" in actions(store, user.id)

        stats = store.get_system_stats()
        assert stats.total_checks == 1
        assert stats.successful_checks == 0
        assert stats.error_count == 1

        (_, event_type, data) = broadcaster.events[-1]
        assert event_type == "appointment_check"
        assert data["error"] == "site down"

    def test_telegram_token_not_exposed(self, store, task_manager, broadcaster, user):
        """Test a Telegram connection error never puts the bot token into the activity log"""
        token = "123456:SECRET-token"
        store.upsert_monitoring_settings(user.id, {"telegram_bot_token": token, "telegram_chat_id": "42"})
        service = MonitoringService(store, task_manager, NotificationService(), FakeProber(available=True), broadcaster)
        error = requests.ConnectionError(
            "HTTPSConnectionPool(host='api.telegram.org', port=443): "
            f"Max retries exceeded with url: /bot{token}/sendMessage"
        )
        try:
            with patch("visa_dashboard.notifications.service.requests.post", side_effect=error):
                service.check_appointment_availability(user.id)
        finally:
            service.shutdown()

        logs = store.get_activity_logs(user.id)
        assert "notification_failed" in [log.action for log in logs]
        for log in logs:
            assert token not in log.message
            assert token not in (log.log_metadata or "")

    def test_unexpected_error_recorded(self, service, store, user, prober):
        prober.error = RuntimeError("unexpected")
        result = service.check_appointment_availability(user.id)
        assert result.error == "unexpected"

    def test_probe_timeout(self, store, task_manager, notifier, broadcaster, user):
        slow = FakeProber(delay=0.5)
        service = MonitoringService(store, task_manager, notifier, slow, broadcaster, probe_timeout=0.05)
        try:
            result = service.check_appointment_availability(user.id)
        finally:
            service.shutdown()

        assert "timed out" in result.error
        assert store.get_recent_appointment_checks(user.id)[0].status == CHECK_STATUS_ERROR

    def test_hung_probes_exhaust_the_worker_pool(self, store, task_manager, notifier, broadcaster, user):
        """Test a probe left running past its timeout holds its worker, so the pool size bounds hung probes"""
        slow = FakeProber(delay=0.3)
        service = MonitoringService(
            store, task_manager, notifier, slow, broadcaster, probe_timeout=0.05, probe_workers=1
        )
        try:
            first = service.check_appointment_availability(user.id)
            second = service.check_appointment_availability(user.id)
        finally:
            service.shutdown()

        assert "timed out" in first.error
        assert "timed out" in second.error
        # The second probe never started: the only worker was still busy
        assert slow.calls == 1

    def test_scheduled_trigger_logged(self, service, store, user):
        service.check_appointment_availability(user.id, trigger=TRIGGER_SCHEDULED)
        assert "scheduled_check" in actions(store, user.id)

    def test_without_broadcaster(self, store, task_manager, notifier, prober, user):
        service = MonitoringService(store, task_manager, notifier, prober)
        try:
            assert service.check_appointment_availability(user.id).is_available is False
        finally:
            service.shutdown()


class TestMonitoringLifecycle:
    """Tests for start/stop transitions"""

    def test_start_without_settings(self, service, user, task_manager):
        with pytest.raises(NoSettingsError) as exc_info:
            service.start_monitoring(user.id)

        assert exc_info.value.message == "No monitoring settings found"
        assert exc_info.value.status_code == 404
        assert not task_manager.has_task(monitor_task_name(user.id))

    def test_start(self, service, store, user, broadcaster):
        store.upsert_monitoring_settings(user.id, {"check_interval": 30})

        settings = service.start_monitoring(user.id)

        assert settings.is_active is True
        assert service.is_monitoring_active(user.id)
        assert store.get_monitoring_settings(user.id).is_active is True
        log = store.get_activity_logs(user.id)[0]
        assert log.action == "monitoring_started"
        assert "30s" in log.message
        assert broadcaster.events[-1] == (user.id, "monitoring_started", {"isActive": True})

    def test_restart_keeps_single_timer(self, service, store, user, task_manager):
        store.upsert_monitoring_settings(user.id, {"check_interval": 30})
        service.start_monitoring(user.id)
        service.start_monitoring(user.id)

        names = [t["name"] for t in task_manager.get_active_timers()]
        assert names == [monitor_task_name(user.id)]

    def test_stop(self, service, store, user, broadcaster):
        store.upsert_monitoring_settings(user.id, {"check_interval": 30})
        service.start_monitoring(user.id)

        service.stop_monitoring(user.id)

        assert not service.is_monitoring_active(user.id)
        assert store.get_monitoring_settings(user.id).is_active is False
        assert actions(store, user.id)[0] == "monitoring_stopped"
        assert broadcaster.events[-1] == (user.id, "monitoring_stopped", {"isActive": False})

    def test_stop_when_never_started(self, service, store, user):
        """Test stopping is safe without a timer or settings"""
        service.stop_monitoring(user.id)
        assert actions(store, user.id) == ["monitoring_stopped"]
        assert store.get_monitoring_settings(user.id) is None

    def test_users_are_independent(self, service, store, user):
        other = store.create_user("other")
        store.upsert_monitoring_settings(user.id, {"check_interval": 30})
        store.upsert_monitoring_settings(other.id, {"check_interval": 30})
        service.start_monitoring(user.id)
        service.start_monitoring(other.id)

        service.stop_monitoring(user.id)

        assert not service.is_monitoring_active(user.id)
        assert service.is_monitoring_active(other.id)

    def test_status(self, service, store, user):
        store.upsert_monitoring_settings(user.id, {"check_interval": 30})
        service.check_appointment_availability(user.id)
        service.check_appointment_availability(user.id)

        status = service.get_monitoring_status(user.id)

        assert status.is_active is False
        assert status.settings.check_interval == 30
        assert len(status.recent_checks) == 2
        assert status.last_check.id == status.recent_checks[0].id

    def test_status_without_checks(self, service, user):
        status = service.get_monitoring_status(user.id)
        assert status.settings is None
        assert status.recent_checks == []
        assert status.last_check is None


class TestSettings:
    """Tests for validating and saving settings"""

    def test_save_creates_with_defaults(self, service, user, broadcaster):
        settings = service.save_settings(user.id, {"checkInterval": 45})

        assert settings.check_interval == 45
        assert settings.visa_type == "B1B2"
        (_, event_type, data) = broadcaster.events[-1]
        assert event_type == "settings_updated"
        assert data["checkInterval"] == 45

    def test_partial_update_keeps_other_fields(self, service, user):
        service.save_settings(user.id, {"checkInterval": 45, "visaType": "F1"})
        settings = service.save_settings(user.id, {"soundAlerts": False})

        assert settings.check_interval == 45
        assert settings.visa_type == "F1"
        assert settings.sound_alerts is False

    def test_repeated_identical_save_is_idempotent(self, service, user):
        """Test saving the same payload twice changes nothing but updatedAt"""
        payload = {"checkInterval": 45, "visaType": "F1", "emailNotifications": True, "emailAddress": "a@b.co"}
        first = service.save_settings(user.id, payload)
        second = service.save_settings(user.id, payload)

        first_state = settings_to_dict(first)
        second_state = settings_to_dict(second)
        first_state.pop("updatedAt")
        second_state.pop("updatedAt")

        assert second_state == first_state
        assert second.updated_at >= first.updated_at

    def test_interval_too_small(self, service, user):
        with pytest.raises(ValidationError) as exc_info:
            service.save_settings(user.id, {"checkInterval": 1})
        assert "checkInterval" in exc_info.value.message

    def test_invalid_email(self, service, user):
        with pytest.raises(ValidationError):
            service.save_settings(user.id, {"emailAddress": "not-an-email"})

    def test_blank_optional_fields_become_none(self, service, user):
        settings = service.save_settings(user.id, {"emailAddress": "  ", "telegramChatId": 12345})
        assert settings.email_address is None
        assert settings.telegram_chat_id == "12345"

    def test_is_active_not_settable(self, service, user):
        settings = service.save_settings(user.id, {"isActive": True})
        assert settings.is_active is False
        assert not service.is_monitoring_active(user.id)

    def test_interval_change_reschedules_active_monitor(self, service, store, user, task_manager):
        service.save_settings(user.id, {"checkInterval": 30})
        service.start_monitoring(user.id)
        before = task_manager.get_active_timers()[0]["next_run_at"]

        service.save_settings(user.id, {"checkInterval": 600})

        after = task_manager.get_active_timers()[0]["next_run_at"]
        assert after > before
        assert actions(store, user.id)[0] == "monitoring_rescheduled"

    def test_interval_change_while_stopped_does_not_schedule(self, service, store, user):
        service.save_settings(user.id, {"checkInterval": 30})
        service.save_settings(user.id, {"checkInterval": 600})
        assert not service.is_monitoring_active(user.id)
        assert "monitoring_rescheduled" not in actions(store, user.id)


class TestActivityAndRestore:
    """Tests for activity log access and restart reconciliation"""

    def test_clear_activity_logs(self, service, store, user, broadcaster):
        service.check_appointment_availability(user.id)

        assert service.clear_activity_logs(user.id) == 2
        assert service.get_activity_logs(user.id) == []
        assert broadcaster.events[-1] == (user.id, "logs_cleared", {})

    def test_restore_resumes_active_monitors(self, service, store, user):
        store.upsert_monitoring_settings(user.id, {"check_interval": 30})
        store.set_monitoring_active(user.id, True)

        assert service.restore_active_monitors(resume=True) == 1
        assert service.is_monitoring_active(user.id)

    def test_restore_without_resume_marks_stopped(self, service, store, user):
        store.upsert_monitoring_settings(user.id, {"check_interval": 30})
        store.set_monitoring_active(user.id, True)

        assert service.restore_active_monitors(resume=False) == 0
        assert not service.is_monitoring_active(user.id)
        assert store.get_monitoring_settings(user.id).is_active is False

    def test_shutdown_cancels_monitors(self, service, store, user, task_manager):
        store.upsert_monitoring_settings(user.id, {"check_interval": 30})
        service.start_monitoring(user.id)

        service.shutdown()

        assert task_manager.get_active_timers() == []


class TestConcurrentLifecycle:
    """Tests for start/stop/reschedule racing on the same user"""

    def test_stop_during_start_leaves_consistent_state(self, service, store, user, task_manager, monkeypatch):
        """Test a stop arriving mid-start never leaves isActive set without a timer"""
        store.upsert_monitoring_settings(user.id, {"check_interval": 30})
        original = task_manager.schedule_recurring
        stoppers = []

        def schedule_then_stop(name, callback, interval):
            original(name, callback, interval)
            if not stoppers:
                thread = threading.Thread(target=service.stop_monitoring, args=(user.id,))
                stoppers.append(thread)
                thread.start()
                time.sleep(0.05)  # let the stop reach the service

        monkeypatch.setattr(task_manager, "schedule_recurring", schedule_then_stop)
        service.start_monitoring(user.id)
        stoppers[0].join(2)

        assert not stoppers[0].is_alive()
        assert not task_manager.has_task(monitor_task_name(user.id))
        assert store.get_monitoring_settings(user.id).is_active is False

    def test_stop_during_interval_change_leaves_no_timer(self, service, store, user, task_manager, monkeypatch):
        """Test a stop arriving mid-reschedule is not undone by the new timer"""
        service.save_settings(user.id, {"checkInterval": 30})
        service.start_monitoring(user.id)
        original = service.is_monitoring_active
        stoppers = []

        def active_then_stop(user_id):
            active = original(user_id)
            if not stoppers:
                thread = threading.Thread(target=service.stop_monitoring, args=(user_id,))
                stoppers.append(thread)
                thread.start()
                time.sleep(0.05)  # let the stop reach the service
            return active

        monkeypatch.setattr(service, "is_monitoring_active", active_then_stop)
        service.save_settings(user.id, {"checkInterval": 600})
        stoppers[0].join(2)

        assert not stoppers[0].is_alive()
        assert not task_manager.has_task(monitor_task_name(user.id))
        assert store.get_monitoring_settings(user.id).is_active is False


class TestScheduledTicks:
    """Tests that run real timer ticks at a shortened interval"""

    @pytest.fixture(name="fast_ticks")
    def fast_ticks_fixture(self, task_manager, monkeypatch):
        original = task_manager.schedule_recurring
        monkeypatch.setattr(
            task_manager, "schedule_recurring", lambda name, callback, interval: original(name, callback, 0.1)
        )

    def test_restart_does_not_double_tick_rate(self, service, store, user, prober, fast_ticks):
        store.upsert_monitoring_settings(user.id, {"check_interval": 30})
        service.start_monitoring(user.id)
        service.start_monitoring(user.id)

        time.sleep(0.35)
        service.stop_monitoring(user.id)

        # One timer gives about 3 ticks here; two would give about 6
        assert 1 <= prober.calls <= 4

    def test_stop_right_after_start_runs_no_checks(self, service, store, user, prober, fast_ticks):
        store.upsert_monitoring_settings(user.id, {"check_interval": 30})
        service.start_monitoring(user.id)
        service.stop_monitoring(user.id)

        time.sleep(0.35)

        assert prober.calls == 0
        assert store.get_recent_appointment_checks(user.id) == []

    def test_stop_halts_further_checks(self, service, store, user, prober, fast_ticks):
        store.upsert_monitoring_settings(user.id, {"check_interval": 30})
        service.start_monitoring(user.id)
        time.sleep(0.25)

        service.stop_monitoring(user.id)
        time.sleep(0.05)  # an in-flight tick may still finish
        calls_at_stop = prober.calls
        time.sleep(0.3)

        assert calls_at_stop >= 1
        assert prober.calls == calls_at_stop
        assert "scheduled_check" in actions(store, user.id)
