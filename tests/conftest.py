"""
Pytest configuration and shared fixtures for tests
"""
import threading
import time
from unittest.mock import MagicMock

import pytest
import yaml

from visa_dashboard.core.app import DashboardApp
from visa_dashboard.core.config import Config
from visa_dashboard.core.db import Database
from visa_dashboard.core.store import Store
from visa_dashboard.core.task_manager import TaskManager
from visa_dashboard.monitoring.probers import AppointmentProber, ProbeResult
from visa_dashboard.monitoring.probers.base import MESSAGE_APPOINTMENTS_AVAILABLE, MESSAGE_NO_APPOINTMENTS
from visa_dashboard.monitoring.service import MonitoringService
from visa_dashboard.notifications import NotificationService


class FakeProber(AppointmentProber):
    """Prober with a scripted outcome: a ProbeResult, an exception to raise, or a delay."""

    def __init__(self, available=False, error=None, delay=0.0):
        self.available = available
        self.error = error
        self.delay = delay
        self.calls = 0

    def probe(self):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.available:
            return ProbeResult(True, MESSAGE_APPOINTMENTS_AVAILABLE)
        return ProbeResult(False, MESSAGE_NO_APPOINTMENTS)


class RecordingBroadcaster:
    """Stands in for the WebSocket broadcaster; keeps every event it was asked to push."""

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def broadcast(self, user_id, event_type, data):
        with self._lock:
            self.events.append((user_id, event_type.value, data))
        return True

    def types_for(self, user_id):
        return [event_type for uid, event_type, _ in self.events if uid == user_id]


@pytest.fixture(name="database")
def database_fixture():
    """In-memory SQLite database (StaticPool keeps a single connection)"""
    database = Database("sqlite://")
    yield database
    database.dispose()


@pytest.fixture(name="store")
def store_fixture(database):
    return Store(database)


@pytest.fixture(name="user")
def user_fixture(store):
    return store.create_user("alice")


@pytest.fixture(name="task_manager")
def task_manager_fixture():
    manager = TaskManager()
    yield manager
    manager.stop()


@pytest.fixture(name="prober")
def prober_fixture():
    return FakeProber()


@pytest.fixture(name="notifier")
def notifier_fixture():
    """Notification service with no real transport; every channel reports success"""
    notifier = MagicMock(spec=NotificationService)
    notifier.notify_appointment_available.return_value = {}
    return notifier


@pytest.fixture(name="broadcaster")
def broadcaster_fixture():
    return RecordingBroadcaster()


@pytest.fixture(name="service")
def service_fixture(store, task_manager, notifier, prober, broadcaster):
    service = MonitoringService(
        store=store,
        task_manager=task_manager,
        notification_service=notifier,
        prober=prober,
        broadcaster=broadcaster,
        probe_timeout=2,
    )
    yield service
    service.shutdown()


@pytest.fixture(name="config_file")
def config_file_fixture(tmp_path, monkeypatch):
    """Config file for a full app: in-memory DB, never-available random prober, no email credentials"""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("EMAIL_USER", raising=False)
    monkeypatch.delenv("EMAIL_PASS", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "database": {"url": "sqlite://"},
                "logging": {"level": "WARNING"},
                "monitoring": {
                    "default_user": "demo",
                    "probe_timeout": 5,
                    "prober": {"type": "random", "available_probability": 0.0},
                },
            }
        )
    )
    return path


@pytest.fixture(name="dashboard_app")
def dashboard_app_fixture(config_file):
    app = DashboardApp(config=Config(config_path=str(config_file)), watch_config=False)
    yield app
    app.stop()
