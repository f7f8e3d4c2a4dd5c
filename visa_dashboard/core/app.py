import logging
import sys
from typing import Any, Dict, Optional

from .config import Config
from .db import Database
from .store import Store
from .task_manager import TaskManager
from visa_dashboard.monitoring.probers import get_prober
from visa_dashboard.monitoring.service import MonitoringService
from visa_dashboard.notifications import NotificationService
from visa_dashboard.realtime import Broadcaster

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"


class DashboardApp:
    """
    Owns every service and wires them together; request handlers get this object
    instead of reaching for module-level singletons.
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[Config] = None, watch_config: bool = True):
        self.logger = logging.getLogger(self.__class__.__name__)

        self.config = config or Config(config_path=config_path, watch=watch_config)
        self.config.register_change_callback(self.handle_config_change)

        self._log_handlers = []
        self._setup_logging()
        self.logger.info("Visa dashboard starting...")

        # Database first so the store can seed the stats row
        self.database = Database.from_config(self.config.data)
        self.store = Store(self.database)

        self.task_manager = TaskManager()
        self.notification_service = NotificationService.from_config(self.config.data)
        self.broadcaster = Broadcaster()

        monitoring_config = self.config.get("monitoring", default={})
        prober_config = monitoring_config.get("prober") or {}
        self.prober = get_prober(prober_config.get("type", "random"), prober_config, logger=logging.getLogger("Prober"))
        self.monitoring_service = MonitoringService(
            store=self.store,
            task_manager=self.task_manager,
            notification_service=self.notification_service,
            prober=self.prober,
            broadcaster=self.broadcaster,
            probe_timeout=float(monitoring_config.get("probe_timeout", 30)),
            probe_workers=int(monitoring_config.get("probe_workers", 4)),
            recent_checks_limit=int(monitoring_config.get("recent_checks_limit", 10)),
            embassy_name=monitoring_config.get("embassy_name") or "Nairobi Embassy",
        )

        # Single-tenant build: every request acts as the default user
        default_user = self.store.ensure_user(monitoring_config.get("default_user") or "demo")
        self.default_user_id = default_user.id

        resumed = self.monitoring_service.restore_active_monitors(
            resume=bool(monitoring_config.get("resume_on_startup", True))
        )
        if resumed:
            self.logger.info(f"Resumed {resumed} monitor(s) from previous run")
        self._stopped = False

    def _setup_logging(self) -> None:
        """Configure logging to write to stdout and, when logging.file is set, to a file"""
        root_logger = logging.getLogger()
        for handler in self._log_handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self._log_handlers = []

        level_name = str(self.config.get("logging", "level", "INFO")).upper()
        root_logger.setLevel(getattr(logging, level_name, logging.INFO))

        formatter = logging.Formatter(LOG_FORMAT)

        log_file = self.config.get("logging", "file")
        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
            self._log_handlers.append(file_handler)

        has_stream = any(
            isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
            for h in root_logger.handlers
        )
        if not has_stream:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(formatter)
            root_logger.addHandler(console_handler)
            self._log_handlers.append(console_handler)

    def handle_config_change(self, new_config: Dict[str, Any]) -> None:
        """Apply a reloaded config: logging level/file and notification credentials"""
        self.logger.info("Handling config change")
        try:
            self._setup_logging()
            self.notification_service.configure(new_config)
        except Exception as e:
            self.logger.error(f"Error handling config change: {e}", exc_info=True)

    def run(self) -> None:
        """Serve the API until interrupted, then stop every service."""
        from visa_dashboard.api import run_api_server

        try:
            run_api_server(self)
        finally:
            self.stop()

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self.monitoring_service.shutdown()
        self.task_manager.stop()
        self.config.cleanup()
        self.database.dispose()
        self.logger.info("Visa dashboard stopped")
        root_logger = logging.getLogger()
        for handler in self._log_handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self._log_handlers = []
