import copy
import logging
import os
import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from watchdog.events import FileModifiedEvent, FileSystemEventHandler
from watchdog.observers import Observer

DEFAULT_CONFIG: Dict[str, Any] = {
    "api": {
        "host": "127.0.0.1",
        "port": 5000,
    },
    "database": {
        "path": "~/.visa_dashboard/dashboard.db",
    },
    "logging": {
        "level": "INFO",
        "file": None,
    },
    "monitoring": {
        "default_user": "demo",
        "probe_timeout": 30,  # seconds
        "probe_workers": 4,
        "recent_checks_limit": 10,
        "resume_on_startup": True,
        "embassy_name": "Nairobi Embassy",
        "booking_url": "https://ais.usvisa-info.com/en-ke/niv",
        "prober": {
            "type": "random",
            "available_probability": 0.1,
        },
    },
    "email": {
        "user": "${EMAIL_USER}",
        "password": "${EMAIL_PASS}",
        "smtp_host": "smtp.gmail.com",
        "smtp_port": 465,
        "timeout": 10,
    },
    "telegram": {
        "api_base": "https://api.telegram.org",
        "timeout": 10,
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return base updated recursively with override (neither argument is modified)."""
    result = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class ConfigChangeHandler(FileSystemEventHandler):
    def __init__(self, config):
        self.config = config
        self.last_modified = 0
        self.cooldown = 1.0  # Cooldown period in seconds

    def on_modified(self, event):
        if not isinstance(event, FileModifiedEvent):
            return

        current_time = time.time()
        if current_time - self.last_modified < self.cooldown:
            return

        if os.fsdecode(event.src_path) == str(self.config.config_file):
            try:
                self.last_modified = current_time
                self.config.reload()
            except Exception as e:
                logging.error(f"Error handling config change: {e}")


class Config:
    def __init__(self, config_path: Optional[str] = None, watch: bool = False):
        logging.debug("Initializing Config class")

        self.change_callbacks: List[Callable[[Dict[str, Any]], None]] = []
        self._loading = False  # Lock to prevent recursive reloading
        self.observer: Optional[Observer] = None

        if config_path:
            self.config_file = Path(config_path).expanduser().resolve()
            self.config_dir = self.config_file.parent
        else:
            self.config_dir = Path.cwd()
            self.config_file = self.config_dir / "config.yaml"

        logging.debug(f"Using config file: {self.config_file}")

        # Load environment variables from .env file
        self._load_env_file()

        self._ensure_config_exists()
        self._load_config()

        if watch:
            self.start_watching()

    def start_watching(self) -> None:
        """Reload the config file whenever it changes on disk."""
        if self.observer is not None:
            return
        self.observer = Observer()
        handler = ConfigChangeHandler(self)
        logging.info(f"Path monitored for reloading: {self.config_dir}")
        self.observer.schedule(handler, str(self.config_dir), recursive=False)
        self.observer.start()

    def register_change_callback(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        """Register a callback to be called when config changes"""
        self.change_callbacks.append(callback)

    def reload(self) -> None:
        """Reload config and notify listeners"""
        if self._loading:
            return

        self._loading = True
        try:
            logging.info("Config file change detected - reloading configuration")

            # Wait briefly for file to be fully written
            time.sleep(0.1)

            old_config = copy.deepcopy(self.data)
            self._load_config()
            self._log_config_changes(old_config, self.data)

            for callback in self.change_callbacks:
                try:
                    callback(self.data)
                except Exception as e:
                    logging.error(f"Error in config change callback: {e}")

        except Exception as e:
            logging.error(f"Error reloading config: {e}")
            logging.exception(e)
        finally:
            self._loading = False

    def _log_config_changes(self, old_config: Dict, new_config: Dict) -> None:
        """Log the differences between old and new configs (secret values are not printed)"""
        def describe(key: str, value: Any) -> Any:
            if key in ("password", "telegram_bot_token", "token"):
                return "***"
            return value

        def compare_dict(path: str, dict1: Dict, dict2: Dict) -> None:
            for key in set(dict1.keys()) | set(dict2.keys()):
                current_path = f"{path}.{key}" if path else key
                if key in dict1 and key in dict2:
                    if isinstance(dict1[key], dict) and isinstance(dict2[key], dict):
                        compare_dict(current_path, dict1[key], dict2[key])
                    elif dict1[key] != dict2[key]:
                        logging.info(
                            f"Config changed: {current_path}: {describe(key, dict1[key])} -> {describe(key, dict2[key])}"
                        )
                elif key in dict1:
                    logging.info(f"Config removed: {current_path}")
                else:
                    logging.info(f"Config added: {current_path}: {describe(key, dict2[key])}")

        compare_dict("", old_config, new_config)

    def cleanup(self) -> None:
        """Stop the file observer"""
        if self.observer is not None:
            self.observer.stop()
            self.observer.join()
            self.observer = None

    def _ensure_config_exists(self) -> None:
        """Create default config if it doesn't exist"""
        if not self.config_dir.exists():
            logging.info(f"Creating config directory: {self.config_dir}")
            self.config_dir.mkdir(parents=True)

        if not self.config_file.exists():
            logging.info(f"Creating default config file: {self.config_file}")
            self.config_file.write_text(yaml.safe_dump(DEFAULT_CONFIG, sort_keys=False))

    def _load_env_file(self) -> None:
        """Load environment variables from .env file"""
        env_files = [
            self.config_dir / ".env",
            Path.cwd() / ".env",
        ]

        env_file = next((path for path in env_files if path.exists()), None)
        if not env_file:
            logging.debug("No .env file found, skipping environment variable loading")
            return

        logging.info(f"Loading environment variables from: {env_file}")
        try:
            with open(env_file, "r") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith("#"):
                        continue

                    # Parse KEY=VALUE format
                    match = re.match(r"^([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*)$", line)
                    if match:
                        key, value = match.groups()
                        value = value.strip('"').strip("'")
                        # Real environment wins over .env
                        if key not in os.environ:
                            os.environ[key] = value
                            logging.debug(f"Loaded env var: {key}")
        except Exception as e:
            logging.warning(f"Error loading .env file: {e}")

    def _substitute_env_vars(self, data: Any) -> Any:
        """Recursively substitute ${VAR} / $VAR references; unset variables become None"""
        if isinstance(data, dict):
            return {key: self._substitute_env_vars(value) for key, value in data.items()}
        elif isinstance(data, list):
            return [self._substitute_env_vars(item) for item in data]
        elif isinstance(data, str):
            if data.startswith("${") and data.endswith("}"):
                return os.environ.get(data[2:-1])
            elif data.startswith("$") and len(data) > 1 and re.fullmatch(r"\$[A-Za-z_][A-Za-z0-9_]*", data):
                return os.environ.get(data[1:])
            return data
        return data

    def _load_config(self) -> None:
        """Load configuration from file, layered over the defaults"""
        try:
            logging.debug(f"Loading config from: {self.config_file}")
            with open(self.config_file) as f:
                new_data = yaml.safe_load(f) or {}

            if not isinstance(new_data, dict):
                raise ValueError("Invalid config format: root must be a dictionary")

            self.data = self._substitute_env_vars(_deep_merge(DEFAULT_CONFIG, new_data))

            log_file = self.data["logging"].get("file")
            if log_file:
                self.data["logging"]["file"] = os.path.expanduser(log_file)

        except Exception as e:
            logging.error(f"Error loading config: {e}")
            if hasattr(self, "data"):
                logging.info("Keeping previous configuration")
            else:
                logging.info("Using default configuration")
                self.data = self._substitute_env_vars(copy.deepcopy(DEFAULT_CONFIG))

    def get(self, section: str, key: Optional[str] = None, default: Any = None) -> Any:
        """config.get("monitoring") -> section dict; config.get("monitoring", "probe_timeout") -> value"""
        section_data = self.data.get(section)
        if key is None:
            return section_data if section_data is not None else default
        if not isinstance(section_data, dict):
            return default
        value = section_data.get(key)
        return default if value is None else value
