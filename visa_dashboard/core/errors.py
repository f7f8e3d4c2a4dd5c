"""
Error taxonomy shared by the store, the monitoring lifecycle and the API layer.
Each error carries the HTTP status the API maps it to.
"""
from typing import Any, Dict, Optional


class DashboardError(Exception):
    """Base class for all dashboard errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(DashboardError):
    """Malformed input, e.g. a settings payload that fails the schema."""

    status_code = 400


class NotFoundError(DashboardError):
    status_code = 404


class NoSettingsError(NotFoundError):
    """Monitoring cannot start for a user who has never saved settings."""

    def __init__(self, user_id: int):
        super().__init__("No monitoring settings found", {"userId": user_id})
        self.user_id = user_id


class TransportError(DashboardError):
    """A notification could not be delivered (SMTP or Telegram)."""

    status_code = 502

    def __init__(self, message: str, channel: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.channel = channel


class ProbeError(DashboardError):
    """The availability probe failed or timed out."""

    status_code = 502
