"""
Monitoring API. Mounted at /api/monitoring/.
- /status: isActive, settings, recent checks and the last check.
- /check: run one check now (broadcasts appointment_check).
- /start, /stop: lifecycle (broadcast monitoring_started / monitoring_stopped).
- /settings: read or upsert the user's settings (broadcasts settings_updated).
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body

from visa_dashboard.core.schemas import (
    ActionResponse,
    AppointmentCheckResponse,
    CheckResultResponse,
    MonitoringStatusResponse,
    SettingsResponse,
)


def get_router(dashboard_app) -> APIRouter:
    """Return router for monitoring; mounted with prefix /api/monitoring."""
    router = APIRouter(tags=["Monitoring"])
    service = dashboard_app.monitoring_service

    @router.get("/status", response_model=MonitoringStatusResponse)
    def get_status() -> MonitoringStatusResponse:
        status = service.get_monitoring_status(dashboard_app.default_user_id)
        return MonitoringStatusResponse(
            is_active=status.is_active,
            settings=SettingsResponse.model_validate(status.settings) if status.settings else None,
            recent_checks=[AppointmentCheckResponse.model_validate(c) for c in status.recent_checks],
            last_check=AppointmentCheckResponse.model_validate(status.last_check) if status.last_check else None,
        )

    @router.post("/check", response_model=CheckResultResponse, response_model_exclude_none=True)
    def run_check() -> CheckResultResponse:
        result = service.check_appointment_availability(dashboard_app.default_user_id)
        return CheckResultResponse(
            is_available=result.is_available,
            message=result.message,
            response_time_ms=result.response_time_ms,
            error=result.error,
        )

    @router.post("/start", response_model=ActionResponse)
    def start_monitoring() -> ActionResponse:
        service.start_monitoring(dashboard_app.default_user_id)
        return ActionResponse(success=True, message="Monitoring started")

    @router.post("/stop", response_model=ActionResponse)
    def stop_monitoring() -> ActionResponse:
        service.stop_monitoring(dashboard_app.default_user_id)
        return ActionResponse(success=True, message="Monitoring stopped")

    @router.get("/settings", response_model=Optional[SettingsResponse])
    def get_settings() -> Optional[SettingsResponse]:
        settings = service.get_settings(dashboard_app.default_user_id)
        return SettingsResponse.model_validate(settings) if settings else None

    @router.post("/settings", response_model=SettingsResponse)
    def save_settings(payload: Dict[str, Any] = Body(...)) -> SettingsResponse:
        """Validated against the settings schema inside the service (400 on failure)."""
        settings = service.save_settings(dashboard_app.default_user_id, payload)
        return SettingsResponse.model_validate(settings)

    return router
