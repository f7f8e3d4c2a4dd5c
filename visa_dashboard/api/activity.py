"""
Per-user activity log API. Mounted at /api/activity-logs/.
"""
from typing import List

from fastapi import APIRouter, Query

from visa_dashboard.core.schemas import ActionResponse, ActivityLogResponse


def get_router(dashboard_app) -> APIRouter:
    """Return router for activity logs; mounted with prefix /api/activity-logs."""
    router = APIRouter(tags=["Activity Logs"])

    @router.get("", response_model=List[ActivityLogResponse])
    def get_activity_logs(limit: int = Query(50, ge=1, le=1000)) -> List[ActivityLogResponse]:
        """Newest first. Use ?limit= to cap (default 50)."""
        logs = dashboard_app.monitoring_service.get_activity_logs(dashboard_app.default_user_id, limit)
        return [ActivityLogResponse.model_validate(log) for log in logs]

    @router.delete("", response_model=ActionResponse)
    def clear_activity_logs() -> ActionResponse:
        dashboard_app.monitoring_service.clear_activity_logs(dashboard_app.default_user_id)
        return ActionResponse(success=True, message="Activity logs cleared")

    return router
