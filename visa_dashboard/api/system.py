"""
System API. Mounted at /api/system/.
- /stats: global check counters.
- /timers: active monitor timers (in-memory; not from DB).
"""
from typing import List, Optional

from fastapi import APIRouter

from visa_dashboard.core.schemas import ActiveTimerResponse, SystemStatsResponse


def get_router(dashboard_app) -> APIRouter:
    """Return router for system info; mounted with prefix /api/system."""
    router = APIRouter(tags=["System"])

    @router.get("/stats", response_model=Optional[SystemStatsResponse])
    def get_stats() -> Optional[SystemStatsResponse]:
        stats = dashboard_app.store.get_system_stats()
        return SystemStatsResponse.model_validate(stats) if stats else None

    @router.get("/timers", response_model=List[ActiveTimerResponse])
    def list_timers() -> List[ActiveTimerResponse]:
        return [
            ActiveTimerResponse(name=t["name"], next_run_at=t.get("next_run_at"))
            for t in dashboard_app.task_manager.get_active_timers()
        ]

    return router
