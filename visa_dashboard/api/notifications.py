"""
Notification test API. Mounted at /api/notifications/.
"""
from fastapi import APIRouter

from visa_dashboard.core.schemas import ActionResponse, EmailTestRequest, TelegramTestRequest


def get_router(dashboard_app) -> APIRouter:
    """Return router for notification tests; mounted with prefix /api/notifications."""
    router = APIRouter(tags=["Notifications"])
    notifier = dashboard_app.notification_service

    @router.post("/test/email", response_model=ActionResponse)
    def test_email(body: EmailTestRequest) -> ActionResponse:
        success = notifier.test_email(body.email)
        return ActionResponse(success=success, message="Test email sent" if success else "Email test failed")

    @router.post("/test/telegram", response_model=ActionResponse)
    def test_telegram(body: TelegramTestRequest) -> ActionResponse:
        success = notifier.test_telegram(body.bot_token, body.chat_id)
        return ActionResponse(
            success=success,
            message="Test Telegram message sent" if success else "Telegram test failed",
        )

    return router
