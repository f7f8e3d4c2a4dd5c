"""
WebSocket endpoint at /ws. The client authenticates with {"type": "auth", "userId": N};
the server acknowledges and from then on pushes {type, data} events for that user.
"""
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from visa_dashboard.realtime import AUTHENTICATED

logger = logging.getLogger(__name__)


def _parse_auth(raw: str):
    """Return the claimed user id of an auth message, or None for anything else."""
    data = json.loads(raw)
    if not isinstance(data, dict) or data.get("type") != "auth":
        return None
    user_id = data.get("userId")
    if isinstance(user_id, bool):
        return None
    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        return None
    return user_id if user_id > 0 else None


def get_router(dashboard_app) -> APIRouter:
    router = APIRouter(tags=["Realtime"])
    broadcaster = dashboard_app.broadcaster

    @router.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        logger.info("WebSocket client connected")
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    user_id = _parse_auth(raw)
                except ValueError as e:
                    logger.warning(f"Error parsing WebSocket message: {e}")
                    continue
                if user_id is None:
                    logger.debug(f"Ignoring WebSocket message: {raw[:200]}")
                    continue
                broadcaster.authenticate(websocket, user_id)
                await websocket.send_json({"type": AUTHENTICATED, "data": {"userId": user_id}})
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.disconnect(websocket)
            logger.info("WebSocket client disconnected")

    return router
