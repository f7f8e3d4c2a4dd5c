"""
Real-time broadcast channel: user id -> live WebSocket connection.

One connection per user; a newer authenticated connection replaces the older entry.
Delivery is at-most-once and best-effort: events for users without an open connection
are dropped, nothing is queued or replayed. broadcast() may be called from any thread
(timer threads, the API threadpool); sends are scheduled onto the event loop that owns
the connection.
"""
import asyncio
import logging
import threading
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from starlette.websockets import WebSocketState


class EventType(str, Enum):
    APPOINTMENT_CHECK = "appointment_check"
    MONITORING_STARTED = "monitoring_started"
    MONITORING_STOPPED = "monitoring_stopped"
    SETTINGS_UPDATED = "settings_updated"
    LOGS_CLEARED = "logs_cleared"


AUTHENTICATED = "authenticated"


def _is_open(connection: Any) -> bool:
    state = getattr(connection, "client_state", WebSocketState.CONNECTED)
    app_state = getattr(connection, "application_state", WebSocketState.CONNECTED)
    return state == WebSocketState.CONNECTED and app_state == WebSocketState.CONNECTED


class Broadcaster:
    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._clients: Dict[int, Tuple[Any, asyncio.AbstractEventLoop]] = {}
        # Strong references to same-loop sends until they finish
        self._pending: Set[asyncio.Task] = set()

    def authenticate(self, connection: Any, user_id: int, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Bind connection to user_id (trust-on-claim). Must run on the connection's loop unless loop is given."""
        loop = loop or asyncio.get_running_loop()
        with self._lock:
            previous = self._clients.get(user_id)
            self._clients[user_id] = (connection, loop)
        if previous is not None and previous[0] is not connection:
            self.logger.info(f"User {user_id} re-authenticated; replacing previous connection")
        else:
            self.logger.info(f"User {user_id} authenticated via WebSocket")

    def disconnect(self, connection: Any) -> Optional[int]:
        """Remove the mapping entry held by this connection, if any. Returns the user id it was bound to."""
        with self._lock:
            for user_id, (client, _loop) in list(self._clients.items()):
                if client is connection:
                    del self._clients[user_id]
                    self.logger.info(f"User {user_id} WebSocket disconnected")
                    return user_id
        return None

    def is_connected(self, user_id: int) -> bool:
        with self._lock:
            entry = self._clients.get(user_id)
        return entry is not None and _is_open(entry[0])

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def broadcast(self, user_id: int, event_type: EventType, data: Any) -> bool:
        """
        Push {type, data} to the user's connection. Returns True if a send was scheduled,
        False if the event was dropped.
        """
        event_type = EventType(event_type)
        with self._lock:
            entry = self._clients.get(user_id)
        if entry is None:
            self.logger.debug(f"No WebSocket for user {user_id}; dropping {event_type.value}")
            return False
        connection, loop = entry
        if not _is_open(connection) or loop.is_closed():
            self.logger.debug(f"WebSocket for user {user_id} is not open; dropping {event_type.value}")
            return False

        payload = {"type": event_type.value, "data": data}
        coro = self._send(user_id, connection, payload)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        try:
            if running is loop:
                task = loop.create_task(coro)
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
            else:
                asyncio.run_coroutine_threadsafe(coro, loop)
        except RuntimeError as e:
            coro.close()
            self.logger.warning(f"Could not schedule {event_type.value} for user {user_id}: {e}")
            return False
        return True

    async def _send(self, user_id: int, connection: Any, payload: Dict[str, Any]) -> None:
        try:
            await connection.send_json(payload)
        except Exception as e:
            self.logger.warning(f"Failed to deliver {payload['type']} to user {user_id}: {e}")

    async def close_all(self) -> None:
        """Close every live connection (process shutdown)."""
        with self._lock:
            entries = list(self._clients.items())
            self._clients.clear()
        for user_id, (connection, _loop) in entries:
            if not _is_open(connection):
                continue
            try:
                await connection.close()
            except Exception as e:
                self.logger.debug(f"Error closing WebSocket for user {user_id}: {e}")
        if entries:
            self.logger.info(f"Closed {len(entries)} WebSocket connection(s)")
