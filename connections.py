import asyncio
from typing import Any, Dict, Iterable

from fastapi import WebSocket

from logging_config import get_logger

logger = get_logger(__name__)


class ConnectionManager:
    """Delivers events to live WebSocket connections by session id.

    In-memory per instance; a session id is the connection id.
    """

    def __init__(self):
        self.connections: Dict[str, WebSocket] = {}

    def register(self, session_id: str, websocket: WebSocket) -> None:
        self.connections[session_id] = websocket
        logger.debug(f"Registered connection {session_id} (local connections: {len(self.connections)})")

    def unregister(self, session_id: str) -> None:
        if self.connections.pop(session_id, None) is not None:
            logger.debug(f"Unregistered connection {session_id} (local connections: {len(self.connections)})")

    async def send(self, session_id: str, event: str, data: Any) -> None:
        websocket = self.connections.get(session_id)
        if websocket is None:
            return
        try:
            await websocket.send_json({"event": event, "data": data})
        except Exception as e:
            logger.warning(f"Error sending {event} to connection {session_id}: {e}")

    async def send_many(self, session_ids: Iterable[str], event: str, data: Any) -> None:
        send_tasks = [self.send(session_id, event, data) for session_id in session_ids]
        if send_tasks:
            await asyncio.gather(*send_tasks, return_exceptions=True)
            logger.debug(f"Delivered {event} to {len(send_tasks)} connections")

    async def close(self, session_id: str) -> None:
        websocket = self.connections.pop(session_id, None)
        if websocket is None:
            return
        try:
            await websocket.close(code=1008, reason="Disconnected by admin")
        except Exception as e:
            logger.debug(f"Error closing WebSocket {session_id}: {e}")
