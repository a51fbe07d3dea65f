# file: services/websocket_manager.py

import logging
from typing import Dict, Set
from fastapi import WebSocket

logger = logging.getLogger(__name__)


class WebSocketManager:
    """
    Keeps the open notification sockets per user.
    user_id -> set(WebSocket), one entry per tab or device.
    """
    def __init__(self):
        self.active_connections: Dict[int, Set[WebSocket]] = {}

    async def connect(self, user_id: int, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.setdefault(user_id, set()).add(websocket)

    def disconnect(self, user_id: int, websocket: WebSocket):
        if user_id in self.active_connections:
            self.active_connections[user_id].discard(websocket)
            if not self.active_connections[user_id]:
                del self.active_connections[user_id]

    async def send_to_user(self, user_id: int, message: dict) -> int:
        """Sends to every socket of the user and returns how many accepted it."""
        sockets = list(self.active_connections.get(user_id, ()))
        delivered = 0
        for ws in sockets:
            try:
                await ws.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping dead socket for user {user_id}: {e}")
                self.disconnect(user_id, ws)
        return delivered


ws_manager = WebSocketManager()
