"""WebSocket connection manager for live conversation updates."""

import logging

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks canvas connections per conversation and fans out graph changes."""

    def __init__(self):
        # Map: conversation_id -> [WebSocket, ...]
        self.active_connections: dict[str, list[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, conversation_id: str):
        """Accept and register a WebSocket connection."""
        await websocket.accept()
        self.active_connections.setdefault(conversation_id, []).append(websocket)
        logger.info(f"WebSocket connected to conversation {conversation_id}")

    def disconnect(self, websocket: WebSocket, conversation_id: str):
        """Remove a WebSocket connection."""
        connections = self.active_connections.get(conversation_id, [])
        if websocket in connections:
            connections.remove(websocket)
            logger.info(f"WebSocket disconnected from conversation {conversation_id}")
        if not connections:
            self.active_connections.pop(conversation_id, None)

    async def broadcast_to_conversation(self, conversation_id: str, message: dict):
        """Send a message to every connection watching a conversation."""
        disconnected = []

        for connection in list(self.active_connections.get(conversation_id, [])):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.error(f"Error broadcasting to {conversation_id}: {e}")
                disconnected.append(connection)

        for connection in disconnected:
            self.disconnect(connection, conversation_id)

        logger.debug(f"Broadcast {message.get('type')} to conversation {conversation_id}")

    def count(self) -> int:
        """Return number of active connections."""
        return sum(len(c) for c in self.active_connections.values())
