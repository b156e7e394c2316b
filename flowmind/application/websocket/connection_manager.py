from typing import Dict, Optional
from fastapi import WebSocket
import asyncio
import uuid
from datetime import datetime, timezone
import structlog

from .schema.events import BaseEvent, EventType

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Manages observer WebSocket connections and fans pushes out to them"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.session_metadata: Dict[str, Dict] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, session_id: Optional[str] = None) -> str:
        """Accept a new WebSocket connection"""
        await websocket.accept()
        session_id = session_id or str(uuid.uuid4())

        async with self._lock:
            self.active_connections[session_id] = websocket
            self.session_metadata[session_id] = {
                "connected_at": datetime.now(timezone.utc),
                "last_activity": datetime.now(timezone.utc)
            }

        logger.info("WebSocket connected", session_id=session_id, observers=len(self.active_connections))
        return session_id

    async def disconnect(self, session_id: str):
        """Disconnect a WebSocket connection"""
        async with self._lock:
            ws = self.active_connections.pop(session_id, None)
            self.session_metadata.pop(session_id, None)

        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Error closing WebSocket", session_id=session_id, error=str(e))

        logger.info("WebSocket disconnected", session_id=session_id)

    async def send_event(self, session_id: str, event: BaseEvent) -> bool:
        """Send an event to a specific session"""
        websocket = self.active_connections.get(session_id)
        if websocket is None:
            logger.warning("Attempted to send to disconnected session", session_id=session_id)
            return False

        try:
            await websocket.send_json(event.model_dump(mode="json"))

            if session_id in self.session_metadata:
                self.session_metadata[session_id]["last_activity"] = datetime.now(timezone.utc)

            return True

        except Exception as e:
            logger.error("Failed to send event", session_id=session_id, error=str(e))
            await self.disconnect(session_id)
            return False

    async def broadcast(self, event: BaseEvent):
        """Send an event to every connected observer"""
        sessions = list(self.active_connections.keys())
        if not sessions:
            return
        tasks = [self.send_event(session_id, event) for session_id in sessions]
        await asyncio.gather(*tasks, return_exceptions=True)

    async def send_error(self, session_id: str, error_message: str, target_id: Optional[str] = None):
        """Send an error event to a single session"""
        payload = {"message": error_message}
        if target_id:
            payload["targetId"] = target_id
        await self.send_event(session_id, BaseEvent(type=EventType.ERROR, payload=payload))

    async def disconnect_all(self):
        for session_id in list(self.active_connections.keys()):
            await self.disconnect(session_id)
