from typing import Dict, Any, Optional, Protocol
import structlog

from flowmind.application.websocket.schema.events import (
    BaseEvent, EventType, StatusPayload, ErrorPayload
)
from flowmind.domain.models.thought import Thought, Event, Graph

logger = structlog.get_logger(__name__)


class EventSink(Protocol):
    """Anything that can fan a push out to observers"""

    async def broadcast(self, event: BaseEvent) -> None:
        ...


class NullSink:
    """Sink used when nobody is listening"""

    async def broadcast(self, event: BaseEvent) -> None:
        return None


class StreamingHandler:
    """Turns domain changes into observer pushes"""

    def __init__(self, sink: Optional[EventSink] = None):
        self.sink = sink or NullSink()

    async def _push(self, event_type: EventType, payload: Any):
        try:
            await self.sink.broadcast(BaseEvent(type=event_type, payload=payload))
        except Exception as e:
            # A broken observer must never fail the mutation that triggered the push
            logger.error("Failed to push event", event_type=event_type.value, error=str(e))

    async def send_init(self, graph: Graph):
        """Send the full graph"""
        await self._push(EventType.INIT, graph.to_wire())

    async def send_settings(self, settings: Dict[str, Any]):
        await self._push(EventType.SETTINGS, settings)

    async def send_thought_update(self, thought: Thought):
        await self._push(EventType.THOUGHT_UPDATE, thought.to_wire())

    async def send_thought_delete(self, thought_id: str):
        await self._push(EventType.THOUGHT_DELETE, {"id": thought_id})

    async def send_event_log(self, event: Event):
        await self._push(EventType.EVENT_LOG, event.to_wire())

    async def send_status(self, message: str, paused: Optional[bool] = None):
        """Send a status line, optionally carrying the scheduler state"""

        payload = StatusPayload(message=message, paused=paused)
        await self._push(EventType.STATUS_UPDATE, payload.model_dump(exclude_none=True))

    async def send_error(self, message: str, target_id: Optional[str] = None):
        """Send an error notification"""

        logger.debug("Pushing error", message=message, target_id=target_id)
        payload = ErrorPayload(message=message, target_id=target_id)
        await self._push(EventType.ERROR, payload.model_dump(by_alias=True, exclude_none=True))
