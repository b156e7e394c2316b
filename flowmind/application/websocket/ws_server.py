from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from typing import Any, Dict
import structlog
from pydantic import ValidationError

from .connection_manager import ConnectionManager
from .schema.events import (
    BaseEvent, ClientMessage, ClientMessageType, EventType,
    AddThoughtRequest, UpdateThoughtRequest, DeleteThoughtRequest,
    RunToolRequest, AddGuideRequest, ControlRequest
)
from flowmind.domain.errors import FlowMindError
from flowmind.domain.orchestration.core.system import FlowMindSystem

logger = structlog.get_logger(__name__)


def create_ws_router(system: FlowMindSystem, connection_manager: ConnectionManager) -> APIRouter:
    """WebSocket endpoint for observers and the command channel"""

    router = APIRouter()

    @router.websocket("/ws")
    async def flowmind_websocket(websocket: WebSocket):
        session_id = await connection_manager.connect(websocket)

        try:
            # Initial snapshot for this observer only
            await connection_manager.send_event(
                session_id,
                BaseEvent(type=EventType.SETTINGS, payload=system.get_settings().model_dump(by_alias=True))
            )
            await send_graph(system, connection_manager, session_id)
            await connection_manager.send_event(
                session_id,
                BaseEvent(
                    type=EventType.STATUS_UPDATE,
                    payload={"message": "Connected", "paused": system.paused}
                )
            )

            while True:
                data = await websocket.receive_json()
                await handle_message(system, connection_manager, session_id, data)

        except WebSocketDisconnect:
            logger.info("Client disconnected", session_id=session_id)
        except Exception as e:
            logger.error("WebSocket error", error=str(e), session_id=session_id)
        finally:
            await connection_manager.disconnect(session_id)

    return router


async def send_graph(system: FlowMindSystem, connection_manager: ConnectionManager, session_id: str):
    graph = await system.graph()
    await connection_manager.send_event(session_id, BaseEvent(type=EventType.INIT, payload=graph.to_wire()))


async def handle_message(
    system: FlowMindSystem,
    connection_manager: ConnectionManager,
    session_id: str,
    data: Any
):
    """Dispatch one client message; failures are reported to the sender only"""

    try:
        message = ClientMessage.model_validate(data)
        await dispatch(system, connection_manager, session_id, message)

    except ValidationError as e:
        logger.warning("Invalid client message", session_id=session_id, errors=e.error_count())
        await connection_manager.send_error(session_id, f"Invalid request: {_describe(e)}")
    except FlowMindError as e:
        logger.warning("Request rejected", session_id=session_id, error=e.message)
        await connection_manager.send_error(session_id, e.message, e.details.get("thoughtId"))
    except Exception as e:
        logger.error("Error processing message", error=str(e), session_id=session_id)
        await connection_manager.send_error(session_id, f"Error processing message: {str(e)}")


def _describe(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in item['loc']) or 'message'}: {item['msg']}"
        for item in error.errors()
    )


async def dispatch(
    system: FlowMindSystem,
    connection_manager: ConnectionManager,
    session_id: str,
    message: ClientMessage
):
    payload: Dict[str, Any] = message.payload
    logger.debug("Client message", session_id=session_id, type=message.type)

    match message.type:
        case ClientMessageType.REQUEST_GRAPH:
            await send_graph(system, connection_manager, session_id)

        case ClientMessageType.REQUEST_SETTINGS:
            await connection_manager.send_event(
                session_id,
                BaseEvent(type=EventType.SETTINGS, payload=system.get_settings().model_dump(by_alias=True))
            )

        case ClientMessageType.UPDATE_SETTINGS:
            await system.update_settings(payload)

        case ClientMessageType.ADD_THOUGHT:
            request = AddThoughtRequest.model_validate(payload)
            await system.add_thought(
                request.content,
                request.type,
                request.priority,
                [link.model_dump(by_alias=True) for link in request.links],
                request.metadata
            )

        case ClientMessageType.UPDATE_THOUGHT:
            request = UpdateThoughtRequest.model_validate(payload)
            await system.update_thought(request.id, request.updates)

        case ClientMessageType.DELETE_THOUGHT:
            request = DeleteThoughtRequest.model_validate(payload)
            await system.delete_thought(request.id)

        case ClientMessageType.RUN_TOOL:
            request = RunToolRequest.model_validate(payload)
            await system.invoke_tool(request.tool_name, request.params, request.thought_id)

        case ClientMessageType.ADD_GUIDE:
            request = AddGuideRequest.model_validate(payload)
            await system.add_guide(request.condition, request.action, request.weight)

        case ClientMessageType.CONTROL:
            request = ControlRequest.model_validate(payload)
            await system.control(request.command)

        case _:
            await connection_manager.send_error(session_id, f"Unknown message type '{message.type}'")
