from typing import Dict, Any, Optional, List, Literal, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from datetime import datetime, timezone
from enum import Enum


class EventType(str, Enum):
    """Server -> observer push types"""
    INIT = "init"
    SETTINGS = "settings"
    THOUGHT_UPDATE = "thought_update"
    THOUGHT_DELETE = "thought_delete"
    EVENT_LOG = "event_log"
    STATUS_UPDATE = "status_update"
    ERROR = "error"


class ClientMessageType(str, Enum):
    """Observer -> server message types"""
    REQUEST_GRAPH = "request_graph"
    REQUEST_SETTINGS = "request_settings"
    UPDATE_SETTINGS = "update_settings"
    ADD_THOUGHT = "add_thought"
    UPDATE_THOUGHT = "update_thought"
    DELETE_THOUGHT = "delete_thought"
    RUN_TOOL = "run_tool"
    ADD_GUIDE = "add_guide"
    CONTROL = "control"


class BaseEvent(BaseModel):
    """Envelope for every push sent to observers"""
    type: EventType
    payload: Any = None
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class StatusPayload(BaseModel):
    message: str
    paused: Optional[bool] = None


class ErrorPayload(BaseModel):
    message: str
    target_id: Optional[str] = Field(default=None, serialization_alias="targetId")


class ClientMessage(BaseModel):
    """Raw message received from an observer"""
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LinkRequest(RequestModel):
    target_id: str
    relationship: str = "related"


class AddThoughtRequest(RequestModel):
    content: Union[str, Dict[str, Any], List[Any]]
    type: str = "note"
    priority: float = 0.5
    links: List[LinkRequest] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("content")
    @classmethod
    def content_not_empty(cls, value):
        if isinstance(value, str) and not value.strip():
            raise ValueError("content must not be empty")
        return value


class UpdateThoughtRequest(RequestModel):
    id: str
    updates: Dict[str, Any]


class DeleteThoughtRequest(RequestModel):
    id: str


class RunToolRequest(RequestModel):
    tool_name: str
    params: Dict[str, Any] = Field(default_factory=dict)
    thought_id: Optional[str] = None


class AddGuideRequest(RequestModel):
    condition: str = Field(min_length=1)
    action: str = Field(min_length=1)
    weight: float = 0.5


class ControlRequest(RequestModel):
    command: Literal["run", "pause", "step", "clear_all"]
