from typing import Dict, Any, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from datetime import datetime, timezone
from enum import Enum
import math
import uuid


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string"""
    return datetime.now(timezone.utc).isoformat()


def generate_id() -> str:
    return str(uuid.uuid4())


def clamp_priority(value: Any) -> float:
    """Clamp a priority into [0, 1]; non-finite values become 0.5"""
    number = float(value)
    if math.isnan(number):
        return 0.5
    return max(0.0, min(1.0, number))


class ThoughtStatus(str, Enum):
    """Enrichment lifecycle status"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Link(WireModel):
    """Soft reference from one Thought to another"""
    target_id: str
    relationship: str = "related"


class PendingTask(WireModel):
    """Tool invocation waiting to run against a Thought"""
    tool_name: str
    params: Dict[str, Any] = Field(default_factory=dict)

    def same_as(self, tool_name: str, params: Dict[str, Any]) -> bool:
        return self.tool_name == tool_name and self.params == params


class FeedbackEntry(WireModel):
    """One feedback record, append-only"""
    type: str
    value: Any = None
    timestamp: str = Field(default_factory=utc_now_iso)


class ThoughtMetadata(WireModel):
    """Lifecycle metadata; unknown keys are kept as extra fields"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    status: Optional[ThoughtStatus] = None
    pending_task: Optional[PendingTask] = None
    error_info: Optional[str] = None
    ai_suggestions: Optional[List[str]] = None
    feedback: List[FeedbackEntry] = Field(default_factory=list)
    embedding_generated_at: Optional[str] = None
    ui: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, tags: List[str]) -> List[str]:
        return list(dict.fromkeys(str(tag) for tag in tags))


class Thought(WireModel):
    """A single knowledge record"""
    id: str = Field(default_factory=generate_id)
    content: Union[str, Dict[str, Any], List[Any]] = ""
    priority: float = 0.5
    type: str = "note"
    links: List[Link] = Field(default_factory=list)
    metadata: ThoughtMetadata = Field(default_factory=ThoughtMetadata)

    @field_validator("priority", mode="before")
    @classmethod
    def clamp(cls, value: Any) -> float:
        return clamp_priority(value if value is not None else 0.5)

    @property
    def status(self) -> Optional[ThoughtStatus]:
        return self.metadata.status

    @property
    def text_content(self) -> Optional[str]:
        """Content when it is non-empty text, else None"""
        if isinstance(self.content, str) and self.content.strip():
            return self.content
        return None

    def has_link(self, target_id: str, relationship: str) -> bool:
        return any(
            link.target_id == target_id and link.relationship == relationship
            for link in self.links
        )


class GuideMetadata(WireModel):
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Guide(WireModel):
    """Declarative condition -> action rule"""
    id: str = Field(default_factory=generate_id)
    condition: str
    action: str
    weight: float = 0.5
    metadata: GuideMetadata = Field(default_factory=GuideMetadata)


class Event(WireModel):
    """Append-only log entry"""
    id: str = Field(default_factory=generate_id)
    type: str
    target_id: str
    timestamp: str = Field(default_factory=utc_now_iso)
    data: Dict[str, Any] = Field(default_factory=dict)


class GraphEdge(WireModel):
    source: str
    target: str
    relationship: str


class Graph(WireModel):
    """Nodes plus edges whose endpoints both exist"""
    nodes: List[Thought] = Field(default_factory=list)
    edges: List[GraphEdge] = Field(default_factory=list)


# Metadata keys owned by the store or the task lifecycle
CORE_MANAGED_METADATA = {"createdAt", "updatedAt", "status", "pendingTask"}


def _normalize_keys(model: type, data: Dict[str, Any]) -> Dict[str, Any]:
    """Translate snake_case field names to their wire aliases"""

    aliases = {name: field.alias or name for name, field in model.model_fields.items()}
    return {aliases.get(key, key): value for key, value in data.items()}


def merge_thought(thought: Thought, updates: Dict[str, Any]) -> Thought:
    """Merge a partial update into a Thought and return the new record

    - top-level fields other than id/metadata are replaced
    - metadata is merged field by field; an explicit None clears a field
    - metadata.ui is merged shallowly on its own so client-set keys survive
    - priority is clamped by the model
    """

    updates = _normalize_keys(Thought, dict(updates))
    merged = thought.to_wire()

    for key, value in updates.items():
        if key in ("id", "metadata") or value is None:
            continue
        merged[key] = value

    metadata_updates = updates.get("metadata")
    if metadata_updates:
        metadata_updates = _normalize_keys(ThoughtMetadata, dict(metadata_updates))
        ui_updates = metadata_updates.pop("ui", None)
        if ui_updates:
            merged["metadata"]["ui"] = {**merged["metadata"].get("ui", {}), **ui_updates}
        for key, value in metadata_updates.items():
            if value is None:
                merged["metadata"].pop(key, None)
            else:
                merged["metadata"][key] = value

    merged["metadata"]["updatedAt"] = utc_now_iso()
    return Thought.model_validate(merged)
