from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Tuple
import asyncio
import random
import time
import uuid

import structlog
from pydantic import ValidationError

from flowmind.domain.errors import FlowMindError, InvalidRequestError
from flowmind.domain.insight.insight_model import InsightModel, is_placeholder
from flowmind.domain.models.thought import (
    Thought, ThoughtMetadata, Guide, FeedbackEntry, ThoughtStatus, CORE_MANAGED_METADATA,
    merge_thought, clamp_priority
)
from flowmind.domain.reasoning.guide_dsl import (
    parse_condition, parse_action, evaluate_condition, coerce_literal,
    SetCommand, AddTagCommand, RemoveTagCommand, CreateTaskCommand,
    LinkToCommand, RunToolCommand, UnknownCommand, MalformedCommand
)
from flowmind.domain.store.thought_store import ThoughtStore
from flowmind.domain.streaming.streaming_handler import StreamingHandler
from flowmind.domain.task.task_queue import TaskQueue
from flowmind.infrastructure.config.settings import SystemSettings
from flowmind.infrastructure.observability.logging import flowmind_logger, metrics, elapsed_ms

logger = structlog.get_logger(__name__)

EMBEDDING_TOOL = "GenerateEmbeddingTool"
CHILD_TASK_TOOL = "CreateChildTaskTool"
MAX_SUGGESTION_CONTEXT = 5
FEEDBACK_PRIORITY_STEP = 0.1
MANAGED_METADATA_KEYS = CORE_MANAGED_METADATA | {"created_at", "updated_at", "pending_task"}


@dataclass
class CycleReport:
    """Counts for one processing cycle"""
    cycle_id: str
    tasks: int = 0
    guides: int = 0
    suggestions: int = 0
    considered: int = 0
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def strip_managed_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop metadata keys owned by the store and task lifecycle"""

    return {
        key: value
        for key, value in (metadata or {}).items()
        if key not in MANAGED_METADATA_KEYS
    }


def metadata_value_fits(key: str, value: Any) -> bool:
    """True when a value is valid for the metadata field named by key"""

    try:
        ThoughtMetadata.model_validate({key: value})
    except ValidationError:
        return False
    return True


class Reasoner:
    """Thought mutation API, guide interpreter and the processing cycle"""

    def __init__(
        self,
        store: ThoughtStore,
        task_queue: TaskQueue,
        insight: InsightModel,
        streaming: Optional[StreamingHandler] = None,
        settings: Optional[SystemSettings] = None,
        rng: Optional[random.Random] = None
    ):
        self.store = store
        self.task_queue = task_queue
        self.insight = insight
        self.streaming = streaming or StreamingHandler()
        self.settings = settings or SystemSettings()
        self.rng = rng or random.Random()
        self.guides: List[Guide] = []
        self._cycle_running = False

    @property
    def cycle_running(self) -> bool:
        return self._cycle_running

    def configure(self, settings: SystemSettings, insight: Optional[InsightModel] = None):
        self.settings = settings
        if insight is not None:
            self.insight = insight

    def _needs_embedding(self, content: Any) -> bool:
        return self.insight.embeddings_available() and isinstance(content, str) and bool(content.strip())

    # Mutation API

    async def create_thought(
        self,
        content: Any,
        type: str = "note",
        priority: float = 0.5,
        links: Optional[List[Dict[str, Any]]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Thought:
        """Create and persist a Thought

        Text content is queued for embedding when an embedding model is
        available; otherwise the Thought is completed immediately.
        """

        overrides = strip_managed_metadata(metadata)
        if self._needs_embedding(content):
            lifecycle = {
                "status": ThoughtStatus.PENDING.value,
                "pendingTask": {"toolName": EMBEDDING_TOOL, "params": {}},
            }
        else:
            lifecycle = {"status": ThoughtStatus.COMPLETED.value}

        thought = Thought.model_validate({
            "content": content,
            "type": type or "note",
            "priority": clamp_priority(priority if priority is not None else 0.5),
            "links": links or [],
            "metadata": {**overrides, **lifecycle},
        })
        stored = await self.store.put(thought)

        logger.info("Thought created", thought_id=stored.id, type=stored.type, status=stored.status.value)
        if stored.status == ThoughtStatus.PENDING:
            flowmind_logger.log_task_transition(stored.id, EMBEDDING_TOOL, None, ThoughtStatus.PENDING.value)
        return stored

    async def update_thought(self, thought_id: str, updates: Dict[str, Any]) -> Optional[Thought]:
        """Merge a partial update; changed text content is re-queued for embedding"""

        current = await self.store.get(thought_id)
        if current is None:
            return None

        updates = dict(updates)
        if "metadata" in updates:
            if updates["metadata"] is not None and not isinstance(updates["metadata"], dict):
                raise InvalidRequestError("metadata must be an object", {"thoughtId": thought_id})
            updates["metadata"] = strip_managed_metadata(updates["metadata"])

        try:
            merged = merge_thought(current, updates)
        except (ValidationError, TypeError, ValueError) as e:
            raise InvalidRequestError(f"Invalid update for thought {thought_id}: {e}", {"thoughtId": thought_id})

        stored = await self.store.put(merged)

        if "content" in updates and stored.content != current.content and self._needs_embedding(stored.content):
            await self.task_queue.enqueue(thought_id, EMBEDDING_TOOL, {})
            stored = await self.store.get(thought_id) or stored
        return stored

    async def delete_thought(self, thought_id: str) -> bool:
        deleted = await self.store.delete(thought_id)
        if deleted:
            logger.info("Thought deleted", thought_id=thought_id)
        return deleted

    async def provide_feedback(self, thought_id: str, feedback: Dict[str, Any]) -> Optional[Thought]:
        """Append feedback; a numeric rating in [0, 1] nudges priority"""

        current = await self.store.get(thought_id)
        if current is None:
            return None

        entry = FeedbackEntry(type=str(feedback.get("type", "comment")), value=feedback.get("value"))
        history = [item.to_wire() for item in current.metadata.feedback]
        updates: Dict[str, Any] = {"metadata": {"feedback": history + [entry.to_wire()]}}

        rating = entry.value
        if entry.type == "rating" and isinstance(rating, (int, float)) and not isinstance(rating, bool) and 0 <= rating <= 1:
            updates["priority"] = clamp_priority(current.priority + (rating - 0.5) * FEEDBACK_PRIORITY_STEP)

        stored = await self.store.put(merge_thought(current, updates))
        logger.info("Feedback recorded", thought_id=thought_id, type=entry.type, priority=stored.priority)
        return stored

    # Guides

    async def load_guides(self) -> List[Guide]:
        self.guides = await self.store.list_guides()
        return self.guides

    async def add_guide(self, condition: str, action: str, weight: float = 0.5) -> Guide:
        """Persist a guide; malformed clauses are logged but the guide is still stored"""

        parsed = parse_condition(condition)
        for clause in parsed.malformed:
            logger.warning("Guide condition has a malformed clause", clause=clause.text, reason=clause.reason)
        command = parse_action(action)
        if isinstance(command, (MalformedCommand, UnknownCommand)):
            logger.warning("Guide action will have no effect", action=action)

        guide = await self.store.put_guide(Guide(condition=condition, action=action, weight=weight))
        await self.load_guides()
        return guide

    def evaluate_guide(self, guide: Guide, thought: Thought) -> bool:
        return evaluate_condition(parse_condition(guide.condition), thought.to_wire())

    async def apply_guide(self, guide: Guide, thought: Thought) -> bool:
        """Apply a guide's action; True when the Thought changed or a task was queued"""

        command = parse_action(guide.action)
        try:
            effect = await self._apply_command(command, thought)
        except FlowMindError as e:
            logger.warning("Guide action failed", guide_id=guide.id, thought_id=thought.id, error=e.message)
            return False
        except (ValidationError, TypeError, ValueError) as e:
            logger.warning("Guide action rejected", guide_id=guide.id, thought_id=thought.id, error=str(e))
            return False

        if effect:
            logger.debug("Guide applied", guide_id=guide.id, thought_id=thought.id, action=guide.action)
        return effect

    async def _apply_command(self, command, thought: Thought) -> bool:
        match command:
            case SetCommand(path=("priority",), value=value):
                try:
                    priority = clamp_priority(float(value))
                except ValueError:
                    logger.warning("Non-numeric priority in set", value=value, thought_id=thought.id)
                    return False
                if priority == thought.priority:
                    return False
                await self.update_thought(thought.id, {"priority": priority})
                return True

            case SetCommand(path=("metadata", key), value=value):
                literal = coerce_literal(value)
                if not metadata_value_fits(key, literal):
                    logger.warning("Value does not fit metadata field", key=key, value=value, thought_id=thought.id)
                    return False
                if thought.metadata.model_dump(by_alias=True).get(key) == literal:
                    return False
                await self.update_thought(thought.id, {"metadata": {key: literal}})
                return True

            case SetCommand(path=(field,), value=value):
                if getattr(thought, field) == value:
                    return False
                await self.update_thought(thought.id, {field: value})
                return True

            case AddTagCommand(tag=tag):
                if tag in thought.metadata.tags:
                    logger.debug("Tag already present", tag=tag, thought_id=thought.id)
                    return False
                await self.update_thought(thought.id, {"metadata": {"tags": thought.metadata.tags + [tag]}})
                return True

            case RemoveTagCommand(tag=tag):
                if tag not in thought.metadata.tags:
                    logger.debug("Tag not present", tag=tag, thought_id=thought.id)
                    return False
                tags = [existing for existing in thought.metadata.tags if existing != tag]
                await self.update_thought(thought.id, {"metadata": {"tags": tags}})
                return True

            case CreateTaskCommand(content=content):
                return await self.task_queue.enqueue(
                    thought.id, CHILD_TASK_TOOL, {"parentId": thought.id, "content": content}
                )

            case LinkToCommand(target_id=target_id, relationship=relationship):
                if thought.has_link(target_id, relationship):
                    return False
                if await self.store.get(target_id) is None:
                    logger.warning("Link target not found", target_id=target_id, thought_id=thought.id)
                    return False
                links = [link.to_wire() for link in thought.links]
                links.append({"targetId": target_id, "relationship": relationship})
                await self.update_thought(thought.id, {"links": links})
                return True

            case RunToolCommand(tool_name=tool_name, params=params):
                return await self.task_queue.enqueue(thought.id, tool_name, params)

            case UnknownCommand(name=name):
                logger.warning("Unknown guide command", command=name, thought_id=thought.id)
                return False

            case MalformedCommand(text=text, reason=reason):
                logger.warning("Malformed guide action", action=text, reason=reason, thought_id=thought.id)
                return False

        return False

    # Processing cycle

    async def generate_suggestions(self, thought: Thought) -> bool:
        """Store model suggestions on a Thought; placeholders are not stored"""

        context = []
        for link in thought.links[:MAX_SUGGESTION_CONTEXT]:
            target = await self.store.get(link.target_id)
            if target is not None:
                context.append(target)

        suggestions = await self.insight.get_suggestions(thought, context)
        if not suggestions or is_placeholder(suggestions):
            return False

        await self.update_thought(thought.id, {"metadata": {"aiSuggestions": suggestions}})
        return True

    def _wants_suggestions(self, thought: Thought) -> bool:
        return (
            thought.type in self.settings.suggestion_types
            and self.insight.suggestions_available()
            and self.rng.random() < self.settings.suggestion_probability
        )

    async def _consider(self, thought: Thought) -> Tuple[int, int]:
        applied = 0
        current = thought
        for guide in self.guides:
            if not self.evaluate_guide(guide, current):
                continue
            if await self.apply_guide(guide, current):
                applied += 1
            refreshed = await self.store.get(current.id)
            if refreshed is None:
                return applied, 0
            current = refreshed

        suggested = 0
        if self._wants_suggestions(current) and await self.generate_suggestions(current):
            suggested = 1
        return applied, suggested

    async def process_cycle(self, limit: int) -> Optional[CycleReport]:
        """Run one bounded cycle; returns None if a cycle is already running or it failed"""

        if self._cycle_running:
            logger.debug("Cycle already running, skipping")
            return None
        self._cycle_running = True

        report = CycleReport(cycle_id=uuid.uuid4().hex[:8])
        structlog.contextvars.bind_contextvars(cycle_id=report.cycle_id)
        started = time.perf_counter()
        try:
            await self.load_guides()
            report.tasks = await self.task_queue.process_pending(limit)

            remaining = max(0, limit - report.tasks)
            candidates: List[Thought] = []
            if remaining:
                settled = await self.store.list(
                    lambda thought: thought.status in (None, ThoughtStatus.COMPLETED)
                    and not self.task_queue.is_active(thought.id)
                )
                settled.sort(key=lambda thought: thought.priority, reverse=True)
                candidates = settled[:remaining]
            report.considered = len(candidates)

            outcomes = await asyncio.gather(
                *(self._consider(thought) for thought in candidates),
                return_exceptions=True
            )
            for thought, outcome in zip(candidates, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error("Failed to process thought", thought_id=thought.id, error=str(outcome))
                    continue
                report.guides += outcome[0]
                report.suggestions += outcome[1]

            report.duration_ms = elapsed_ms(started)
            metrics.record_latency("reasoner.cycle", report.duration_ms)
            flowmind_logger.log_cycle_summary(
                report.tasks, report.guides, report.suggestions, report.considered, report.duration_ms
            )
            await self.streaming.send_status(
                f"Cycle complete: {report.tasks} tasks, {report.guides} guides, "
                f"{report.suggestions} suggestions"
            )
            return report
        except Exception as e:
            logger.error("Reasoning cycle failed", error=str(e), exc_info=True)
            metrics.increment_counter("reasoner.cycle_failures")
            await self.streaming.send_error(f"Reasoning cycle failed: {e}")
            return None
        finally:
            self._cycle_running = False
            structlog.contextvars.unbind_contextvars("cycle_id")
