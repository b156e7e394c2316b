from typing import Any, Callable, Dict, Optional
import asyncio

import structlog

from flowmind.domain.errors import ThoughtNotFoundError
from flowmind.domain.models.thought import PendingTask, ThoughtStatus, merge_thought
from flowmind.domain.store.thought_store import ThoughtStore
from flowmind.domain.streaming.streaming_handler import StreamingHandler
from flowmind.domain.tool.base_tool import ToolContext
from flowmind.domain.tool.tool_registry import ToolRegistry
from flowmind.infrastructure.observability.logging import flowmind_logger

logger = structlog.get_logger(__name__)

INTERRUPTED = "Task interrupted before completion"


class TaskQueue:
    """
    Per-Thought task lifecycle:
    pending (pendingTask set) -> processing (pendingTask cleared) -> completed | failed

    `active` holds the ids whose task is running right now; an id is added
    before the first suspension point and always removed when the task ends.
    """

    def __init__(
        self,
        store: ThoughtStore,
        registry: ToolRegistry,
        streaming: Optional[StreamingHandler] = None,
        context_factory: Optional[Callable[[], ToolContext]] = None
    ):
        self.store = store
        self.registry = registry
        self.streaming = streaming or StreamingHandler()
        self.context_factory = context_factory
        self.active: Dict[str, Optional[PendingTask]] = {}

    def _context(self) -> ToolContext:
        if self.context_factory is not None:
            return self.context_factory()
        raise RuntimeError("TaskQueue has no tool context factory")

    def is_active(self, thought_id: str) -> bool:
        return thought_id in self.active

    async def enqueue(self, thought_id: str, tool_name: str, params: Optional[Dict[str, Any]] = None) -> bool:
        """Mark a Thought pending with a new task; False when the same task is already queued or running"""

        params = dict(params or {})
        thought = await self.store.get(thought_id)
        if thought is None:
            raise ThoughtNotFoundError(thought_id)

        pending = thought.metadata.pending_task
        if thought.status == ThoughtStatus.PENDING and pending is not None and pending.same_as(tool_name, params):
            logger.debug("Task already pending", thought_id=thought_id, tool=tool_name)
            return False

        running = self.active.get(thought_id)
        if running is not None and running.same_as(tool_name, params):
            logger.debug("Task already processing", thought_id=thought_id, tool=tool_name)
            return False

        updated = merge_thought(thought, {
            "metadata": {
                "status": ThoughtStatus.PENDING.value,
                "pendingTask": {"toolName": tool_name, "params": params},
                "errorInfo": None,
            }
        })
        await self.store.put(updated)
        flowmind_logger.log_task_transition(
            thought_id, tool_name, thought.status.value if thought.status else None, ThoughtStatus.PENDING.value
        )
        return True

    async def process_task(self, thought_id: str) -> bool:
        """Run a Thought's pending task; False when it is already running or nothing is pending"""

        if thought_id in self.active:
            return False
        self.active[thought_id] = None

        try:
            thought = await self.store.get(thought_id)
            if thought is None or thought.status != ThoughtStatus.PENDING or thought.metadata.pending_task is None:
                return False

            task = thought.metadata.pending_task
            self.active[thought_id] = task

            processing = merge_thought(thought, {
                "metadata": {"status": ThoughtStatus.PROCESSING.value, "pendingTask": None, "errorInfo": None}
            })
            await self.store.put(processing)
            flowmind_logger.log_task_transition(
                thought_id, task.tool_name, ThoughtStatus.PENDING.value, ThoughtStatus.PROCESSING.value
            )

            error: Optional[str] = INTERRUPTED
            try:
                await self.registry.execute(task.tool_name, {**task.params, "thoughtId": thought_id}, self._context())
                error = None
            except Exception as e:
                error = str(e) or e.__class__.__name__
            finally:
                await self._finish(thought_id, task, error)
            return True
        finally:
            self.active.pop(thought_id, None)

    async def _finish(self, thought_id: str, task: PendingTask, error: Optional[str]):
        try:
            current = await self.store.get(thought_id)
            if current is None:
                logger.info("Thought removed while its task ran", thought_id=thought_id, tool=task.tool_name)
                return
            if current.status == ThoughtStatus.PENDING and current.metadata.pending_task is not None:
                # A newer task was queued while this one ran; leave it pending
                logger.info("Task superseded by a newer pending task", thought_id=thought_id, tool=task.tool_name)
                return

            status = ThoughtStatus.FAILED if error else ThoughtStatus.COMPLETED
            updated = merge_thought(current, {"metadata": {"status": status.value, "errorInfo": error}})
            await self.store.put(updated)
            flowmind_logger.log_task_transition(
                thought_id, task.tool_name, ThoughtStatus.PROCESSING.value, status.value, error=error
            )
        except Exception as e:
            logger.error("Failed to record task outcome", thought_id=thought_id, tool=task.tool_name, error=str(e))

    async def process_pending(self, limit: int) -> int:
        """Start up to `limit` pending tasks concurrently; returns how many actually ran"""

        if limit <= 0:
            return 0

        candidates = await self.store.list(
            lambda thought: thought.status == ThoughtStatus.PENDING
            and thought.metadata.pending_task is not None
            and thought.id not in self.active
        )
        candidates.sort(key=lambda thought: thought.priority, reverse=True)
        selected = candidates[:limit]
        if not selected:
            return 0

        results = await asyncio.gather(
            *(self.process_task(thought.id) for thought in selected),
            return_exceptions=True
        )
        started = 0
        for thought, result in zip(selected, results):
            if isinstance(result, BaseException):
                logger.error("Task processing crashed", thought_id=thought.id, error=str(result))
            elif result:
                started += 1
        return started
