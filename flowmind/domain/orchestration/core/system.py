from typing import Any, Dict, List, Optional, Tuple
import asyncio
import random

import structlog
from pydantic import ValidationError

from flowmind.domain.errors import InvalidRequestError, ThoughtNotFoundError
from flowmind.domain.insight.insight_model import InsightModel
from flowmind.domain.models.thought import Thought, Guide, Event, Graph
from flowmind.domain.reasoning.reasoner import Reasoner, CycleReport
from flowmind.domain.store.thought_store import ThoughtStore
from flowmind.domain.store.vector_index import VectorIndex
from flowmind.domain.streaming.streaming_handler import StreamingHandler, EventSink
from flowmind.domain.task.task_queue import TaskQueue
from flowmind.domain.tool.base_tool import ToolContext
from flowmind.domain.tool.builtin_tools import builtin_tools
from flowmind.domain.tool.tool_registry import ToolRegistry
from flowmind.infrastructure.config.settings import AppConfig, SettingsManager, SystemSettings
from flowmind.infrastructure.persistence.kv_backend import KeyValueBackend, InMemoryBackend, SqliteBackend

logger = structlog.get_logger(__name__)

CONTROL_COMMANDS = ("run", "pause", "step", "clear_all")


def _embed_fn(insight: InsightModel):
    return insight.embed if insight.embeddings_available() else None


class FlowMindSystem:
    """
    Composition root and scheduler:
    - builds the components leaves first and passes each its collaborators
    - runs processing cycles on an interval while not paused
    - exposes the high-level API used by the websocket and HTTP layers
    """

    def __init__(
        self,
        settings_manager: SettingsManager,
        backend: KeyValueBackend,
        streaming: StreamingHandler,
        insight: InsightModel,
        vector_index: VectorIndex,
        rng: Optional[random.Random] = None
    ):
        self.settings_manager = settings_manager
        self.settings: SystemSettings = settings_manager.get_settings()
        self.backend = backend
        self.streaming = streaming
        self.insight = insight
        self.vector_index = vector_index

        self.store = ThoughtStore(backend, streaming, vector_index)
        self.registry = ToolRegistry(self.store, streaming)
        for tool in builtin_tools():
            self.registry.register(tool)
        self.task_queue = TaskQueue(self.store, self.registry, streaming, context_factory=self.tool_context)
        self.reasoner = Reasoner(self.store, self.task_queue, insight, streaming, self.settings, rng=rng)

        self.paused = True
        self._scheduler_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None

    @classmethod
    def build(
        cls,
        config: AppConfig,
        settings_manager: Optional[SettingsManager] = None,
        sink: Optional[EventSink] = None,
        backend: Optional[KeyValueBackend] = None,
        insight: Optional[InsightModel] = None,
        rng: Optional[random.Random] = None
    ) -> "FlowMindSystem":
        """Construct a system from configuration"""

        settings_manager = settings_manager or SettingsManager(config.settings_path)
        settings = settings_manager.get_settings()
        streaming = StreamingHandler(sink)

        durable = config.storage == "sqlite"
        if backend is None:
            backend = SqliteBackend(config.db_path) if durable else InMemoryBackend()

        insight = insight or InsightModel.from_settings(settings.llm, streaming)
        vector_index = VectorIndex(
            _embed_fn(insight),
            path=config.vector_index_path if durable else None,
            debounce=settings.index_debounce
        )

        logger.info("FlowMind system built", storage=config.storage, data_dir=str(config.data_dir))
        return cls(settings_manager, backend, streaming, insight, vector_index, rng=rng)

    def tool_context(self) -> ToolContext:
        return ToolContext(
            store=self.store,
            insight=self.insight,
            task_queue=self.task_queue,
            reasoner=self.reasoner
        )

    async def initialize(self):
        """Load state and finish tasks left pending by a previous run"""

        await self.vector_index.load()
        await self.reasoner.load_guides()
        drained = await self.task_queue.process_pending(self.settings.cycle_limit)
        logger.info("FlowMind initialized", guides=len(self.reasoner.guides), drained_tasks=drained)
        await self.streaming.send_status("System initialized", paused=self.paused)

    # Scheduler

    def _start_scheduler(self):
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())

    async def _stop_scheduler(self):
        task, self._scheduler_task = self._scheduler_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _scheduler_loop(self):
        while not self.paused:
            await asyncio.sleep(self.settings.auto_process_interval)
            if self.paused:
                break
            # Pausing cancels this loop, never the cycle in flight
            await asyncio.shield(self._run_cycle(self.settings.cycle_limit))

    def _run_cycle(self, limit: int) -> "asyncio.Task":
        self._cycle_task = asyncio.ensure_future(self.reasoner.process_cycle(limit))
        return self._cycle_task

    async def run(self):
        """Resume scheduled cycles"""

        if not self.paused:
            return
        self.paused = False
        self._start_scheduler()
        logger.info("Processing resumed", interval=self.settings.auto_process_interval)
        await self.streaming.send_status("Processing resumed", paused=False)

    async def pause(self):
        """Stop scheduling new cycles; a cycle in flight still finishes"""

        self.paused = True
        await self._stop_scheduler()
        logger.info("Processing paused")
        await self.streaming.send_status("Processing paused", paused=True)

    async def step(self) -> Optional[CycleReport]:
        """Run one cycle with the step limit, only while paused"""

        if not self.paused:
            await self.streaming.send_status("Pause processing before stepping", paused=False)
            return None
        await self.streaming.send_status("Stepping one cycle", paused=True)
        return await self._run_cycle(self.settings.step_limit)

    async def clear_all(self):
        """Wipe every record and the vector index, then stay paused"""

        await self.pause()
        if self._cycle_task is not None and not self._cycle_task.done():
            await self._cycle_task
        await self.store.clear_all()
        await self.reasoner.load_guides()
        await self.streaming.send_init(Graph())
        await self.streaming.send_status("All data cleared", paused=True)

    async def control(self, command: str) -> Optional[CycleReport]:
        match command:
            case "run":
                await self.run()
            case "pause":
                await self.pause()
            case "step":
                return await self.step()
            case "clear_all":
                await self.clear_all()
            case _:
                raise InvalidRequestError(f"Unknown control command '{command}'")
        return None

    # High-level API

    async def add_thought(
        self,
        content: Any,
        type: str = "note",
        priority: float = 0.5,
        links: Optional[List[Dict[str, Any]]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Thought:
        return await self.reasoner.create_thought(content, type, priority, links, metadata)

    async def update_thought(self, thought_id: str, updates: Dict[str, Any]) -> Thought:
        thought = await self.reasoner.update_thought(thought_id, updates)
        if thought is None:
            raise ThoughtNotFoundError(thought_id)
        return thought

    async def delete_thought(self, thought_id: str) -> bool:
        if not await self.reasoner.delete_thought(thought_id):
            raise ThoughtNotFoundError(thought_id)
        return True

    async def get_thought(self, thought_id: str) -> Optional[Thought]:
        return await self.store.get(thought_id)

    async def list_thoughts(self) -> List[Thought]:
        return await self.store.list()

    async def graph(self) -> Graph:
        return await self.store.list_graph()

    async def find_thoughts(self, query: str, k: int = 5) -> List[Tuple[Thought, float]]:
        return await self.store.semantic_search(query, k)

    async def add_guide(self, condition: str, action: str, weight: float = 0.5) -> Guide:
        return await self.reasoner.add_guide(condition, action, weight)

    async def list_guides(self) -> List[Guide]:
        return await self.store.list_guides()

    async def get_events(
        self,
        target_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100
    ) -> List[Event]:
        return await self.store.list_events(target_id=target_id, event_type=event_type, limit=limit)

    async def invoke_tool(
        self,
        tool_name: str,
        params: Optional[Dict[str, Any]] = None,
        thought_id: Optional[str] = None
    ) -> Any:
        """Queue a tool against a Thought, or run it now when no Thought is given"""

        params = dict(params or {})
        if thought_id:
            queued = await self.task_queue.enqueue(thought_id, tool_name, params)
            return {"queued": queued, "thoughtId": thought_id, "toolName": tool_name}
        return await self.registry.execute(tool_name, params, self.tool_context())

    def get_settings(self) -> SystemSettings:
        return self.settings

    async def update_settings(self, updates: Dict[str, Any]) -> SystemSettings:
        """Apply a settings change and reconfigure the components it affects"""

        previous = self.settings
        try:
            settings = self.settings_manager.update_settings(updates)
        except ValidationError as e:
            raise InvalidRequestError(f"Invalid settings: {e.errors(include_url=False)}")
        except ValueError as e:
            raise InvalidRequestError(f"Invalid settings: {e}")
        self.settings = settings

        if settings.llm != previous.llm:
            self.insight = InsightModel.from_settings(settings.llm, self.streaming)
            embedding_changed = (
                settings.llm.provider != previous.llm.provider
                or settings.llm.embedding_model != previous.llm.embedding_model
            )
            self.vector_index.configure(_embed_fn(self.insight), settings.index_debounce, reset_vectors=embedding_changed)
        else:
            self.vector_index.configure(self.vector_index.embed, settings.index_debounce)
        self.reasoner.configure(settings, self.insight)

        if not self.paused and settings.auto_process_interval != previous.auto_process_interval:
            await self._stop_scheduler()
            self._start_scheduler()

        await self.streaming.send_settings(settings.model_dump(by_alias=True))
        return settings

    async def shutdown(self):
        """Stop scheduling, let the running cycle finish and release storage"""

        self.paused = True
        await self._stop_scheduler()
        if self._cycle_task is not None and not self._cycle_task.done():
            await self._cycle_task
        await self.vector_index.flush()
        await self.backend.close()
        logger.info("FlowMind system shut down")
