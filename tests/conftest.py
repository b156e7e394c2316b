import asyncio
import random
from typing import Any, Dict, List

import pytest

from flowmind.application.websocket.schema.events import BaseEvent
from flowmind.domain.insight.insight_model import InsightModel
from flowmind.domain.orchestration.core.system import FlowMindSystem
from flowmind.domain.store.thought_store import ThoughtStore
from flowmind.domain.streaming.streaming_handler import StreamingHandler
from flowmind.domain.tool.base_tool import Tool, ToolContext
from flowmind.infrastructure.config.settings import AppConfig, SettingsManager
from flowmind.infrastructure.observability.logging import metrics
from flowmind.infrastructure.persistence.kv_backend import InMemoryBackend


# =============================================================================
# FAKES
# =============================================================================

class RecordingSink:
    """Collects every push instead of sending it"""

    def __init__(self):
        self.events: List[BaseEvent] = []

    async def broadcast(self, event: BaseEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[BaseEvent]:
        return [event for event in self.events if event.type == event_type]


class FixedRandom(random.Random):
    """random() always returns the same value"""

    def __init__(self, value: float):
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


class EchoTool(Tool):
    name = "EchoTool"
    description = "Returns its parameters"
    parameters = {"message": {"type": "string"}}

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []

    async def execute(self, params: Dict[str, Any], context: ToolContext) -> Any:
        self.calls.append(params)
        return {"echo": params.get("message", "")}


class FailingTool(Tool):
    name = "FailingTool"
    description = "Always fails"

    async def execute(self, params: Dict[str, Any], context: ToolContext) -> Any:
        raise RuntimeError("boom")


class SlowTool(Tool):
    """Blocks until released, counting concurrent runs"""

    name = "SlowTool"
    description = "Waits for a release signal"

    def __init__(self):
        self.release = asyncio.Event()
        self.runs = 0

    async def execute(self, params: Dict[str, Any], context: ToolContext) -> Any:
        self.runs += 1
        await self.release.wait()
        return "done"


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def streaming(sink):
    return StreamingHandler(sink)


@pytest.fixture
def store(streaming):
    return ThoughtStore(InMemoryBackend(), streaming)


def make_system(tmp_path, sink=None, insight=None, rng=None, **settings) -> FlowMindSystem:
    """An in-memory system with no language model unless one is given"""

    settings_manager = SettingsManager(None)
    if settings:
        settings_manager.update_settings(settings)
    return FlowMindSystem.build(
        AppConfig(data_dir=tmp_path, storage="memory"),
        settings_manager,
        sink=sink,
        insight=insight or InsightModel(),
        rng=rng or FixedRandom(0.99),
    )


@pytest.fixture
def system(tmp_path, sink):
    return make_system(tmp_path, sink)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()
