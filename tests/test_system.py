import asyncio
import json

import pytest
from langchain_core.embeddings import Embeddings
from langchain_core.embeddings.fake import DeterministicFakeEmbedding

from flowmind.application.websocket.schema.events import EventType
from flowmind.domain.errors import FlowMindError, InvalidRequestError, ThoughtNotFoundError
from flowmind.domain.insight.insight_model import InsightModel
from flowmind.domain.models.thought import ThoughtStatus

from conftest import make_system


class TestControl:

    @pytest.mark.asyncio
    async def test_starts_paused(self, system, sink):
        await system.initialize()
        assert system.paused
        assert sink.of_type(EventType.STATUS_UPDATE)[-1].payload == {"message": "System initialized", "paused": True}

    @pytest.mark.asyncio
    async def test_step_only_while_paused(self, system, sink):
        report = await system.control("step")
        assert report is not None

        await system.control("run")
        assert not system.paused
        assert await system.control("step") is None
        assert sink.of_type(EventType.STATUS_UPDATE)[-1].payload["message"] == "Pause processing before stepping"

        await system.control("pause")
        assert system.paused
        assert system._scheduler_task is None

    @pytest.mark.asyncio
    async def test_step_uses_step_limit(self, tmp_path):
        system = make_system(tmp_path, step_limit=2)
        for i in range(4):
            await system.add_thought(f"t{i}")
        report = await system.step()
        assert report.considered == 2

    @pytest.mark.asyncio
    async def test_clear_all(self, system, sink):
        await system.add_thought("x")
        await system.add_guide("type=note", "add_tag=y")
        await system.control("run")

        await system.control("clear_all")
        assert system.paused
        assert await system.list_thoughts() == []
        assert system.reasoner.guides == []
        assert sink.of_type(EventType.INIT)[-1].payload == {"nodes": [], "edges": []}
        assert sink.of_type(EventType.STATUS_UPDATE)[-1].payload == {"message": "All data cleared", "paused": True}

    @pytest.mark.asyncio
    async def test_unknown_command(self, system):
        with pytest.raises(InvalidRequestError):
            await system.control("explode")

    @pytest.mark.asyncio
    async def test_initialize_drains_leftover_tasks(self, system):
        thought = await system.add_thought("x")
        await system.task_queue.enqueue(thought.id, "ShareTool", {"action": "export"})
        await system.initialize()
        assert (await system.get_thought(thought.id)).status == ThoughtStatus.COMPLETED


class TestHighLevelApi:

    @pytest.mark.asyncio
    async def test_missing_thoughts(self, system):
        with pytest.raises(ThoughtNotFoundError):
            await system.update_thought("missing", {"content": "x"})
        with pytest.raises(ThoughtNotFoundError):
            await system.delete_thought("missing")

    @pytest.mark.asyncio
    async def test_delete(self, system, sink):
        thought = await system.add_thought("x")
        assert await system.delete_thought(thought.id)
        assert await system.get_thought(thought.id) is None
        assert sink.of_type(EventType.THOUGHT_DELETE)

    @pytest.mark.asyncio
    async def test_invoke_tool_immediately(self, system):
        await system.add_thought("exported")
        result = await system.invoke_tool("ShareTool", {"action": "export"})
        assert result["count"] == 1
        assert json.loads(result["json"])[0]["content"] == "exported"

    @pytest.mark.asyncio
    async def test_invoke_tool_against_thought_queues_it(self, system):
        thought = await system.add_thought("x")
        result = await system.invoke_tool("FeedbackTool", {"feedback": {"type": "rating", "value": 1}}, thought.id)
        assert result["queued"]

        await system.task_queue.process_pending(5)
        updated = await system.get_thought(thought.id)
        assert updated.priority == pytest.approx(0.55)
        assert updated.status == ThoughtStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_share_import_skips_invalid_entries(self, system):
        payload = json.dumps([
            {"id": "a", "content": "imported", "metadata": {"status": "processing"}},
            {"content": "no id is fine"},
            {"links": "not a list"},
        ])
        result = await system.invoke_tool("ShareTool", {"action": "import", "json": payload})
        assert result["imported"] == 2
        assert result["skipped"] == 1
        assert (await system.get_thought("a")).status == ThoughtStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_memory_tool_requires_embeddings(self, system):
        with pytest.raises(FlowMindError):
            await system.invoke_tool("MemoryTool", {"query": "milk"})

    @pytest.mark.asyncio
    async def test_memory_tool_searches(self, tmp_path):
        system = make_system(tmp_path, insight=InsightModel(embeddings=DeterministicFakeEmbedding(size=8)), index_debounce=0)
        thought = await system.add_thought("buy milk")
        await system.task_queue.process_pending(5)

        results = await system.invoke_tool("MemoryTool", {"query": "buy milk", "k": 1})
        assert results[0]["id"] == thought.id

    @pytest.mark.asyncio
    async def test_non_object_metadata_is_rejected(self, system):
        thought = await system.add_thought("x")
        with pytest.raises(InvalidRequestError):
            await system.update_thought(thought.id, {"metadata": "oops"})
        with pytest.raises(InvalidRequestError):
            await system.update_thought(thought.id, {"metadata": {"ui": 3}})
        assert (await system.get_thought(thought.id)).metadata.ui == {}


class GatedEmbeddings(Embeddings):
    """Async embedding blocks until released"""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    def embed_documents(self, texts):
        return [[1.0, 0.0] for _ in texts]

    def embed_query(self, text):
        return [1.0, 0.0]

    async def aembed_query(self, text):
        self.started.set()
        await self.release.wait()
        return [1.0, 0.0]


class TestDeleteWhileToolsRun:

    @pytest.mark.asyncio
    async def test_thought_deleted_during_embedding_stays_deleted(self, tmp_path, sink):
        embeddings = GatedEmbeddings()
        system = make_system(tmp_path, sink=sink, insight=InsightModel(embeddings=embeddings))
        thought = await system.add_thought("buy milk", "task")

        cycle = asyncio.create_task(system.reasoner.process_cycle(10))
        await embeddings.started.wait()
        assert await system.delete_thought(thought.id)
        embeddings.release.set()
        await cycle

        assert await system.get_thought(thought.id) is None
        assert not system.vector_index.has_vector(thought.id)
        kinds = [event.type for event in await system.get_events(target_id=thought.id)]
        assert [kind for kind in kinds if kind.startswith("thought_")][0] == "thought_deleted"
        pushes = [
            event.type for event in sink.events
            if event.type in (EventType.THOUGHT_UPDATE, EventType.THOUGHT_DELETE) and event.payload["id"] == thought.id
        ]
        assert pushes[-1] == EventType.THOUGHT_DELETE

    @pytest.mark.asyncio
    async def test_parent_deleted_during_child_creation_stays_deleted(self, system, monkeypatch):
        parent = await system.add_thought("plan trip", "goal")
        original = system.reasoner.create_thought

        async def create_then_delete_parent(*args, **kwargs):
            child = await original(*args, **kwargs)
            await system.delete_thought(parent.id)
            return child

        monkeypatch.setattr(system.reasoner, "create_thought", create_then_delete_parent)
        result = await system.invoke_tool("CreateChildTaskTool", {"parentId": parent.id, "content": "book flights"})

        assert result["linked"] is False
        assert await system.get_thought(parent.id) is None
        child = await system.get_thought(result["childId"])
        assert child.has_link(parent.id, "parent")


class TestSettings:

    @pytest.mark.asyncio
    async def test_update_is_broadcast(self, system, sink):
        settings = await system.update_settings({"cycleLimit": 3, "llm": {"provider": "none"}})
        assert settings.cycle_limit == 3
        assert system.reasoner.settings.cycle_limit == 3
        assert not system.insight.suggestions_available()
        assert sink.of_type(EventType.SETTINGS)[-1].payload["cycleLimit"] == 3

    @pytest.mark.asyncio
    async def test_invalid_update_is_rejected(self, system):
        with pytest.raises(InvalidRequestError):
            await system.update_settings({"suggestionProbability": 4})
        assert system.settings.suggestion_probability == 0.15

    @pytest.mark.asyncio
    async def test_non_object_llm_is_rejected(self, system):
        with pytest.raises(InvalidRequestError):
            await system.update_settings({"llm": "ollama"})
        assert system.settings.llm.provider == "ollama"


@pytest.mark.asyncio
async def test_shutdown(system):
    await system.control("run")
    await system.shutdown()
    assert system.paused
    assert system._scheduler_task is None
