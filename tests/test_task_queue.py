import asyncio

import pytest

from flowmind.domain.errors import ThoughtNotFoundError
from flowmind.domain.insight.insight_model import InsightModel
from flowmind.domain.models.thought import Thought, ThoughtStatus
from flowmind.domain.task.task_queue import TaskQueue
from flowmind.domain.tool.base_tool import ToolContext
from flowmind.domain.tool.tool_registry import ToolRegistry

from conftest import EchoTool, FailingTool, SlowTool


@pytest.fixture
def tools():
    return {"echo": EchoTool(), "failing": FailingTool(), "slow": SlowTool()}


@pytest.fixture
def queue(store, streaming, tools):
    registry = ToolRegistry(store, streaming)
    for tool in tools.values():
        registry.register(tool)
    return TaskQueue(store, registry, streaming, context_factory=lambda: ToolContext(store=store, insight=InsightModel()))


async def completed_thought(store, **fields):
    return await store.put(Thought(content="a", metadata={"status": "completed"}, **fields))


class TestEnqueue:

    @pytest.mark.asyncio
    async def test_enqueue_marks_pending(self, queue, store):
        thought = await completed_thought(store)
        assert await queue.enqueue(thought.id, "EchoTool", {"message": "hi"})

        pending = await store.get(thought.id)
        assert pending.status == ThoughtStatus.PENDING
        assert pending.metadata.pending_task.tool_name == "EchoTool"
        assert pending.metadata.pending_task.params == {"message": "hi"}

    @pytest.mark.asyncio
    async def test_identical_enqueue_is_a_noop(self, queue, store):
        thought = await completed_thought(store)
        await queue.enqueue(thought.id, "EchoTool", {"message": "hi"})
        before = await store.get(thought.id)
        events_before = await store.list_events()

        assert not await queue.enqueue(thought.id, "EchoTool", {"message": "hi"})
        assert await store.get(thought.id) == before
        assert await store.list_events() == events_before

    @pytest.mark.asyncio
    async def test_different_task_replaces_pending(self, queue, store):
        thought = await completed_thought(store)
        await queue.enqueue(thought.id, "EchoTool", {"message": "hi"})
        assert await queue.enqueue(thought.id, "EchoTool", {"message": "bye"})
        assert (await store.get(thought.id)).metadata.pending_task.params == {"message": "bye"}

    @pytest.mark.asyncio
    async def test_unknown_thought(self, queue):
        with pytest.raises(ThoughtNotFoundError):
            await queue.enqueue("missing", "EchoTool")


class TestProcessTask:

    @pytest.mark.asyncio
    async def test_success_completes(self, queue, store, tools):
        thought = await completed_thought(store)
        await queue.enqueue(thought.id, "EchoTool", {"message": "hi"})

        assert await queue.process_task(thought.id)
        done = await store.get(thought.id)
        assert done.status == ThoughtStatus.COMPLETED
        assert done.metadata.pending_task is None
        assert tools["echo"].calls == [{"message": "hi", "thoughtId": thought.id}]
        assert not queue.is_active(thought.id)

    @pytest.mark.asyncio
    async def test_failure_marks_failed(self, queue, store):
        thought = await completed_thought(store)
        await queue.enqueue(thought.id, "FailingTool")

        assert await queue.process_task(thought.id)
        failed = await store.get(thought.id)
        assert failed.status == ThoughtStatus.FAILED
        assert failed.metadata.error_info == "boom"
        assert not queue.is_active(thought.id)

    @pytest.mark.asyncio
    async def test_unregistered_tool_fails_the_thought(self, queue, store):
        thought = await completed_thought(store)
        await queue.enqueue(thought.id, "NoSuchTool")

        await queue.process_task(thought.id)
        assert (await store.get(thought.id)).status == ThoughtStatus.FAILED
        assert await store.list_events(event_type="tool_failure")

    @pytest.mark.asyncio
    async def test_nothing_pending(self, queue, store):
        thought = await completed_thought(store)
        assert not await queue.process_task(thought.id)
        assert not await queue.process_task("missing")

    @pytest.mark.asyncio
    async def test_never_runs_twice_concurrently(self, queue, store, tools):
        thought = await completed_thought(store)
        await queue.enqueue(thought.id, "SlowTool")

        first = asyncio.create_task(queue.process_task(thought.id))
        await asyncio.sleep(0.01)
        assert queue.is_active(thought.id)
        assert (await store.get(thought.id)).status == ThoughtStatus.PROCESSING
        assert not await queue.process_task(thought.id)
        assert not await queue.enqueue(thought.id, "SlowTool")

        tools["slow"].release.set()
        assert await first
        assert tools["slow"].runs == 1
        assert (await store.get(thought.id)).status == ThoughtStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_task_queued_while_running_stays_pending(self, queue, store, tools):
        thought = await completed_thought(store)
        await queue.enqueue(thought.id, "SlowTool")
        first = asyncio.create_task(queue.process_task(thought.id))
        await asyncio.sleep(0.01)

        assert await queue.enqueue(thought.id, "EchoTool", {"message": "next"})
        tools["slow"].release.set()
        await first

        current = await store.get(thought.id)
        assert current.status == ThoughtStatus.PENDING
        assert current.metadata.pending_task.tool_name == "EchoTool"


class TestProcessPending:

    @pytest.mark.asyncio
    async def test_runs_up_to_limit(self, queue, store):
        ids = []
        for priority in (0.1, 0.9, 0.5):
            thought = await completed_thought(store, priority=priority)
            await queue.enqueue(thought.id, "EchoTool", {"message": str(priority)})
            ids.append(thought.id)

        assert await queue.process_pending(2) == 2
        statuses = {thought.id: thought.status for thought in await store.list()}
        assert statuses[ids[1]] == ThoughtStatus.COMPLETED
        assert statuses[ids[2]] == ThoughtStatus.COMPLETED
        assert statuses[ids[0]] == ThoughtStatus.PENDING

        assert await queue.process_pending(5) == 1
        assert await queue.process_pending(5) == 0

    @pytest.mark.asyncio
    async def test_skips_active_thoughts(self, queue, store, tools):
        thought = await completed_thought(store)
        await queue.enqueue(thought.id, "SlowTool")
        running = asyncio.create_task(queue.process_pending(5))
        await asyncio.sleep(0.01)

        assert await queue.process_pending(5) == 0
        tools["slow"].release.set()
        assert await running == 1
        assert tools["slow"].runs == 1
