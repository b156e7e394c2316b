import pytest

from flowmind.application.websocket.schema.events import EventType
from flowmind.domain.models.thought import Thought, Guide
from flowmind.domain.store.thought_store import ThoughtStore
from flowmind.domain.store.vector_index import VectorIndex
from flowmind.infrastructure.persistence.kv_backend import InMemoryBackend, SqliteBackend


class TestThoughtRecords:

    @pytest.mark.asyncio
    async def test_round_trip_equal_except_updated_at(self, store):
        thought = Thought(
            content="buy milk",
            type="task",
            priority=0.4,
            links=[{"targetId": "elsewhere", "relationship": "parent"}],
            metadata={"createdAt": "2024-01-01T00:00:00+00:00", "tags": ["home"], "ui": {"x": 1}},
        )
        await store.put(thought)
        fetched = await store.get(thought.id)

        exclude = {"metadata": {"updated_at"}}
        assert fetched.model_dump(exclude=exclude) == thought.model_dump(exclude=exclude)
        assert fetched.metadata.updated_at is not None

    @pytest.mark.asyncio
    async def test_created_at_set_once(self, store):
        first = await store.put(Thought(content="a"))
        second = await store.put(first.model_copy(update={"content": "b"}))
        assert second.metadata.created_at == first.metadata.created_at
        assert (await store.get(first.id)).content == "b"

    @pytest.mark.asyncio
    async def test_delete(self, store, sink):
        thought = await store.put(Thought(content="a"))
        assert await store.delete(thought.id)
        assert await store.get(thought.id) is None
        assert not await store.delete(thought.id)
        assert sink.of_type(EventType.THOUGHT_DELETE)[0].payload == {"id": thought.id}

    @pytest.mark.asyncio
    async def test_put_over_corrupt_record(self, store):
        await store.backend.put("thought:broken", "{not json")
        assert await store.get("broken") is None

        stored = await store.put(Thought(id="broken", content="repaired"))
        assert stored.metadata.created_at is not None
        assert (await store.get("broken")).content == "repaired"

    @pytest.mark.asyncio
    async def test_list_with_filter(self, store):
        await store.put(Thought(content="a", type="task"))
        await store.put(Thought(content="b", type="note"))
        tasks = await store.list(lambda thought: thought.type == "task")
        assert [thought.content for thought in tasks] == ["a"]

    @pytest.mark.asyncio
    async def test_graph_drops_dangling_edges(self, store):
        a = await store.put(Thought(content="a"))
        b = await store.put(Thought(content="b", links=[{"targetId": a.id}, {"targetId": "missing"}]))

        graph = await store.list_graph()
        node_ids = {node.id for node in graph.nodes}
        assert len(graph.edges) == 1
        assert graph.edges[0].source == b.id and graph.edges[0].target == a.id
        assert all(edge.source in node_ids and edge.target in node_ids for edge in graph.edges)

    @pytest.mark.asyncio
    async def test_find_by_link_target(self, store):
        parent = await store.put(Thought(content="parent"))
        child = await store.put(Thought(content="child", links=[{"targetId": parent.id, "relationship": "parent"}]))
        await store.put(Thought(content="other", links=[{"targetId": parent.id, "relationship": "related"}]))

        assert len(await store.find_by_link_target(parent.id)) == 2
        found = await store.find_by_link_target(parent.id, "parent")
        assert [thought.id for thought in found] == [child.id]


class TestEvents:

    @pytest.mark.asyncio
    async def test_thought_events_are_logged_not_pushed(self, store, sink):
        thought = await store.put(Thought(content="a"))
        await store.put(thought)

        events = await store.list_events(target_id=thought.id)
        assert [event.type for event in events] == ["thought_updated", "thought_created"]
        assert sink.of_type(EventType.EVENT_LOG) == []
        assert len(sink.of_type(EventType.THOUGHT_UPDATE)) == 2

    @pytest.mark.asyncio
    async def test_other_events_are_pushed(self, store, sink):
        await store.append_event("tool_invoked", "system", {"tool": "x"})
        pushed = sink.of_type(EventType.EVENT_LOG)
        assert len(pushed) == 1
        assert pushed[0].payload["targetId"] == "system"

    @pytest.mark.asyncio
    async def test_filters_and_limit(self, store):
        for i in range(5):
            await store.append_event("tool_success", f"t{i}")
        await store.append_event("tool_failure", "t0")

        assert len(await store.list_events(limit=3)) == 3
        failures = await store.list_events(event_type="tool_failure")
        assert [event.target_id for event in failures] == ["t0"]
        assert (await store.list_events())[0].type == "tool_failure"


class TestGuides:

    @pytest.mark.asyncio
    async def test_guide_crud(self, store, sink):
        guide = await store.put_guide(Guide(condition="type=task", action="add_tag=chore"))
        assert (await store.get_guide(guide.id)).action == "add_tag=chore"
        assert [g.id for g in await store.list_guides()] == [guide.id]
        assert sink.of_type(EventType.STATUS_UPDATE)

        assert await store.delete_guide(guide.id)
        assert await store.list_guides() == []


class TestSemanticSearch:

    @pytest.mark.asyncio
    async def test_empty_without_index(self, store):
        await store.put(Thought(content="a"))
        assert await store.semantic_search("a") == []

    @pytest.mark.asyncio
    async def test_ranked_results_skip_deleted(self, streaming):
        async def embed(text):
            return [1.0, 0.0] if "milk" in text else [0.0, 1.0]

        index = VectorIndex(embed, debounce=0)
        store = ThoughtStore(InMemoryBackend(), streaming, index)
        milk = await store.put(Thought(content="buy milk"))
        bread = await store.put(Thought(content="buy bread"))
        await index.flush()

        results = await store.semantic_search("milk please", k=2)
        assert [thought.id for thought, _ in results] == [milk.id, bread.id]
        assert results[0][1] == pytest.approx(1.0)

        await store.delete(milk.id)
        results = await store.semantic_search("milk please", k=2)
        assert [thought.id for thought, _ in results] == [bread.id]

    @pytest.mark.asyncio
    async def test_index_failure_degrades_to_empty(self, streaming):
        async def embed(text):
            raise RuntimeError("provider down")

        index = VectorIndex(embed, debounce=0)
        index.add_vector("x", [1.0, 0.0])
        store = ThoughtStore(InMemoryBackend(), streaming, index)
        assert await store.semantic_search("anything") == []


@pytest.mark.asyncio
async def test_clear_all(store):
    await store.put(Thought(content="a"))
    await store.put_guide(Guide(condition="type=note", action="add_tag=x"))
    await store.clear_all()
    assert await store.list() == []
    assert await store.list_guides() == []


@pytest.mark.asyncio
async def test_sqlite_backend(tmp_path):
    backend = SqliteBackend(tmp_path / "flowmind.db")
    try:
        await backend.put("event:1", "a")
        await backend.put("event:2", "b")
        await backend.put("thought:1", "c")

        assert await backend.get("thought:1") == "c"
        assert [key for key, _ in await backend.scan("event:")] == ["event:1", "event:2"]
        assert [key for key, _ in await backend.scan("event:", reverse=True, limit=1)] == ["event:2"]
        assert await backend.delete("event:1")
        assert not await backend.delete("event:1")

        await backend.clear()
        assert await backend.scan("") == []
    finally:
        await backend.close()
