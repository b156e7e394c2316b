import pytest

from flowmind.application.websocket.schema.events import EventType
from flowmind.domain.errors import ToolNotFoundError, ToolParameterError
from flowmind.domain.insight.insight_model import InsightModel
from flowmind.domain.tool.base_tool import ToolContext
from flowmind.domain.tool.tool_registry import ToolRegistry, result_preview
from flowmind.domain.tool.tool_validator import ToolParameterValidator

from conftest import EchoTool, FailingTool


@pytest.fixture
def registry(store, streaming):
    registry = ToolRegistry(store, streaming)
    registry.register(EchoTool())
    registry.register(FailingTool())
    return registry


@pytest.fixture
def context(store):
    return ToolContext(store=store, insight=InsightModel())


class TestToolRegistry:

    def test_register_and_lookup(self, registry):
        assert registry.get("EchoTool").name == "EchoTool"
        assert registry.get("Missing") is None
        assert {tool.name for tool in registry.list()} == {"EchoTool", "FailingTool"}
        assert [tool.name for tool in registry.search_tools("fails")] == ["FailingTool"]

    @pytest.mark.asyncio
    async def test_success_is_logged(self, registry, context, store, sink):
        result = await registry.execute("EchoTool", {"message": "hi", "thoughtId": "t1"}, context)
        assert result == {"echo": "hi"}

        events = await store.list_events(target_id="t1")
        assert [event.type for event in events] == ["tool_success", "tool_invoked"]
        assert events[0].data["result"] == '{"echo": "hi"}'
        assert len(sink.of_type(EventType.STATUS_UPDATE)) == 2

    @pytest.mark.asyncio
    async def test_failure_is_logged_and_reraised(self, registry, context, store, sink):
        with pytest.raises(RuntimeError):
            await registry.execute("FailingTool", {"thoughtId": "t1"}, context)

        failures = await store.list_events(event_type="tool_failure")
        assert failures[0].data == {"tool": "FailingTool", "error": "boom"}
        errors = sink.of_type(EventType.ERROR)
        assert errors[0].payload["targetId"] == "t1"

    @pytest.mark.asyncio
    async def test_unknown_tool_is_a_recorded_failure(self, registry, context, store, sink):
        with pytest.raises(ToolNotFoundError):
            await registry.execute("Missing", {}, context)

        failures = await store.list_events(event_type="tool_failure")
        assert failures[0].target_id == "system"
        assert sink.of_type(EventType.ERROR)

    @pytest.mark.asyncio
    async def test_invalid_parameters(self, registry, context, store):
        with pytest.raises(ToolParameterError):
            await registry.execute("EchoTool", {"message": 42}, context)
        assert await store.list_events(event_type="tool_failure")


class TestToolParameterValidator:

    spec = {
        "query": {"type": "string", "required": True},
        "k": {"type": "integer", "default": 5},
        "weight": {"type": "number"},
    }

    def test_defaults_are_filled(self):
        assert ToolParameterValidator.validate("t", self.spec, {"query": "q"}) == {"query": "q", "k": 5}

    def test_missing_required(self):
        with pytest.raises(ToolParameterError) as exc_info:
            ToolParameterValidator.validate("t", self.spec, {})
        assert "missing required parameter 'query'" in exc_info.value.errors

    def test_bool_is_not_a_number(self):
        assert ToolParameterValidator.errors(self.spec, {"query": "q", "weight": True})
        assert not ToolParameterValidator.errors(self.spec, {"query": "q", "weight": 1})


def test_result_preview_is_truncated():
    preview = result_preview("x" * 500)
    assert len(preview) == 203
    assert preview.endswith("...")
