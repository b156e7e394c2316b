from typing import Dict, List, Any, Optional, TYPE_CHECKING
import json
import time

import structlog

from flowmind.domain.errors import ToolNotFoundError
from flowmind.domain.streaming.streaming_handler import StreamingHandler
from flowmind.domain.tool.base_tool import Tool, ToolContext
from flowmind.domain.tool.tool_validator import ToolParameterValidator
from flowmind.infrastructure.observability.logging import flowmind_logger, metrics, elapsed_ms

if TYPE_CHECKING:
    from flowmind.domain.store.thought_store import ThoughtStore

logger = structlog.get_logger(__name__)

RESULT_PREVIEW_LENGTH = 200


def result_preview(result: Any) -> str:
    """Short printable form of a tool result for the event log"""

    try:
        text = json.dumps(result, default=str)
    except (TypeError, ValueError):
        text = repr(result)
    if len(text) > RESULT_PREVIEW_LENGTH:
        return text[:RESULT_PREVIEW_LENGTH] + "..."
    return text


class ToolRegistry:
    """Registry for managing and running tools"""

    def __init__(self, store: "ThoughtStore", streaming: Optional[StreamingHandler] = None):
        self.store = store
        self.streaming = streaming or StreamingHandler()
        self.tools: Dict[str, Tool] = {}

    def register(self, tool: Tool):
        """Register a new tool, replacing any tool with the same name"""

        if tool.name in self.tools:
            logger.warning("Replacing registered tool", tool=tool.name)
        self.tools[tool.name] = tool
        logger.debug("Tool registered", tool=tool.name)

    def get(self, name: str) -> Optional[Tool]:
        return self.tools.get(name)

    def list(self) -> List[Tool]:
        """Get all available tools"""
        return list(self.tools.values())

    def search_tools(self, query: str) -> List[Tool]:
        """Search tools by name or description"""

        query_lower = query.lower()
        return [
            tool for tool in self.tools.values()
            if query_lower in tool.name.lower() or query_lower in tool.description.lower()
        ]

    async def execute(self, name: str, params: Dict[str, Any], context: ToolContext) -> Any:
        """Run a tool, recording invocation, success and failure in the event log

        Failures are re-raised after being recorded; the registry never
        changes Thought state itself.
        """

        target_id = params.get("thoughtId") or "system"
        started = time.perf_counter()

        await self.store.append_event("tool_invoked", target_id, {"tool": name, "params": params})
        await self.streaming.send_status(f"Running {name} for {target_id}")

        try:
            tool = self.tools.get(name)
            if tool is None:
                raise ToolNotFoundError(name)
            validated = ToolParameterValidator.validate(name, tool.parameters, params)
            result = await tool.execute(validated, context)
        except Exception as e:
            duration = elapsed_ms(started)
            flowmind_logger.log_tool_execution(name, target_id, duration, success=False, error=str(e))
            metrics.increment_counter("tools.failures", tags={"tool": name})
            await self.store.append_event("tool_failure", target_id, {"tool": name, "error": str(e)})
            await self.streaming.send_error(f"Tool {name} failed: {e}", target_id)
            raise

        duration = elapsed_ms(started)
        flowmind_logger.log_tool_execution(name, target_id, duration, success=True)
        metrics.record_latency("tool.execute", duration, tags={"tool": name})
        await self.store.append_event(
            "tool_success",
            target_id,
            {"tool": name, "result": result_preview(result), "durationMs": duration}
        )
        await self.streaming.send_status(f"{name} finished for {target_id}")
        return result
