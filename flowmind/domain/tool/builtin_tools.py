from typing import Any, Dict, List
import json

import structlog
from pydantic import ValidationError

from flowmind.domain.errors import FlowMindError, InvalidRequestError, ThoughtNotFoundError
from flowmind.domain.models.thought import Thought, ThoughtStatus, merge_thought, utc_now_iso
from flowmind.domain.store.vector_index import text_hash
from flowmind.domain.tool.base_tool import Tool, ToolContext

logger = structlog.get_logger(__name__)


class GenerateEmbeddingTool(Tool):
    name = "GenerateEmbeddingTool"
    description = "Embed a Thought's text content and store it in the vector index"
    parameters = {
        "thoughtId": {"type": "string", "required": True},
        "text": {"type": "string"},
    }

    async def execute(self, params: Dict[str, Any], context: ToolContext) -> Any:
        thought = await context.store.get(params["thoughtId"])
        if thought is None:
            raise ThoughtNotFoundError(params["thoughtId"])

        text = params.get("text") or thought.text_content
        if not text or not context.insight.embeddings_available():
            return {"embedded": False, "reason": "no text content" if not text else "embeddings unavailable"}

        vector = await context.insight.embed(text)
        if vector is None:
            raise FlowMindError("Embedding generation failed")

        # Reload, the thought may have changed or been deleted while the embedding ran
        current = await context.store.get(thought.id)
        if current is None:
            logger.info("Thought deleted during embedding, result dropped", thought_id=thought.id)
            return {"embedded": False, "reason": "deleted"}

        index = context.store.vector_index
        if index is not None and not index.add_vector(thought.id, vector, text_hash(text)):
            raise FlowMindError("Embedding rejected by the vector index")

        await context.store.put(merge_thought(current, {"metadata": {"embeddingGeneratedAt": utc_now_iso()}}))
        if index is not None:
            await index.save()
        return {"embedded": True, "dimensions": len(vector)}


class CreateChildTaskTool(Tool):
    name = "CreateChildTaskTool"
    description = "Create a task Thought linked to a parent Thought"
    parameters = {
        "parentId": {"type": "string"},
        "thoughtId": {"type": "string"},
        "content": {"type": "string", "required": True},
        "priority": {"type": "number", "default": 0.5},
    }

    async def execute(self, params: Dict[str, Any], context: ToolContext) -> Any:
        parent_id = params.get("parentId") or params.get("thoughtId")
        if not parent_id:
            raise InvalidRequestError("CreateChildTaskTool needs a parentId")
        if context.reasoner is None:
            raise FlowMindError("CreateChildTaskTool requires a reasoner")

        parent = await context.store.get(parent_id)
        if parent is None:
            raise ThoughtNotFoundError(parent_id)

        child = await context.reasoner.create_thought(
            content=params["content"],
            type="task",
            priority=params.get("priority", 0.5),
            links=[{"targetId": parent_id, "relationship": "parent"}],
            metadata={"tags": ["task"]},
        )

        parent = await context.store.get(parent_id)
        if parent is None:
            logger.info("Parent deleted before back-link", parent_id=parent_id, child_id=child.id)
            return {"childId": child.id, "parentId": parent_id, "linked": False}

        if not parent.has_link(child.id, "child"):
            links = [link.to_wire() for link in parent.links]
            links.append({"targetId": child.id, "relationship": "child"})
            await context.store.put(merge_thought(parent, {"links": links}))

        return {"childId": child.id, "parentId": parent_id, "linked": True}


class MemoryTool(Tool):
    name = "MemoryTool"
    description = "Semantic search over Thought content"
    parameters = {
        "query": {"type": "string", "required": True},
        "k": {"type": "integer", "default": 5},
    }

    async def execute(self, params: Dict[str, Any], context: ToolContext) -> Any:
        if not context.insight.embeddings_available():
            raise FlowMindError("Semantic search needs an embedding model")

        results = await context.store.semantic_search(params["query"], params.get("k", 5))
        return [
            {"id": thought.id, "content": thought.content, "type": thought.type, "score": round(score, 4)}
            for thought, score in results
        ]


class ShareTool(Tool):
    name = "ShareTool"
    description = "Export Thoughts as JSON or import them from JSON"
    parameters = {
        "action": {"type": "string", "required": True},
        "thoughtIds": {"type": "array"},
        "json": {"type": "string"},
    }

    async def execute(self, params: Dict[str, Any], context: ToolContext) -> Any:
        action = params["action"]
        if action == "export":
            return await self._export(params.get("thoughtIds"), context)
        if action == "import":
            return await self._import(params.get("json"), context)
        raise InvalidRequestError(f"Unknown ShareTool action '{action}'")

    async def _export(self, thought_ids, context: ToolContext) -> Dict[str, Any]:
        wanted = set(thought_ids) if thought_ids else None
        thoughts = await context.store.list(lambda thought: wanted is None or thought.id in wanted)
        return {"count": len(thoughts), "json": json.dumps([thought.to_wire() for thought in thoughts])}

    async def _import(self, payload, context: ToolContext) -> Dict[str, Any]:
        if not payload:
            raise InvalidRequestError("ShareTool import needs a json payload")
        try:
            entries = json.loads(payload)
        except ValueError as e:
            raise InvalidRequestError(f"Invalid JSON: {e}")
        if isinstance(entries, dict):
            entries = [entries]
        if not isinstance(entries, list):
            raise InvalidRequestError("Import payload must be a list of Thoughts")

        imported: List[str] = []
        skipped = 0
        for entry in entries:
            try:
                thought = Thought.model_validate(entry)
            except ValidationError as e:
                logger.warning("Skipping invalid imported thought", error=str(e))
                skipped += 1
                continue
            # Imported thoughts never resume a task from another system
            if thought.status in (ThoughtStatus.PENDING, ThoughtStatus.PROCESSING):
                thought = merge_thought(thought, {
                    "metadata": {"status": ThoughtStatus.COMPLETED.value, "pendingTask": None}
                })
            await context.store.put(thought)
            imported.append(thought.id)

        return {"imported": len(imported), "skipped": skipped, "ids": imported}


class FeedbackTool(Tool):
    name = "FeedbackTool"
    description = "Attach feedback to a Thought; numeric ratings nudge its priority"
    parameters = {
        "thoughtId": {"type": "string", "required": True},
        "feedback": {"type": "object", "required": True},
    }

    async def execute(self, params: Dict[str, Any], context: ToolContext) -> Any:
        if context.reasoner is None:
            raise FlowMindError("FeedbackTool requires a reasoner")

        thought = await context.reasoner.provide_feedback(params["thoughtId"], params["feedback"])
        if thought is None:
            raise ThoughtNotFoundError(params["thoughtId"])
        return {"thoughtId": thought.id, "priority": thought.priority}


def builtin_tools() -> List[Tool]:
    return [GenerateEmbeddingTool(), CreateChildTaskTool(), MemoryTool(), ShareTool(), FeedbackTool()]
