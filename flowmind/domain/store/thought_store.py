from typing import Any, Callable, Dict, List, Optional, Tuple
import itertools
import json

import structlog
from pydantic import ValidationError

from flowmind.domain.models.thought import Thought, Guide, Event, Graph, GraphEdge, utc_now_iso
from flowmind.domain.store.vector_index import VectorIndex
from flowmind.domain.streaming.streaming_handler import StreamingHandler
from flowmind.infrastructure.persistence.kv_backend import KeyValueBackend
from flowmind.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

THOUGHT_PREFIX = "thought:"
GUIDE_PREFIX = "guide:"
EVENT_PREFIX = "event:"

DEFAULT_EVENT_LIMIT = 100


class ThoughtStore:
    """
    Record store for Thoughts, Guides and the Event log.

    Every mutation appends an Event and notifies observers. Thought events
    reach observers as thought_update / thought_delete; every other event
    type is pushed as event_log.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        streaming: Optional[StreamingHandler] = None,
        vector_index: Optional[VectorIndex] = None
    ):
        self.backend = backend
        self.streaming = streaming or StreamingHandler()
        self.vector_index = vector_index
        # Orders events that share a timestamp
        self._event_seq = itertools.count()

    @staticmethod
    def _dump(model) -> str:
        return json.dumps(model.to_wire())

    async def _load(self, key: str, model):
        raw = await self.backend.get(key)
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            logger.error("Corrupt record skipped", key=key, error=str(e))
            return None

    async def _scan(self, prefix: str, model) -> list:
        records = []
        for key, raw in await self.backend.scan(prefix):
            try:
                records.append(model.model_validate_json(raw))
            except ValidationError as e:
                logger.error("Corrupt record skipped", key=key, error=str(e))
        return records

    # Thoughts

    async def put(self, thought: Thought) -> Thought:
        """Persist a Thought, stamping timestamps, and notify observers"""

        existing = await self.backend.get(THOUGHT_PREFIX + thought.id)
        previous = None
        if existing is not None:
            try:
                previous = Thought.model_validate_json(existing)
            except ValidationError as e:
                logger.error("Corrupt record overwritten", key=THOUGHT_PREFIX + thought.id, error=str(e))

        now = utc_now_iso()
        stored = thought.model_copy(deep=True)
        stored.metadata.updated_at = now
        previous_created = previous.metadata.created_at if previous is not None else None
        stored.metadata.created_at = previous_created or stored.metadata.created_at or now

        await self.backend.put(THOUGHT_PREFIX + stored.id, self._dump(stored))

        if self.vector_index is not None and stored.text_content:
            try:
                self.vector_index.request_upsert(stored.id, stored.text_content)
            except Exception as e:
                logger.warning("Index update not scheduled", thought_id=stored.id, error=str(e))

        await self.append_event(
            "thought_updated" if existing is not None else "thought_created",
            stored.id,
            {"status": stored.metadata.status.value if stored.metadata.status else None}
        )
        await self.streaming.send_thought_update(stored)
        return stored

    async def get(self, thought_id: str) -> Optional[Thought]:
        return await self._load(THOUGHT_PREFIX + thought_id, Thought)

    async def delete(self, thought_id: str) -> bool:
        """Remove a Thought; its vector is tombstoned, not erased"""

        removed = await self.backend.delete(THOUGHT_PREFIX + thought_id)
        if not removed:
            return False

        if self.vector_index is not None:
            self.vector_index.delete(thought_id)

        await self.append_event("thought_deleted", thought_id)
        await self.streaming.send_thought_delete(thought_id)
        return True

    async def list(self, predicate: Optional[Callable[[Thought], bool]] = None) -> List[Thought]:
        """List Thoughts, optionally filtered"""

        thoughts = await self._scan(THOUGHT_PREFIX, Thought)
        if predicate is None:
            return thoughts
        return [thought for thought in thoughts if predicate(thought)]

    async def list_graph(self) -> Graph:
        """Nodes plus edges whose endpoints both exist"""

        nodes = await self.list()
        ids = {node.id for node in nodes}
        edges = [
            GraphEdge(source=node.id, target=link.target_id, relationship=link.relationship)
            for node in nodes
            for link in node.links
            if link.target_id in ids
        ]
        return Graph(nodes=nodes, edges=edges)

    async def find_by_link_target(self, target_id: str, relationship: Optional[str] = None) -> List[Thought]:
        return await self.list(
            lambda thought: any(
                link.target_id == target_id and (relationship is None or link.relationship == relationship)
                for link in thought.links
            )
        )

    async def semantic_search(self, query: str, k: int = 5) -> List[Tuple[Thought, float]]:
        """Ranked (thought, score) pairs; empty whenever the index cannot answer"""

        if self.vector_index is None or not self.vector_index.available or not query.strip():
            return []

        try:
            ranked = await self.vector_index.search(query)
        except Exception as e:
            logger.warning("Semantic search failed", error=str(e))
            return []

        results = []
        for thought_id, score in ranked:
            thought = await self.get(thought_id)
            if thought is None:
                continue
            results.append((thought, score))
            if len(results) >= k:
                break
        return results

    # Guides

    async def put_guide(self, guide: Guide) -> Guide:
        existing = await self._load(GUIDE_PREFIX + guide.id, Guide)
        stored = guide.model_copy(deep=True)
        now = utc_now_iso()
        stored.metadata.updated_at = now
        stored.metadata.created_at = (existing.metadata.created_at if existing else None) or stored.metadata.created_at or now

        await self.backend.put(GUIDE_PREFIX + stored.id, self._dump(stored))
        await self.append_event(
            "guide_updated" if existing else "guide_created",
            stored.id,
            {"condition": stored.condition, "action": stored.action}
        )
        return stored

    async def get_guide(self, guide_id: str) -> Optional[Guide]:
        return await self._load(GUIDE_PREFIX + guide_id, Guide)

    async def delete_guide(self, guide_id: str) -> bool:
        removed = await self.backend.delete(GUIDE_PREFIX + guide_id)
        if removed:
            await self.append_event("guide_deleted", guide_id)
        return removed

    async def list_guides(self) -> List[Guide]:
        """Guides in creation order"""

        guides = await self._scan(GUIDE_PREFIX, Guide)
        return sorted(guides, key=lambda guide: guide.metadata.created_at or "")

    # Events

    async def append_event(self, event_type: str, target_id: str, data: Optional[Dict[str, Any]] = None) -> Event:
        """Append to the event log; non-thought events are pushed to observers"""

        event = Event(type=event_type, target_id=target_id, data=data or {})
        key = f"{EVENT_PREFIX}{event.timestamp}:{next(self._event_seq):012d}:{event.id}"
        await self.backend.put(key, self._dump(event))
        metrics.increment_counter("events.appended", tags={"type": event_type})

        if not event_type.startswith("thought_"):
            await self.streaming.send_event_log(event)
            if event_type.startswith("guide_"):
                await self.streaming.send_status(f"Guide {target_id} {event_type.split('_', 1)[1]}")
        return event

    async def list_events(
        self,
        target_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = DEFAULT_EVENT_LIMIT
    ) -> List[Event]:
        """Newest events first"""

        filtered = target_id is not None or event_type is not None
        rows = await self.backend.scan(EVENT_PREFIX, reverse=True, limit=None if filtered else limit)

        events = []
        for key, raw in rows:
            try:
                event = Event.model_validate_json(raw)
            except ValidationError as e:
                logger.error("Corrupt event skipped", key=key, error=str(e))
                continue
            if target_id is not None and event.target_id != target_id:
                continue
            if event_type is not None and event.type != event_type:
                continue
            events.append(event)
            if len(events) >= limit:
                break
        return events

    async def clear_all(self):
        """Wipe every record and the vector index"""

        await self.backend.clear()
        if self.vector_index is not None:
            await self.vector_index.clear()
        logger.warning("Record store cleared")
