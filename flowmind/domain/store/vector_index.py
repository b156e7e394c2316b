from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple
from pathlib import Path
import asyncio
import hashlib
import os

import numpy as np
import structlog

logger = structlog.get_logger(__name__)

EmbedFn = Callable[[str], Awaitable[Optional[List[float]]]]


def text_hash(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


class CoalescingScheduler:
    """
    Trailing debounce for an async callback:
    - request() cancels the outstanding timer and arms a new one
    - the callback fires once after `delay` seconds without new requests
    - flush() cancels the timer and runs the callback now
    """

    def __init__(self, callback: Callable[[], Awaitable[None]], delay: float = 5.0):
        self.callback = callback
        self.delay = delay
        self._handle: Optional[asyncio.TimerHandle] = None
        self._running: Optional[asyncio.Task] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def request(self):
        """Schedule the callback, re-arming any outstanding timer"""

        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self):
        self._handle = None
        self._running = asyncio.ensure_future(self._run())

    async def _run(self):
        try:
            await self.callback()
        except Exception as e:
            logger.error("Coalesced callback failed", error=str(e))

    async def flush(self):
        """Run pending work immediately and wait for any in-flight run"""

        had_timer = self._handle is not None
        self.cancel()
        if self._running is not None and not self._running.done():
            await self._running
        if had_timer:
            await self._run()


class VectorIndex:
    """
    In-process cosine similarity index.

    Upserts are coalesced and embedded in batches; deletes only record a
    tombstone, which search consults. The index is saved as an .npz file
    after every coalesced write.
    """

    def __init__(self, embed: Optional[EmbedFn] = None, path: Optional[Path] = None, debounce: float = 5.0):
        self.embed = embed
        self.path = Path(path) if path else None
        self.vectors: Dict[str, np.ndarray] = {}
        self.hashes: Dict[str, str] = {}
        self.tombstones: Set[str] = set()
        self._pending: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self.scheduler = CoalescingScheduler(self._apply_pending, delay=debounce)

    @property
    def available(self) -> bool:
        return self.embed is not None

    @property
    def dimension(self) -> Optional[int]:
        for vector in self.vectors.values():
            return int(vector.shape[0])
        return None

    def configure(self, embed: Optional[EmbedFn], debounce: float, reset_vectors: bool = False):
        """Swap the embedding function; vectors from another model are dropped on request"""

        self.embed = embed
        self.scheduler.delay = debounce
        if reset_vectors:
            self.vectors.clear()
            self.hashes.clear()
            logger.info("Vector index reset for new embedding model")

    def request_upsert(self, thought_id: str, text: str):
        """Queue text for embedding; the actual write happens after the quiet period"""

        if not self.available:
            return
        self._pending[thought_id] = text
        self.scheduler.request()

    async def _apply_pending(self):
        pending, self._pending = self._pending, {}
        if not pending or self.embed is None:
            return

        written = 0
        for thought_id, text in pending.items():
            digest = text_hash(text)
            if (
                thought_id in self.vectors
                and thought_id not in self.tombstones
                and self.hashes.get(thought_id) == digest
            ):
                continue
            was_deleted = thought_id in self.tombstones
            try:
                vector = await self.embed(text)
            except Exception as e:
                logger.warning("Embedding failed during index update", thought_id=thought_id, error=str(e))
                continue
            if vector is None:
                logger.warning("No embedding returned, skipping", thought_id=thought_id)
                continue
            if thought_id in self.tombstones and not was_deleted:
                logger.debug("Deleted while embedding, skipping", thought_id=thought_id)
                continue
            if self.add_vector(thought_id, vector, digest):
                written += 1

        if written:
            logger.debug("Vector index updated", written=written, total=len(self.vectors))
            await self.save()

    def add_vector(self, thought_id: str, vector: Sequence[float], digest: Optional[str] = None) -> bool:
        """Store a vector directly; returns False when it was rejected"""

        array = np.asarray(vector, dtype=np.float32)
        if array.ndim != 1 or array.size == 0:
            logger.warning("Rejected malformed vector", thought_id=thought_id, shape=list(array.shape))
            return False

        dimension = self.dimension
        if dimension is not None and array.shape[0] != dimension and thought_id not in self.vectors:
            logger.error(
                "Vector dimension mismatch, skipping",
                thought_id=thought_id,
                expected=dimension,
                actual=int(array.shape[0])
            )
            return False

        self.vectors[thought_id] = array
        if digest is not None:
            self.hashes[thought_id] = digest
        self.tombstones.discard(thought_id)
        return True

    def delete(self, thought_id: str):
        """Tombstone an id; its vector stays on disk until rewritten"""

        self._pending.pop(thought_id, None)
        self.tombstones.add(thought_id)

    def has_vector(self, thought_id: str) -> bool:
        return thought_id in self.vectors and thought_id not in self.tombstones

    async def search(self, query: str, k: Optional[int] = None) -> List[Tuple[str, float]]:
        """Rank live ids by cosine similarity to the query text"""

        if not self.available or not self.vectors:
            return []

        query_vector = await self.embed(query)
        if query_vector is None:
            return []
        return self.search_vector(query_vector, k)

    def search_vector(self, query_vector: Sequence[float], k: Optional[int] = None) -> List[Tuple[str, float]]:
        ids = [thought_id for thought_id in self.vectors if thought_id not in self.tombstones]
        if not ids:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        matrix = np.stack([self.vectors[thought_id] for thought_id in ids])
        if query.shape[0] != matrix.shape[1]:
            logger.warning("Query dimension mismatch", expected=int(matrix.shape[1]), actual=int(query.shape[0]))
            return []

        query_norm = np.linalg.norm(query)
        if query_norm == 0:
            return []
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0
        scores = matrix @ query / (norms * query_norm)

        order = np.argsort(-scores)
        if k is not None:
            order = order[:k]
        return [(ids[i], float(scores[i])) for i in order]

    def _save_sync(self):
        ids = list(self.vectors.keys())
        tmp_path = self.path.with_name(self.path.stem + ".tmp.npz")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        np.savez(
            tmp_path,
            ids=np.array(ids, dtype=str),
            vectors=np.stack([self.vectors[i] for i in ids]) if ids else np.zeros((0, 0), dtype=np.float32),
            hashes=np.array([self.hashes.get(i, "") for i in ids], dtype=str),
            tombstones=np.array(sorted(self.tombstones), dtype=str),
        )
        os.replace(tmp_path, self.path)

    async def save(self):
        if self.path is None:
            return
        async with self._lock:
            try:
                await asyncio.to_thread(self._save_sync)
            except OSError as e:
                logger.error("Failed to save vector index", path=str(self.path), error=str(e))

    def _load_sync(self):
        with np.load(self.path, allow_pickle=False) as data:
            ids = [str(i) for i in data["ids"]]
            vectors = data["vectors"]
            hashes = [str(h) for h in data["hashes"]] if "hashes" in data else [""] * len(ids)
            tombstones = {str(i) for i in data["tombstones"]}
        return ids, vectors, hashes, tombstones

    async def load(self):
        """Load a previously saved index; a corrupt file leaves the index empty"""

        if self.path is None or not self.path.exists():
            return
        try:
            ids, vectors, hashes, tombstones = await asyncio.to_thread(self._load_sync)
        except (OSError, ValueError, KeyError) as e:
            logger.error("Failed to load vector index", path=str(self.path), error=str(e))
            return

        for thought_id, vector, digest in zip(ids, vectors, hashes):
            self.add_vector(thought_id, vector, digest or None)
        self.tombstones = tombstones
        logger.info("Vector index loaded", vectors=len(self.vectors), tombstones=len(self.tombstones))

    async def flush(self):
        await self.scheduler.flush()

    async def clear(self):
        """Drop everything, including pending work and the saved file"""

        self.scheduler.cancel()
        self._pending.clear()
        self.vectors.clear()
        self.hashes.clear()
        self.tombstones.clear()
        if self.path is not None:
            try:
                self.path.unlink(missing_ok=True)
            except OSError as e:
                logger.error("Failed to remove vector index file", path=str(self.path), error=str(e))
