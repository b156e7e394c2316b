from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple
import asyncio
import sqlite3
import threading

import structlog

logger = structlog.get_logger(__name__)


class KeyValueBackend(ABC):
    """Ordered string key/value storage used by the record store"""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value or None"""

    @abstractmethod
    async def put(self, key: str, value: str) -> None:
        """Insert or replace a value"""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key, returning whether it existed"""

    @abstractmethod
    async def scan(self, prefix: str, reverse: bool = False, limit: Optional[int] = None) -> List[Tuple[str, str]]:
        """Return (key, value) pairs under a prefix in key order"""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every key"""

    async def close(self) -> None:
        """Release resources held by the backend"""


class InMemoryBackend(KeyValueBackend):
    """In-memory backend for tests and ephemeral runs"""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self.data.get(key)

    async def put(self, key: str, value: str) -> None:
        async with self._lock:
            self.data[key] = value

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self.data.pop(key, None) is not None

    async def scan(self, prefix: str, reverse: bool = False, limit: Optional[int] = None) -> List[Tuple[str, str]]:
        async with self._lock:
            keys = sorted((k for k in self.data if k.startswith(prefix)), reverse=reverse)
            if limit is not None:
                keys = keys[:limit]
            return [(k, self.data[k]) for k in keys]

    async def clear(self) -> None:
        async with self._lock:
            self.data.clear()


class SqliteBackend(KeyValueBackend):
    """
    Durable SQLite backend:
    - WAL mode, one connection guarded by a thread lock
    - calls run in worker threads so the event loop never blocks
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=5.0)
        self._conn.execute("PRAGMA busy_timeout=5000;")
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._conn.execute("CREATE TABLE IF NOT EXISTS kv(key TEXT PRIMARY KEY, value TEXT NOT NULL)")
        self._conn.commit()
        logger.info("SQLite backend opened", path=str(self.db_path))

    def _get(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None

    def _put(self, key: str, value: str) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO kv(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            self._conn.commit()

    def _delete(self, key: str) -> bool:
        with self._lock:
            cur = self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            self._conn.commit()
            return cur.rowcount > 0

    def _scan(self, prefix: str, reverse: bool, limit: Optional[int]) -> List[Tuple[str, str]]:
        order = "DESC" if reverse else "ASC"
        # Keys under a prefix sort between prefix and prefix + U+FFFF
        sql = f"SELECT key, value FROM kv WHERE key >= ? AND key < ? ORDER BY key {order}"
        params: Tuple = (prefix, prefix + "\uffff")
        if limit is not None:
            sql += " LIMIT ?"
            params = params + (int(limit),)
        with self._lock:
            return [(row[0], row[1]) for row in self._conn.execute(sql, params).fetchall()]

    def _clear(self) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM kv")
            self._conn.commit()

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._get, key)

    async def put(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._put, key, value)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._delete, key)

    async def scan(self, prefix: str, reverse: bool = False, limit: Optional[int] = None) -> List[Tuple[str, str]]:
        return await asyncio.to_thread(self._scan, prefix, reverse, limit)

    async def clear(self) -> None:
        await asyncio.to_thread(self._clear)

    async def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.info("SQLite backend closed", path=str(self.db_path))
