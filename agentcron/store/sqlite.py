"""
SQLite StorageProvider, one file per workspace (.agentcron/state.db).

aiosqlite keeps disk I/O off the loop the schedule timers live on.
WAL lets `agentcron history` read while a daemon holds the file.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from agentcron.core.errors import StorageError
from agentcron.store.base import StorageProvider

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS state (
    key        TEXT PRIMARY KEY,
    value      BLOB NOT NULL,
    updated_at REAL NOT NULL
)
"""


class SQLiteStorage(StorageProvider):
    """
    The connection opens lazily on first use; call `initialize()` to
    surface a bad path early.

        kv = SQLiteStorage(workspace / ".agentcron" / "state.db")
        await kv.initialize()
    """

    def __init__(self, db_path: str | Path) -> None:
        self._path = Path(db_path).expanduser()
        self._conn: aiosqlite.Connection | None = None

    @property
    def path(self) -> Path:
        return self._path

    async def initialize(self) -> None:
        if self._conn is not None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(str(self._path))
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA synchronous=NORMAL")
            await conn.execute(_SCHEMA)
            await conn.commit()
        except (OSError, aiosqlite.Error) as e:
            raise StorageError(
                f"Cannot open state database {self._path}: {e}",
                details={"path": str(self._path)},
            ) from e
        self._conn = conn
        logger.debug(f"State database ready: {self._path}")

    @asynccontextmanager
    async def _connection(self, action: str, key: str) -> AsyncIterator[aiosqlite.Connection]:
        await self.initialize()
        try:
            yield self._conn  # type: ignore[misc]
        except aiosqlite.Error as e:
            raise StorageError(f"State {action} failed for {key!r}: {e}", details={"key": key}) from e

    async def get(self, key: str) -> bytes | None:
        async with self._connection("read", key) as conn:
            async with conn.execute("SELECT value FROM state WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
        return bytes(row[0]) if row else None

    async def set(self, key: str, value: bytes) -> None:
        async with self._connection("write", key) as conn:
            await conn.execute(
                "INSERT OR REPLACE INTO state (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, time.time()),
            )
            await conn.commit()

    async def delete(self, key: str) -> bool:
        async with self._connection("delete", key) as conn:
            cursor = await conn.execute("DELETE FROM state WHERE key = ?", (key,))
            await conn.commit()
        return cursor.rowcount > 0

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
