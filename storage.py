"""
SQLite persistence shared by the ledger, token registries and task store.

The connection runs in autocommit mode: every statement is its own
transaction, so conditional updates and deletes are atomic per row and no
application-level locking is needed.
"""

import logging
from pathlib import Path
from typing import Any, List, Optional, Sequence

import aiosqlite

from errors import DuplicateRow, StorageFailure

logger = logging.getLogger(__name__)

SCHEMA: Sequence[str] = (
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        user_id INTEGER PRIMARY KEY,
        expires_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        task_type TEXT NOT NULL,
        chat_id INTEGER NOT NULL,
        message_id INTEGER NOT NULL,
        unique_file_id TEXT NOT NULL,
        dedup_key TEXT NOT NULL,
        status TEXT NOT NULL,
        url TEXT,
        quality TEXT,
        filename TEXT,
        thumbnail_path TEXT,
        format TEXT,
        failure_reason TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    # At most one non-terminal task per dedup key.
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_active_dedup
        ON tasks (dedup_key) WHERE status NOT IN ('completed', 'failed')
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks (status)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_message ON tasks (chat_id, message_id)",
    """
    CREATE TABLE IF NOT EXISTS pending_downloads (
        short_id TEXT PRIMARY KEY,
        url TEXT NOT NULL,
        chat_id INTEGER NOT NULL,
        message_id INTEGER NOT NULL,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_conversions (
        short_id TEXT PRIMARY KEY,
        filename TEXT NOT NULL,
        thumbnail_path TEXT,
        chat_id INTEGER NOT NULL,
        message_id INTEGER NOT NULL,
        created_at INTEGER NOT NULL
    )
    """,
)


class Database:
    """Thin async wrapper over one aiosqlite connection."""

    def __init__(self, path: str):
        self.path = path
        self._conn: Optional[aiosqlite.Connection] = None

    async def connect(self) -> "Database":
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = await aiosqlite.connect(self.path, isolation_level=None)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA:
                await self._conn.execute(statement)
        except aiosqlite.Error as error:
            raise StorageFailure(f"Failed to open database {self.path}: {error}") from error
        logger.info("Database ready at %s", self.path)
        return self

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "Database":
        return await self.connect()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageFailure("Database not connected. Use 'async with' or call connect()")
        return self._conn

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a write statement and return the number of affected rows."""
        try:
            cursor = await self.conn.execute(sql, params)
            rowcount = cursor.rowcount
            await cursor.close()
        except aiosqlite.IntegrityError as error:
            raise DuplicateRow(str(error)) from error
        except aiosqlite.Error as error:
            raise StorageFailure(str(error)) from error
        return rowcount

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        try:
            async with self.conn.execute(sql, params) as cursor:
                return await cursor.fetchone()
        except aiosqlite.Error as error:
            raise StorageFailure(str(error)) from error

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        try:
            async with self.conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())
        except aiosqlite.Error as error:
            raise StorageFailure(str(error)) from error
