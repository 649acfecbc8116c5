"""
Short-token indirection for interactive choices.

Telegram limits button payloads to 64 bytes, so a URL or a staged file path
is stored here and only the short id travels in the callback data.
"""

import dataclasses
import logging
import time
import uuid
from typing import Any, Callable, Generic, List, Optional, Tuple, Type, TypeVar

from errors import DuplicateRow, StorageFailure
from models import PendingConversion, PendingLink
from storage import Database

logger = logging.getLogger(__name__)

P = TypeVar("P")

SHORT_ID_LENGTH = 12
MAX_ISSUE_ATTEMPTS = 5


def new_short_id() -> str:
    return uuid.uuid4().hex[:SHORT_ID_LENGTH]


@dataclasses.dataclass(frozen=True)
class TokenTable(Generic[P]):
    """Where a payload kind is stored and how its rows map back to it."""

    name: str
    entry_type: Type[P]
    columns: Tuple[str, ...]


LINK_TABLE: TokenTable[PendingLink] = TokenTable(
    name="pending_downloads",
    entry_type=PendingLink,
    columns=("url", "chat_id", "message_id"),
)

CONVERSION_TABLE: TokenTable[PendingConversion] = TokenTable(
    name="pending_conversions",
    entry_type=PendingConversion,
    columns=("filename", "thumbnail_path", "chat_id", "message_id"),
)


class TokenRegistry(Generic[P]):
    """issue / resolve / consume / sweep over one payload table."""

    def __init__(
        self,
        db: Database,
        table: TokenTable[P],
        ttl_seconds: int,
        token_factory: Callable[[], str] = new_short_id,
    ):
        self.db = db
        self.table = table
        self.ttl_seconds = ttl_seconds
        self.token_factory = token_factory
        self._select = "SELECT short_id, {cols}, created_at FROM {name}".format(
            cols=", ".join(table.columns), name=table.name
        )

    async def issue(self, payload: P, now: Optional[float] = None) -> str:
        """Store ``payload`` under a fresh short id and return the id."""
        created_at = int(time.time() if now is None else now)
        values = [getattr(payload, column) for column in self.table.columns]
        sql = "INSERT INTO {name} (short_id, {cols}, created_at) VALUES ({marks})".format(
            name=self.table.name,
            cols=", ".join(self.table.columns),
            marks=", ".join("?" * (len(self.table.columns) + 2)),
        )

        for _ in range(MAX_ISSUE_ATTEMPTS):
            short_id = self.token_factory()
            try:
                await self.db.execute(sql, (short_id, *values, created_at))
            except DuplicateRow:
                logger.warning("Short id collision in %s, re-rolling", self.table.name)
                continue
            return short_id

        raise StorageFailure(f"Could not allocate a unique short id in {self.table.name}")

    async def resolve(
        self,
        short_id: str,
        now: Optional[float] = None,
        chat_id: Optional[int] = None,
    ) -> Optional[P]:
        """
        Return the payload for ``short_id`` or None.

        None covers fabricated, consumed and expired tokens as well as
        tokens issued to a different chat.
        """
        row = await self.db.fetch_one(f"{self._select} WHERE short_id = ?", (short_id,))
        if row is None:
            return None

        entry = self._to_entry(row)
        now = time.time() if now is None else now
        if now - entry.created_at > self.ttl_seconds:
            return None
        if chat_id is not None and entry.chat_id != chat_id:
            return None
        return entry

    async def consume(self, short_id: str) -> bool:
        """Remove the token; True only for the caller that actually removed it."""
        deleted = await self.db.execute(
            f"DELETE FROM {self.table.name} WHERE short_id = ?", (short_id,)
        )
        return deleted == 1

    async def sweep(self, ttl: Optional[int] = None, now: Optional[float] = None) -> List[P]:
        """Delete rows strictly older than ``ttl`` seconds and return them."""
        ttl = self.ttl_seconds if ttl is None else ttl
        cutoff = int(time.time() if now is None else now) - ttl
        rows = await self.db.fetch_all(f"{self._select} WHERE created_at < ?", (cutoff,))
        return await self._delete_rows(rows, " AND created_at < ?", (cutoff,))

    async def pending_for_chat(self, chat_id: int, now: Optional[float] = None) -> List[P]:
        """Unexpired tokens issued to ``chat_id``, oldest first."""
        cutoff = int(time.time() if now is None else now) - self.ttl_seconds
        rows = await self.db.fetch_all(
            f"{self._select} WHERE chat_id = ? AND created_at >= ? ORDER BY created_at",
            (chat_id, cutoff),
        )
        return [self._to_entry(row) for row in rows]

    async def discard_for_chat(self, chat_id: int) -> List[P]:
        rows = await self.db.fetch_all(f"{self._select} WHERE chat_id = ?", (chat_id,))
        return await self._delete_rows(rows)

    async def discard_for_message(self, chat_id: int, message_id: int) -> List[P]:
        rows = await self.db.fetch_all(
            f"{self._select} WHERE chat_id = ? AND message_id = ?", (chat_id, message_id)
        )
        return await self._delete_rows(rows)

    async def _delete_rows(self, rows: List[Any], condition: str = "", params: Tuple = ()) -> List[P]:
        # Rows consumed concurrently are skipped: only what we deleted is reported.
        removed: List[P] = []
        for row in rows:
            deleted = await self.db.execute(
                f"DELETE FROM {self.table.name} WHERE short_id = ?{condition}",
                (row["short_id"], *params),
            )
            if deleted == 1:
                removed.append(self._to_entry(row))
        if removed:
            logger.info("Removed %s entries from %s", len(removed), self.table.name)
        return removed

    def _to_entry(self, row: Any) -> P:
        return self.table.entry_type(**{key: row[key] for key in row.keys()})


def link_registry(db: Database, ttl_seconds: int) -> TokenRegistry[PendingLink]:
    return TokenRegistry(db, LINK_TABLE, ttl_seconds)


def conversion_registry(db: Database, ttl_seconds: int) -> TokenRegistry[PendingConversion]:
    return TokenRegistry(db, CONVERSION_TABLE, ttl_seconds)
