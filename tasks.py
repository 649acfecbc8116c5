"""
Durable task records and their state machine.

``transition`` is a single conditional UPDATE keyed on the expected status;
it is the only concurrency control applied to task state.
"""

import logging
import time
from typing import Any, List, Optional

from errors import DuplicateRow, InvalidTransition, StorageFailure
from models import ALLOWED_TRANSITIONS, Task, TaskStatus, TaskType, TransitionResult
from storage import Database

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = frozenset({"filename", "thumbnail_path", "format", "failure_reason"})
MAX_CREATE_ATTEMPTS = 3

_COLUMNS = (
    "id, task_type, chat_id, message_id, unique_file_id, status, url, quality, "
    "filename, thumbnail_path, format, failure_reason, created_at, updated_at"
)
_TERMINAL = "('completed', 'failed')"


class TaskStore:
    def __init__(self, db: Database, dedup_scope: str = "chat"):
        if dedup_scope not in {"chat", "global"}:
            raise ValueError(f"Unknown dedup scope: {dedup_scope!r}")
        self.db = db
        self.dedup_scope = dedup_scope

    def dedup_key(self, chat_id: int, unique_file_id: str) -> str:
        if self.dedup_scope == "global":
            return unique_file_id
        return f"{chat_id}:{unique_file_id}"

    async def create(self, task: Task, now: Optional[float] = None) -> Task:
        """
        Insert ``task`` as pending, or return the live task sharing its dedup key.

        The partial unique index on non-terminal rows makes the check-and-insert
        safe against concurrent callers: a losing insert re-reads the winner.
        """
        key = self.dedup_key(task.chat_id, task.unique_file_id)
        stamp = int(time.time() if now is None else now)

        for _ in range(MAX_CREATE_ATTEMPTS):
            existing = await self._find_active(key)
            if existing is not None:
                logger.info("Task %s already active for %s", existing.id, key)
                return existing

            try:
                await self.db.execute(
                    f"INSERT INTO tasks ({_COLUMNS}, dedup_key) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        task.id,
                        task.task_type.value,
                        task.chat_id,
                        task.message_id,
                        task.unique_file_id,
                        TaskStatus.PENDING.value,
                        task.url,
                        task.quality,
                        task.filename,
                        task.thumbnail_path,
                        task.format,
                        None,
                        stamp,
                        stamp,
                        key,
                    ),
                )
            except DuplicateRow:
                continue

            task.status = TaskStatus.PENDING
            task.failure_reason = None
            task.created_at = task.updated_at = stamp
            logger.info("Task %s created (%s, chat=%s)", task.id, task.task_type.value, task.chat_id)
            return task

        raise StorageFailure(f"Could not create task for {key}")

    async def transition(
        self,
        task_id: str,
        expected: TaskStatus,
        next_status: TaskStatus,
        **fields: Any,
    ) -> TransitionResult:
        """Compare-and-swap the status of ``task_id`` from ``expected`` to ``next_status``."""
        if (expected, next_status) not in ALLOWED_TRANSITIONS:
            raise InvalidTransition(f"{expected.value} -> {next_status.value} is not allowed")

        result = await self._conditional_update(
            task_id, expected, {"status": next_status.value, **self._checked(fields)}
        )
        if result is TransitionResult.OK:
            logger.info("Task %s: %s -> %s", task_id, expected.value, next_status.value)
        else:
            logger.warning(
                "Task %s: %s -> %s rejected (%s)",
                task_id,
                expected.value,
                next_status.value,
                result.value,
            )
        return result

    async def record(self, task_id: str, expected: TaskStatus, **fields: Any) -> TransitionResult:
        """Update fields of a task that is still in ``expected``, keeping its status."""
        if expected.is_terminal:
            raise InvalidTransition("Terminal tasks are immutable")
        return await self._conditional_update(task_id, expected, self._checked(fields))

    async def get(self, task_id: str) -> Optional[Task]:
        row = await self.db.fetch_one(f"SELECT {_COLUMNS} FROM tasks WHERE id = ?", (task_id,))
        return self._to_task(row) if row else None

    async def list_incomplete(self, chat_id: Optional[int] = None) -> List[Task]:
        sql = f"SELECT {_COLUMNS} FROM tasks WHERE status NOT IN {_TERMINAL}"
        params: tuple = ()
        if chat_id is not None:
            sql += " AND chat_id = ?"
            params = (chat_id,)
        rows = await self.db.fetch_all(sql + " ORDER BY created_at", params)
        return [self._to_task(row) for row in rows]

    async def find_by_message(self, chat_id: int, message_id: int) -> Optional[Task]:
        """Return the live task whose interactive message is ``message_id``."""
        row = await self.db.fetch_one(
            f"SELECT {_COLUMNS} FROM tasks "
            f"WHERE chat_id = ? AND message_id = ? AND status NOT IN {_TERMINAL} "
            "ORDER BY created_at DESC LIMIT 1",
            (chat_id, message_id),
        )
        return self._to_task(row) if row else None

    async def _find_active(self, key: str) -> Optional[Task]:
        row = await self.db.fetch_one(
            f"SELECT {_COLUMNS} FROM tasks WHERE dedup_key = ? AND status NOT IN {_TERMINAL}",
            (key,),
        )
        return self._to_task(row) if row else None

    async def _conditional_update(
        self, task_id: str, expected: TaskStatus, values: dict
    ) -> TransitionResult:
        values["updated_at"] = int(time.time())
        assignments = ", ".join(f"{column} = ?" for column in values)
        updated = await self.db.execute(
            f"UPDATE tasks SET {assignments} WHERE id = ? AND status = ?",
            (*values.values(), task_id, expected.value),
        )
        if updated == 1:
            return TransitionResult.OK
        if await self.get(task_id) is None:
            return TransitionResult.NOT_FOUND
        return TransitionResult.CONFLICT

    @staticmethod
    def _checked(fields: dict) -> dict:
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
        return dict(fields)

    @staticmethod
    def _to_task(row: Any) -> Task:
        return Task(
            id=row["id"],
            task_type=TaskType(row["task_type"]),
            chat_id=row["chat_id"],
            message_id=row["message_id"],
            unique_file_id=row["unique_file_id"],
            status=TaskStatus(row["status"]),
            url=row["url"],
            quality=row["quality"],
            filename=row["filename"],
            thumbnail_path=row["thumbnail_path"],
            format=row["format"],
            failure_reason=row["failure_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
