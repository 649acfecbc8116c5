"""
Pipeline orchestrator: drives a task from admission through the external
tools to delivery.

All authoritative state lives in the stores of ``AppContext``; the
orchestrator only holds the jobs queued in the worker pool, so a restart is
reconciled by ``recover()`` from stored rows alone.
"""

import asyncio
import logging
import time
import uuid
from typing import Awaitable, Callable, List, Optional, Tuple

from config import CUSTOM_QUALITY, QUALITY_CHOICES
from context import AppContext
from errors import (
    AccessDenied,
    DeliveryFailure,
    DownloaderFailure,
    DurationLimitExceeded,
    InvocationTimeout,
    ToolFailure,
    TokenNotFound,
    error_manager,
)
from messaging import Messenger, format_choices, quality_choices
from models import (
    Access,
    FailureReason,
    MediaFormat,
    PendingConversion,
    PendingLink,
    Task,
    TaskStatus,
    TaskType,
    TransitionResult,
)
from tokens import TokenRegistry
from tools import (
    Converter,
    Downloader,
    available_qualities,
    needs_conversion,
    parse_quality,
    short_reason,
)
from utils import cleanup_task_dir, content_key, create_task_dir, format_file_size, get_file_size_mb

logger = logging.getLogger(__name__)

CUSTOM_QUALITY_LABEL = "🎛 Другой формат"
INVALID_CHOICE_TEXT = "❌ Некорректные данные кнопки."
ALREADY_RUNNING_TEXT = "⏳ Это видео уже обрабатывается, дождитесь результата."
LINK_EXPIRED_TEXT = "⌛ Время выбора истекло. Отправьте ссылку заново."
CANCELLED_TEXT = "🚫 Загрузка отменена."
FORMAT_ROUND_OPEN_TEXT = "❌ Выберите формат или отмените с помощью /cancel"
INTERRUPTED_TEXT = (
    "❌ Бот был перезапущен во время обработки вашего запроса. "
    "Пожалуйста, отправьте ссылку заново."
)
UPLOAD_SOURCE_NAME = "source.mp4"


def failure_reason(error: Exception) -> str:
    """Short reason stored on the failed task."""
    if isinstance(error, InvocationTimeout):
        return FailureReason.TIMEOUT
    if isinstance(error, ToolFailure):
        return f"{error.tool}: {error.reason}"[:200]
    return f"internal: {error.__class__.__name__}"


class PipelineOrchestrator:
    def __init__(
        self,
        ctx: AppContext,
        messenger: Messenger,
        downloader: Downloader,
        converter: Converter,
    ):
        self.ctx = ctx
        self.messenger = messenger
        self.downloader = downloader
        self.converter = converter

    @property
    def storage_root(self) -> str:
        return self.ctx.settings.storage_root

    # Admission -----------------------------------------------------------

    async def handle_link(self, user_id: int, chat_id: int, url: str, now: Optional[float] = None) -> Optional[str]:
        """Gate the user, store the URL behind a short id and offer qualities."""
        if await self.ctx.ledger.check(user_id, now) is Access.DENIED:
            logger.info("Access denied for user %s", user_id)
            await self.messenger.send_text(chat_id, error_manager.to_user_message(AccessDenied()))
            return None

        if await self._format_round_open(chat_id, now):
            await self.messenger.send_text(chat_id, FORMAT_ROUND_OPEN_TEXT)
            return None

        message_id = await self.messenger.send_text(chat_id, "🔍 Получаю информацию о видео...")
        try:
            info = await self.downloader.fetch_info(url)
        except ToolFailure as error:
            logger.warning("Could not read media info for %s: %s", url, error)
            info = None

        limit = self.ctx.settings.max_video_duration_seconds
        if info is not None and info.duration and info.duration > limit:
            error = DurationLimitExceeded(info.duration, limit)
            logger.info("Rejected %s: %s", url, error)
            await self._notify(chat_id, message_id, error_manager.to_user_message(error))
            return None

        qualities = available_qualities(info.heights) if info is not None else list(QUALITY_CHOICES)
        short_id = await self.ctx.links.issue(
            PendingLink(url=url, chat_id=chat_id, message_id=message_id), now
        )

        queued = self.ctx.pool.get_queue_size()
        queue_info = f"\n\n📊 В очереди сейчас {queued} задач" if queued else ""
        await self.messenger.edit_text(
            chat_id,
            message_id,
            f"🎬 Выберите качество:{queue_info}",
            quality_choices(short_id, qualities, CUSTOM_QUALITY, CUSTOM_QUALITY_LABEL),
        )
        return short_id

    async def handle_quality_choice(self, chat_id: int, short_id: str, quality: str) -> Optional[Task]:
        """Turn a quality choice into a download task (at most once per token)."""
        try:
            parse_quality(quality)
        except ValueError:
            await self.messenger.send_text(chat_id, INVALID_CHOICE_TEXT)
            return None

        link = await self._take(self.ctx.links, chat_id, short_id)
        if link is None:
            await self.messenger.send_text(chat_id, error_manager.to_user_message(TokenNotFound()))
            return None

        candidate = Task(
            id=uuid.uuid4().hex,
            task_type=TaskType.DOWNLOAD,
            chat_id=chat_id,
            message_id=link.message_id,
            unique_file_id=content_key(link.url, quality),
            url=link.url,
            quality=quality,
        )
        task = await self.ctx.tasks.create(candidate)
        if task.id != candidate.id:
            await self._safe_edit(chat_id, link.message_id, ALREADY_RUNNING_TEXT)
            return task

        return await self._admit(task, lambda: self._run_download(task))

    async def handle_video_upload(
        self,
        user_id: int,
        chat_id: int,
        file_id: str,
        file_unique_id: str,
        now: Optional[float] = None,
    ) -> Optional[Task]:
        """Admit a video sent directly to the bot; it goes straight to the format round."""
        if await self.ctx.ledger.check(user_id, now) is Access.DENIED:
            await self.messenger.send_text(chat_id, error_manager.to_user_message(AccessDenied()))
            return None
        if await self._format_round_open(chat_id, now):
            await self.messenger.send_text(chat_id, FORMAT_ROUND_OPEN_TEXT)
            return None

        message_id = await self.messenger.send_text(chat_id, "📥 Получаю видео...")
        candidate = Task(
            id=uuid.uuid4().hex,
            task_type=TaskType.CONVERT,
            chat_id=chat_id,
            message_id=message_id,
            unique_file_id=file_unique_id,
        )
        task = await self.ctx.tasks.create(candidate)
        if task.id != candidate.id:
            await self._safe_edit(chat_id, message_id, ALREADY_RUNNING_TEXT)
            return task

        return await self._admit(task, lambda: self._run_fetch(task, file_id))

    async def handle_format_choice(self, chat_id: int, short_id: str, value: str) -> Optional[Task]:
        """Start the conversion of a staged file (at most once per token)."""
        try:
            target = MediaFormat(value)
        except ValueError:
            await self.messenger.send_text(chat_id, INVALID_CHOICE_TEXT)
            return None

        entry = await self._take(self.ctx.conversions, chat_id, short_id)
        task = None
        if entry is not None:
            task = await self.ctx.tasks.find_by_message(chat_id, entry.message_id)
        if task is None or task.status is not TaskStatus.DOWNLOADING:
            await self.messenger.send_text(chat_id, error_manager.to_user_message(TokenNotFound()))
            return None

        result = await self.ctx.tasks.transition(
            task.id, TaskStatus.DOWNLOADING, TaskStatus.CONVERTING, format=target.value
        )
        if result is not TransitionResult.OK:
            await self.messenger.send_text(chat_id, error_manager.to_user_message(TokenNotFound()))
            return None
        task.status = TaskStatus.CONVERTING
        task.format = target.value

        position = self.ctx.pool.get_queue_size() + 1
        await self._safe_edit(chat_id, task.message_id, f"⏳ Конвертация в очереди (позиция #{position})")
        await self._submit(task, lambda: self._run_conversion(task, entry, target))
        return task

    async def _format_round_open(self, chat_id: int, now: Optional[float] = None) -> bool:
        return bool(await self.ctx.conversions.pending_for_chat(chat_id, now))

    async def _take(self, registry: TokenRegistry, chat_id: int, short_id: str):
        """resolve + consume; losing the consume race counts as not found."""
        entry = await registry.resolve(short_id, chat_id=chat_id)
        if entry is None:
            return None
        if not await registry.consume(short_id):
            logger.info("Token %s consumed concurrently", short_id)
            return None
        return entry

    async def _admit(self, task: Task, job: Callable[[], Awaitable[None]]) -> Task:
        result = await self.ctx.tasks.transition(task.id, TaskStatus.PENDING, TaskStatus.DOWNLOADING)
        if result is not TransitionResult.OK:
            return task
        task.status = TaskStatus.DOWNLOADING

        position = self.ctx.pool.get_queue_size() + 1
        await self._safe_edit(task.chat_id, task.message_id, f"⏳ Задача добавлена в очередь\nПозиция: #{position}")
        await self._submit(task, job)
        return task

    async def _submit(self, task: Task, job: Callable[[], Awaitable[None]]) -> None:
        await self.ctx.pool.submit(lambda: self._guarded(task, job), label=f"{task.task_type.value} {task.id}")

    async def _guarded(self, task: Task, job: Callable[[], Awaitable[None]]) -> None:
        """Run ``job``; any error ends the task as failed from the status it had reached."""
        try:
            await job()
        except Exception as error:
            if task.status.is_terminal:
                logger.error("Task %s raised after reaching %s", task.id, task.status.value, exc_info=error)
                return
            await self._fail(task, task.status, error)

    # Jobs (run inside the worker pool) -----------------------------------

    async def _run_download(self, task: Task) -> None:
        directory = create_task_dir(self.storage_root, task.id)
        await self._safe_edit(task.chat_id, task.message_id, f"⏳ Скачиваю видео ({task.quality})...")

        result = await self.downloader.invoke(task.url, task.quality, str(directory))
        logger.info("Task %s downloaded %s", task.id, result.path)
        if needs_conversion(result, task.quality):
            await self._offer_formats(task, result.path, result.thumbnail_path)
            return

        await self._upload(task, result.path, MediaFormat.VIDEO, result.thumbnail_path, caption=result.title)

    async def _run_fetch(self, task: Task, file_id: str) -> None:
        directory = create_task_dir(self.storage_root, task.id)
        destination = str(directory / UPLOAD_SOURCE_NAME)
        timeout = self.ctx.settings.invocation_timeout_seconds

        try:
            await asyncio.wait_for(self.messenger.fetch_file(file_id, destination), timeout=timeout)
        except asyncio.TimeoutError as error:
            raise InvocationTimeout("fetch", timeout) from error
        except Exception as error:
            raise DownloaderFailure(short_reason(error)) from error

        await self._offer_formats(task, destination, None)

    async def _offer_formats(self, task: Task, filename: str, thumbnail_path: Optional[str]) -> None:
        recorded = await self.ctx.tasks.record(
            task.id, TaskStatus.DOWNLOADING, filename=filename, thumbnail_path=thumbnail_path
        )
        if recorded is not TransitionResult.OK:
            return

        short_id = await self.ctx.conversions.issue(
            PendingConversion(
                filename=filename,
                thumbnail_path=thumbnail_path,
                chat_id=task.chat_id,
                message_id=task.message_id,
            )
        )
        await self._safe_edit(
            task.chat_id,
            task.message_id,
            "✅ Видео загружено. Теперь выберите формат:",
            format_choices(short_id),
        )

    async def _run_conversion(self, task: Task, entry: PendingConversion, target: MediaFormat) -> None:
        note = ""
        if target is MediaFormat.VIDEO_NOTE:
            note = "\n\n<b>Внимание:</b> кружочек будет обрезан до 1 минуты."
        await self._safe_edit(task.chat_id, task.message_id, f"🔄 Конвертирую...{note}")

        output = await self.converter.invoke(entry.filename, target)
        await self._upload(task, output, target, entry.thumbnail_path)

    async def _upload(
        self,
        task: Task,
        path: str,
        media_format: MediaFormat,
        thumbnail_path: Optional[str],
        caption: Optional[str] = None,
    ) -> None:
        result = await self.ctx.tasks.transition(
            task.id,
            task.status,
            TaskStatus.UPLOADING,
            filename=path,
            thumbnail_path=thumbnail_path,
            format=media_format.value,
        )
        if result is not TransitionResult.OK:
            return
        task.status = TaskStatus.UPLOADING

        await self._safe_edit(task.chat_id, task.message_id, "📤 Отправляю файл...")
        size_mb = get_file_size_mb(path)
        if size_mb > self.ctx.settings.max_file_size_mb:
            raise DeliveryFailure(f"file too large ({format_file_size(int(size_mb * 1024 * 1024))})")
        await self.messenger.deliver(task.chat_id, path, media_format, thumbnail_path, caption)

        result = await self.ctx.tasks.transition(task.id, TaskStatus.UPLOADING, TaskStatus.COMPLETED)
        if result is TransitionResult.OK:
            task.status = TaskStatus.COMPLETED
            cleanup_task_dir(self.storage_root, task.id)
            await self._safe_edit(task.chat_id, task.message_id, "✅ Готово!")

    async def _fail(self, task: Task, expected: TaskStatus, error: Exception) -> None:
        if isinstance(error, ToolFailure):
            logger.warning("Task %s failed in %s: %s", task.id, expected.value, error)
        else:
            logger.error("Task %s failed in %s", task.id, expected.value, exc_info=error)

        result = await self.ctx.tasks.transition(
            task.id, expected, TaskStatus.FAILED, failure_reason=failure_reason(error)
        )
        if result is not TransitionResult.OK:
            return
        task.status = TaskStatus.FAILED
        cleanup_task_dir(self.storage_root, task.id)
        await self._notify(task.chat_id, task.message_id, error_manager.to_user_message(error, url=task.url))

    # Maintenance ---------------------------------------------------------

    async def recover(self) -> int:
        """Force every task left non-terminal by a previous run to failed."""
        interrupted = 0
        for task in await self.ctx.tasks.list_incomplete():
            expected = task.status
            if expected is TaskStatus.PENDING:
                # Pending has no direct edge to failed.
                step = await self.ctx.tasks.transition(task.id, TaskStatus.PENDING, TaskStatus.DOWNLOADING)
                if step is not TransitionResult.OK:
                    continue
                expected = TaskStatus.DOWNLOADING

            result = await self.ctx.tasks.transition(
                task.id, expected, TaskStatus.FAILED, failure_reason=FailureReason.INTERRUPTED
            )
            if result is not TransitionResult.OK:
                continue

            interrupted += 1
            cleanup_task_dir(self.storage_root, task.id)
            await self.ctx.conversions.discard_for_message(task.chat_id, task.message_id)
            await self._notify(task.chat_id, task.message_id, INTERRUPTED_TEXT)

        if interrupted:
            logger.info("Marked %s interrupted tasks as failed", interrupted)
        return interrupted

    async def sweep_expired(self, now: Optional[float] = None) -> Tuple[int, int]:
        """Drop tokens older than the TTL; abandon tasks waiting on them."""
        now = time.time() if now is None else now
        ttl = self.ctx.settings.token_ttl_seconds

        links = await self.ctx.links.sweep(ttl, now)
        for link in links:
            await self._safe_edit(link.chat_id, link.message_id, LINK_EXPIRED_TEXT)

        conversions = await self.ctx.conversions.sweep(ttl, now)
        for entry in conversions:
            await self._abandon(entry, FailureReason.EXPIRED, LINK_EXPIRED_TEXT)

        return len(links), len(conversions)

    async def cancel_pending(self, chat_id: int) -> int:
        """Withdraw the chat's open choices. Running invocations are not touched."""
        links = await self.ctx.links.discard_for_chat(chat_id)
        for link in links:
            await self._safe_edit(link.chat_id, link.message_id, CANCELLED_TEXT)

        conversions = await self.ctx.conversions.discard_for_chat(chat_id)
        for entry in conversions:
            await self._abandon(entry, FailureReason.CANCELLED, CANCELLED_TEXT)

        return len(links) + len(conversions)

    async def queue_status(self, chat_id: int) -> Tuple[int, List[Task]]:
        return self.ctx.pool.get_queue_size(), await self.ctx.tasks.list_incomplete(chat_id)

    async def _abandon(self, entry: PendingConversion, reason: str, text: str) -> None:
        task = await self.ctx.tasks.find_by_message(entry.chat_id, entry.message_id)
        if task is None or task.status is not TaskStatus.DOWNLOADING:
            return
        result = await self.ctx.tasks.transition(
            task.id, TaskStatus.DOWNLOADING, TaskStatus.FAILED, failure_reason=reason
        )
        if result is TransitionResult.OK:
            cleanup_task_dir(self.storage_root, task.id)
            await self._safe_edit(task.chat_id, task.message_id, text)

    # Messaging helpers ---------------------------------------------------

    async def _safe_edit(self, chat_id: int, message_id: int, text: str, choices=None) -> bool:
        try:
            await self.messenger.edit_text(chat_id, message_id, text, choices)
            return True
        except Exception:
            logger.debug("Status message edit failed (chat=%s msg=%s)", chat_id, message_id, exc_info=True)
            return False

    async def _notify(self, chat_id: int, message_id: int, text: str) -> None:
        if await self._safe_edit(chat_id, message_id, text):
            return
        try:
            await self.messenger.send_text(chat_id, text)
        except Exception:
            logger.warning("Could not notify chat %s", chat_id, exc_info=True)
