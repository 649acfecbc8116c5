"""
End-to-end tests of the orchestrator with recorded collaborators.
"""

import asyncio
import time
from pathlib import Path
from unittest.mock import AsyncMock

from config import CUSTOM_QUALITY, QUALITY_CHOICES, Settings
from context import build_context
from errors import (
    ConverterFailure,
    DeliveryFailure,
    DownloaderFailure,
    InvocationTimeout,
    StorageFailure,
    TokenNotFound,
    error_manager,
)
from messaging import decode_choice
from models import MediaFormat, Task, TaskStatus, TaskType, TransitionResult
from pipeline import (
    ALREADY_RUNNING_TEXT,
    CANCELLED_TEXT,
    FORMAT_ROUND_OPEN_TEXT,
    INTERRUPTED_TEXT,
    LINK_EXPIRED_TEXT,
    PipelineOrchestrator,
)
from tools import DownloadResult, MediaInfo
from utils import create_task_dir, task_dir

USER = 1001
CHAT = 5005
URL = "https://youtube.com/watch?v=dQw4w9WgXcQ"
TTL = 3600


class FakeMessenger:
    def __init__(self, deliver_error=None):
        self.deliver_error = deliver_error
        self.sent = []
        self.edits = []
        self.delivered = []
        self.fetched = []
        self._next_id = 100

    async def send_text(self, chat_id, text, choices=None):
        self._next_id += 1
        self.sent.append((chat_id, self._next_id, text, choices))
        return self._next_id

    async def edit_text(self, chat_id, message_id, text, choices=None):
        self.edits.append((chat_id, message_id, text, choices))

    async def deliver(self, chat_id, path, media_format, thumbnail_path=None, caption=None):
        assert Path(path).exists()
        if self.deliver_error is not None:
            raise self.deliver_error
        self.delivered.append((chat_id, path, media_format))

    async def fetch_file(self, file_id, destination):
        Path(destination).write_bytes(b"uploaded")
        self.fetched.append(file_id)

    def last_choices(self):
        return next(choices for *_, choices in reversed(self.edits) if choices)

    def texts(self):
        return [text for *_, text, _ in self.sent] + [text for *_, text, _ in self.edits]


class FakeDownloader:
    def __init__(self, ext=".mp4", error=None, gate=None, info=None, info_error=None):
        self.ext = ext
        self.info = info
        self.info_error = info_error
        self.error = error
        self.gate = gate
        self.calls = []

    async def invoke(self, url, quality, output_dir):
        self.calls.append((url, quality))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        path = Path(output_dir) / f"clip{self.ext}"
        path.write_bytes(b"media")
        return DownloadResult(path=str(path), title="clip")

    async def fetch_info(self, url):
        if self.info_error is not None:
            raise self.info_error
        return self.info


class FakeConverter:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def invoke(self, input_path, target):
        self.calls.append((input_path, target))
        if self.error is not None:
            raise self.error
        output = Path(input_path).with_name(f"converted_{target.value}.bin")
        output.write_bytes(b"converted")
        return str(output)


def record_transitions(store):
    """Wrap ``store.transition`` and collect every status it actually reached."""
    seen = []
    original = store.transition

    async def transition(task_id, expected, next_status, **fields):
        result = await original(task_id, expected, next_status, **fields)
        if result is TransitionResult.OK:
            seen.append(next_status)
        return result

    store.transition = transition
    return seen


async def make_pipeline(tmp_path, downloader=None, subscribed=True, converter=None, messenger=None, **overrides):
    options = dict(
        storage_root=str(tmp_path / "files"),
        database_path=str(tmp_path / "bot.db"),
        worker_pool_size=2,
        token_ttl_seconds=TTL,
        dedup_scope="chat",
    )
    options.update(overrides)
    ctx = await build_context(Settings(**options))
    messenger = messenger or FakeMessenger()
    orchestrator = PipelineOrchestrator(
        ctx, messenger, downloader or FakeDownloader(), converter or FakeConverter()
    )
    if subscribed:
        await ctx.ledger.grant(USER, time.time() + 3600)
    return ctx, orchestrator, messenger


async def count_rows(ctx, table):
    row = await ctx.db.fetch_one(f"SELECT COUNT(*) AS n FROM {table}")
    return row["n"]


def test_denied_user_gets_no_token_and_no_task(tmp_path):
    async def scenario():
        ctx, orchestrator, messenger = await make_pipeline(tmp_path, subscribed=False)
        short_id = await orchestrator.handle_link(USER, CHAT, URL)
        counts = await count_rows(ctx, "pending_downloads"), await count_rows(ctx, "tasks")
        await ctx.close()
        return short_id, counts, messenger

    short_id, counts, messenger = asyncio.run(scenario())

    assert short_id is None
    assert counts == (0, 0)
    assert len(messenger.sent) == 1
    assert "/premium" in messenger.sent[0][2]


def test_quality_choice_runs_to_completion(tmp_path):
    async def scenario():
        downloader = FakeDownloader()
        ctx, orchestrator, messenger = await make_pipeline(tmp_path, downloader)
        seen = record_transitions(ctx.tasks)

        short_id = await orchestrator.handle_link(USER, CHAT, URL)
        task = await orchestrator.handle_quality_choice(CHAT, short_id, "720p")
        await ctx.pool.join()

        stored = await ctx.tasks.get(task.id)
        tokens_left = await count_rows(ctx, "pending_downloads")
        await ctx.close()
        return task, stored, seen, tokens_left, messenger, downloader

    task, stored, seen, tokens_left, messenger, downloader = asyncio.run(scenario())

    assert seen == [TaskStatus.DOWNLOADING, TaskStatus.UPLOADING, TaskStatus.COMPLETED]
    assert stored.status == TaskStatus.COMPLETED
    assert stored.format == MediaFormat.VIDEO.value
    assert tokens_left == 0
    assert downloader.calls == [(URL, "720p")]
    assert [(chat, fmt) for chat, _, fmt in messenger.delivered] == [(CHAT, MediaFormat.VIDEO)]
    assert not task_dir(str(tmp_path / "files"), task.id).exists()


def test_replayed_quality_choice_creates_one_task(tmp_path):
    async def scenario():
        ctx, orchestrator, messenger = await make_pipeline(tmp_path)
        short_id = await orchestrator.handle_link(USER, CHAT, URL)
        first = await orchestrator.handle_quality_choice(CHAT, short_id, "720p")
        second = await orchestrator.handle_quality_choice(CHAT, short_id, "720p")
        await ctx.pool.join()
        tasks = await count_rows(ctx, "tasks")
        await ctx.close()
        return first, second, tasks, messenger

    first, second, tasks, messenger = asyncio.run(scenario())

    assert first is not None
    assert second is None
    assert tasks == 1
    assert len(messenger.delivered) == 1


def test_choice_from_another_chat_is_rejected(tmp_path):
    async def scenario():
        ctx, orchestrator, _ = await make_pipeline(tmp_path)
        short_id = await orchestrator.handle_link(USER, CHAT, URL)
        stolen = await orchestrator.handle_quality_choice(CHAT + 1, short_id, "720p")
        own = await orchestrator.handle_quality_choice(CHAT, short_id, "720p")
        await ctx.pool.join()
        await ctx.close()
        return stolen, own

    stolen, own = asyncio.run(scenario())

    assert stolen is None
    assert own is not None


def test_unknown_quality_value_is_rejected(tmp_path):
    async def scenario():
        ctx, orchestrator, messenger = await make_pipeline(tmp_path)
        short_id = await orchestrator.handle_link(USER, CHAT, URL)
        task = await orchestrator.handle_quality_choice(CHAT, short_id, "9000k")
        still_there = await ctx.links.resolve(short_id)
        await ctx.close()
        return task, still_there

    task, still_there = asyncio.run(scenario())

    assert task is None
    assert still_there is not None


def test_same_content_is_deduplicated_while_running(tmp_path):
    async def scenario():
        gate = asyncio.Event()
        downloader = FakeDownloader(gate=gate)
        ctx, orchestrator, messenger = await make_pipeline(tmp_path, downloader)

        first_id = await orchestrator.handle_link(USER, CHAT, URL)
        second_id = await orchestrator.handle_link(USER, CHAT, URL)
        first = await orchestrator.handle_quality_choice(CHAT, first_id, "720p")
        second = await orchestrator.handle_quality_choice(CHAT, second_id, "720p")

        gate.set()
        await ctx.pool.join()
        await ctx.close()
        return first, second, downloader, messenger

    first, second, downloader, messenger = asyncio.run(scenario())

    assert second.id == first.id
    assert len(downloader.calls) == 1
    assert ALREADY_RUNNING_TEXT in messenger.texts()


def test_custom_quality_goes_through_format_round(tmp_path):
    async def scenario():
        ctx, orchestrator, messenger = await make_pipeline(tmp_path)
        seen = record_transitions(ctx.tasks)

        link_id = await orchestrator.handle_link(USER, CHAT, URL)
        task = await orchestrator.handle_quality_choice(CHAT, link_id, "custom")
        await ctx.pool.join()
        waiting = await ctx.tasks.get(task.id)

        format_id = decode_choice(messenger.last_choices()[0][0].payload).short_id
        await orchestrator.handle_format_choice(CHAT, format_id, MediaFormat.AUDIO.value)
        await ctx.pool.join()

        stored = await ctx.tasks.get(task.id)
        await ctx.close()
        return waiting, stored, seen, orchestrator.converter, messenger

    waiting, stored, seen, converter, messenger = asyncio.run(scenario())

    assert waiting.status == TaskStatus.DOWNLOADING
    assert waiting.filename.endswith("clip.mp4")
    assert seen == [
        TaskStatus.DOWNLOADING,
        TaskStatus.CONVERTING,
        TaskStatus.UPLOADING,
        TaskStatus.COMPLETED,
    ]
    assert stored.status == TaskStatus.COMPLETED
    assert stored.format == MediaFormat.AUDIO.value
    assert converter.calls[0][1] is MediaFormat.AUDIO
    assert messenger.delivered[0][2] is MediaFormat.AUDIO


def test_non_mp4_download_asks_for_format(tmp_path):
    async def scenario():
        ctx, orchestrator, messenger = await make_pipeline(tmp_path, FakeDownloader(ext=".webm"))
        link_id = await orchestrator.handle_link(USER, CHAT, URL)
        task = await orchestrator.handle_quality_choice(CHAT, link_id, "720p")
        await ctx.pool.join()
        stored = await ctx.tasks.get(task.id)
        pending = await count_rows(ctx, "pending_conversions")
        await ctx.close()
        return stored, pending, messenger

    stored, pending, messenger = asyncio.run(scenario())

    assert stored.status == TaskStatus.DOWNLOADING
    assert pending == 1
    assert messenger.delivered == []


def test_downloader_failure_marks_task_failed(tmp_path):
    async def scenario():
        downloader = FakeDownloader(error=DownloaderFailure("Video unavailable"))
        ctx, orchestrator, messenger = await make_pipeline(tmp_path, downloader)
        seen = record_transitions(ctx.tasks)
        link_id = await orchestrator.handle_link(USER, CHAT, URL)
        task = await orchestrator.handle_quality_choice(CHAT, link_id, "480p")
        await ctx.pool.join()
        stored = await ctx.tasks.get(task.id)
        await ctx.close()
        return task, stored, seen, messenger

    task, stored, seen, messenger = asyncio.run(scenario())

    assert seen == [TaskStatus.DOWNLOADING, TaskStatus.FAILED]
    assert stored.failure_reason == "downloader: Video unavailable"
    assert messenger.delivered == []
    assert not task_dir(str(tmp_path / "files"), task.id).exists()


def test_timeout_is_recorded_as_failure_reason(tmp_path):
    async def scenario():
        downloader = FakeDownloader(error=InvocationTimeout("downloader", 600))
        ctx, orchestrator, _ = await make_pipeline(tmp_path, downloader)
        link_id = await orchestrator.handle_link(USER, CHAT, URL)
        task = await orchestrator.handle_quality_choice(CHAT, link_id, "1080p")
        await ctx.pool.join()
        stored = await ctx.tasks.get(task.id)
        await ctx.close()
        return stored

    stored = asyncio.run(scenario())

    assert stored.status == TaskStatus.FAILED
    assert stored.failure_reason == "timeout"


def test_uploaded_video_is_converted(tmp_path):
    async def scenario():
        ctx, orchestrator, messenger = await make_pipeline(tmp_path)
        task = await orchestrator.handle_video_upload(USER, CHAT, "file-id", "unique-id")
        await ctx.pool.join()

        format_id = decode_choice(messenger.last_choices()[0][0].payload).short_id
        await orchestrator.handle_format_choice(CHAT, format_id, MediaFormat.VIDEO_NOTE.value)
        await ctx.pool.join()

        stored = await ctx.tasks.get(task.id)
        await ctx.close()
        return stored, messenger

    stored, messenger = asyncio.run(scenario())

    assert stored.task_type == TaskType.CONVERT
    assert stored.status == TaskStatus.COMPLETED
    assert messenger.fetched == ["file-id"]
    assert messenger.delivered[0][2] is MediaFormat.VIDEO_NOTE


def test_expired_format_choice_fails_waiting_task(tmp_path):
    async def scenario():
        ctx, orchestrator, messenger = await make_pipeline(tmp_path)
        link_id = await orchestrator.handle_link(USER, CHAT, URL)
        task = await orchestrator.handle_quality_choice(CHAT, link_id, "custom")
        await ctx.pool.join()

        swept = await orchestrator.sweep_expired(now=time.time() + TTL + 60)
        stored = await ctx.tasks.get(task.id)
        await ctx.close()
        return task, swept, stored, messenger

    task, swept, stored, messenger = asyncio.run(scenario())

    assert swept == (0, 1)
    assert stored.status == TaskStatus.FAILED
    assert stored.failure_reason == "expired"
    assert LINK_EXPIRED_TEXT in messenger.texts()
    assert not task_dir(str(tmp_path / "files"), task.id).exists()


def test_sweep_keeps_fresh_tokens(tmp_path):
    async def scenario():
        ctx, orchestrator, _ = await make_pipeline(tmp_path)
        short_id = await orchestrator.handle_link(USER, CHAT, URL)
        swept = await orchestrator.sweep_expired()
        entry = await ctx.links.resolve(short_id)
        await ctx.close()
        return swept, entry

    swept, entry = asyncio.run(scenario())

    assert swept == (0, 0)
    assert entry is not None


def test_cancel_withdraws_open_choices(tmp_path):
    async def scenario():
        ctx, orchestrator, messenger = await make_pipeline(tmp_path)
        await orchestrator.handle_link(USER, CHAT, URL)
        link_id = await orchestrator.handle_link(USER, CHAT, URL + "&t=1")
        task = await orchestrator.handle_quality_choice(CHAT, link_id, "custom")
        await ctx.pool.join()

        cancelled = await orchestrator.cancel_pending(CHAT)
        stored = await ctx.tasks.get(task.id)
        queued, live = await orchestrator.queue_status(CHAT)
        await ctx.close()
        return cancelled, stored, live, messenger

    cancelled, stored, live, messenger = asyncio.run(scenario())

    assert cancelled == 2
    assert stored.status == TaskStatus.FAILED
    assert stored.failure_reason == "cancelled"
    assert live == []
    assert CANCELLED_TEXT in messenger.texts()


def test_recover_fails_interrupted_tasks_without_resuming(tmp_path):
    async def scenario():
        ctx, orchestrator, _ = await make_pipeline(tmp_path)
        converting = Task(
            id="t-converting",
            task_type=TaskType.DOWNLOAD,
            chat_id=CHAT,
            message_id=201,
            unique_file_id="a",
            url=URL,
            quality="custom",
        )
        pending = Task(
            id="t-pending",
            task_type=TaskType.DOWNLOAD,
            chat_id=CHAT,
            message_id=202,
            unique_file_id="b",
            url=URL,
            quality="720p",
        )
        await ctx.tasks.create(converting)
        await ctx.tasks.create(pending)
        await ctx.tasks.transition(converting.id, TaskStatus.PENDING, TaskStatus.DOWNLOADING)
        await ctx.tasks.transition(converting.id, TaskStatus.DOWNLOADING, TaskStatus.CONVERTING)
        (create_task_dir(str(tmp_path / "files"), converting.id) / "partial.mp4").write_bytes(b"x")
        await ctx.close()

        # Fresh process over the same database.
        downloader = FakeDownloader()
        ctx, orchestrator, messenger = await make_pipeline(tmp_path, downloader)
        recovered = await orchestrator.recover()
        await ctx.pool.join()
        results = [await ctx.tasks.get(task_id) for task_id in ("t-converting", "t-pending")]
        await ctx.close()
        return recovered, results, downloader, orchestrator.converter, messenger

    recovered, results, downloader, converter, messenger = asyncio.run(scenario())

    assert recovered == 2
    assert all(task.status == TaskStatus.FAILED for task in results)
    assert all(task.failure_reason == "interrupted" for task in results)
    assert downloader.calls == []
    assert converter.calls == []
    assert messenger.texts().count(INTERRUPTED_TEXT) == 2
    assert not task_dir(str(tmp_path / "files"), "t-converting").exists()


def test_recover_with_nothing_to_do(tmp_path):
    async def scenario():
        ctx, orchestrator, messenger = await make_pipeline(tmp_path)
        recovered = await orchestrator.recover()
        await ctx.close()
        return recovered, messenger

    recovered, messenger = asyncio.run(scenario())

    assert recovered == 0
    assert messenger.sent == []


def offered_values(messenger):
    return [decode_choice(choice.payload).value for row in messenger.last_choices() for choice in row]


def test_long_video_is_rejected_before_token(tmp_path):
    async def scenario():
        downloader = FakeDownloader(info=MediaInfo(duration=7200, heights=(720,)))
        ctx, orchestrator, messenger = await make_pipeline(tmp_path, downloader)
        short_id = await orchestrator.handle_link(USER, CHAT, URL)
        tokens = await count_rows(ctx, "pending_downloads")
        await ctx.close()
        return short_id, tokens, messenger

    short_id, tokens, messenger = asyncio.run(scenario())

    assert short_id is None
    assert tokens == 0
    assert any("слишком длинное" in text and "2:00:00" in text for text in messenger.texts())


def test_video_at_duration_limit_is_accepted(tmp_path):
    async def scenario():
        downloader = FakeDownloader(info=MediaInfo(duration=3600, heights=(1080,)))
        ctx, orchestrator, _ = await make_pipeline(tmp_path, downloader, max_video_duration_seconds=3600)
        short_id = await orchestrator.handle_link(USER, CHAT, URL)
        await ctx.close()
        return short_id

    assert asyncio.run(scenario()) is not None


def test_offered_qualities_follow_available_formats(tmp_path):
    async def scenario():
        downloader = FakeDownloader(info=MediaInfo(duration=90, heights=(360, 720)))
        ctx, orchestrator, messenger = await make_pipeline(tmp_path, downloader)
        await orchestrator.handle_link(USER, CHAT, URL)
        await ctx.close()
        return messenger

    messenger = asyncio.run(scenario())

    assert offered_values(messenger) == ["360p", "480p", "720p", CUSTOM_QUALITY]


def test_unreadable_info_falls_back_to_static_qualities(tmp_path):
    async def scenario():
        downloader = FakeDownloader(info_error=DownloaderFailure("Unsupported URL"))
        ctx, orchestrator, messenger = await make_pipeline(tmp_path, downloader)
        short_id = await orchestrator.handle_link(USER, CHAT, URL)
        await ctx.close()
        return short_id, messenger

    short_id, messenger = asyncio.run(scenario())

    assert short_id is not None
    assert offered_values(messenger) == [*QUALITY_CHOICES, CUSTOM_QUALITY]


def test_unusable_storage_root_fails_task_and_allows_retry(tmp_path):
    async def scenario():
        root = tmp_path / "files"
        root.write_bytes(b"not a directory")
        ctx, orchestrator, messenger = await make_pipeline(tmp_path)
        seen = record_transitions(ctx.tasks)

        link_id = await orchestrator.handle_link(USER, CHAT, URL)
        task = await orchestrator.handle_quality_choice(CHAT, link_id, "720p")
        await ctx.pool.join()
        stored = await ctx.tasks.get(task.id)

        root.unlink()
        retry_id = await orchestrator.handle_link(USER, CHAT, URL)
        retry = await orchestrator.handle_quality_choice(CHAT, retry_id, "720p")
        await ctx.pool.join()
        retried = await ctx.tasks.get(retry.id)
        await ctx.close()
        return task, stored, seen, retried, messenger

    task, stored, seen, retried, messenger = asyncio.run(scenario())

    assert seen[:2] == [TaskStatus.DOWNLOADING, TaskStatus.FAILED]
    assert stored.status == TaskStatus.FAILED
    assert stored.failure_reason == "internal: NotADirectoryError"
    assert retried.id != task.id
    assert retried.status == TaskStatus.COMPLETED
    assert ALREADY_RUNNING_TEXT not in messenger.texts()


def test_storage_error_during_format_round_fails_task(tmp_path):
    async def scenario():
        ctx, orchestrator, messenger = await make_pipeline(tmp_path)
        ctx.conversions.issue = AsyncMock(side_effect=StorageFailure("database is locked"))

        link_id = await orchestrator.handle_link(USER, CHAT, URL)
        task = await orchestrator.handle_quality_choice(CHAT, link_id, "custom")
        await ctx.pool.join()
        stored = await ctx.tasks.get(task.id)
        await ctx.close()
        return task, stored

    task, stored = asyncio.run(scenario())

    assert stored.status == TaskStatus.FAILED
    assert stored.failure_reason == "internal: StorageFailure"
    assert not task_dir(str(tmp_path / "files"), task.id).exists()


def test_converter_failure_marks_task_failed(tmp_path):
    async def scenario():
        converter = FakeConverter(error=ConverterFailure("Invalid data found when processing input"))
        ctx, orchestrator, messenger = await make_pipeline(tmp_path, converter=converter)
        seen = record_transitions(ctx.tasks)

        link_id = await orchestrator.handle_link(USER, CHAT, URL)
        task = await orchestrator.handle_quality_choice(CHAT, link_id, "custom")
        await ctx.pool.join()
        format_id = decode_choice(messenger.last_choices()[0][0].payload).short_id
        await orchestrator.handle_format_choice(CHAT, format_id, MediaFormat.VOICE.value)
        await ctx.pool.join()

        stored = await ctx.tasks.get(task.id)
        await ctx.close()
        return task, stored, seen, messenger

    task, stored, seen, messenger = asyncio.run(scenario())

    assert seen == [TaskStatus.DOWNLOADING, TaskStatus.CONVERTING, TaskStatus.FAILED]
    assert stored.failure_reason == "converter: Invalid data found when processing input"
    assert messenger.delivered == []
    assert not task_dir(str(tmp_path / "files"), task.id).exists()


def test_delivery_failure_marks_task_failed(tmp_path):
    async def scenario():
        messenger = FakeMessenger(deliver_error=DeliveryFailure("Bad Request: file is too big"))
        ctx, orchestrator, _ = await make_pipeline(tmp_path, messenger=messenger)
        seen = record_transitions(ctx.tasks)

        link_id = await orchestrator.handle_link(USER, CHAT, URL)
        task = await orchestrator.handle_quality_choice(CHAT, link_id, "720p")
        await ctx.pool.join()
        stored = await ctx.tasks.get(task.id)
        await ctx.close()
        return task, stored, seen

    task, stored, seen = asyncio.run(scenario())

    assert seen == [TaskStatus.DOWNLOADING, TaskStatus.UPLOADING, TaskStatus.FAILED]
    assert stored.failure_reason == "delivery: Bad Request: file is too big"
    assert not task_dir(str(tmp_path / "files"), task.id).exists()


def test_oversized_file_is_not_delivered(tmp_path):
    async def scenario():
        ctx, orchestrator, messenger = await make_pipeline(tmp_path, max_file_size_mb=0)
        seen = record_transitions(ctx.tasks)

        link_id = await orchestrator.handle_link(USER, CHAT, URL)
        task = await orchestrator.handle_quality_choice(CHAT, link_id, "720p")
        await ctx.pool.join()
        stored = await ctx.tasks.get(task.id)
        await ctx.close()
        return task, stored, seen, messenger

    task, stored, seen, messenger = asyncio.run(scenario())

    assert seen == [TaskStatus.DOWNLOADING, TaskStatus.UPLOADING, TaskStatus.FAILED]
    assert stored.failure_reason.startswith("delivery: file too large")
    assert messenger.delivered == []
    assert not task_dir(str(tmp_path / "files"), task.id).exists()


def test_lost_format_transition_is_reported_as_stale_choice(tmp_path):
    async def scenario():
        ctx, orchestrator, messenger = await make_pipeline(tmp_path)
        link_id = await orchestrator.handle_link(USER, CHAT, URL)
        await orchestrator.handle_quality_choice(CHAT, link_id, "custom")
        await ctx.pool.join()

        format_id = decode_choice(messenger.last_choices()[0][0].payload).short_id
        ctx.tasks.transition = AsyncMock(return_value=TransitionResult.CONFLICT)
        result = await orchestrator.handle_format_choice(CHAT, format_id, MediaFormat.AUDIO.value)
        await ctx.pool.join()
        await ctx.close()
        return result, messenger, orchestrator.converter

    result, messenger, converter = asyncio.run(scenario())

    assert result is None
    assert messenger.sent[-1][2] == error_manager.to_user_message(TokenNotFound())
    assert converter.calls == []


def test_new_requests_wait_for_open_format_round(tmp_path):
    async def scenario():
        ctx, orchestrator, messenger = await make_pipeline(tmp_path)
        link_id = await orchestrator.handle_link(USER, CHAT, URL)
        await orchestrator.handle_quality_choice(CHAT, link_id, "custom")
        await ctx.pool.join()

        second_link = await orchestrator.handle_link(USER, CHAT, URL + "&t=1")
        upload = await orchestrator.handle_video_upload(USER, CHAT, "file-id", "unique-id")
        tokens = await count_rows(ctx, "pending_downloads")

        await orchestrator.cancel_pending(CHAT)
        after_cancel = await orchestrator.handle_link(USER, CHAT, URL + "&t=1")
        await ctx.close()
        return second_link, upload, tokens, after_cancel, messenger

    second_link, upload, tokens, after_cancel, messenger = asyncio.run(scenario())

    assert second_link is None
    assert upload is None
    assert tokens == 0
    assert messenger.texts().count(FORMAT_ROUND_OPEN_TEXT) == 2
    assert messenger.fetched == []
    assert after_cancel is not None
