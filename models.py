"""
Data models for the task lifecycle engine.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional, Tuple


class TaskType(Enum):
    DOWNLOAD = "download"
    CONVERT = "convert"


class TaskStatus(Enum):
    """Lifecycle states for a single task."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    CONVERTING = "converting"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[TaskStatus] = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

ALLOWED_TRANSITIONS: FrozenSet[Tuple[TaskStatus, TaskStatus]] = frozenset(
    {
        (TaskStatus.PENDING, TaskStatus.DOWNLOADING),
        (TaskStatus.DOWNLOADING, TaskStatus.CONVERTING),
        (TaskStatus.DOWNLOADING, TaskStatus.UPLOADING),
        (TaskStatus.DOWNLOADING, TaskStatus.FAILED),
        (TaskStatus.CONVERTING, TaskStatus.UPLOADING),
        (TaskStatus.CONVERTING, TaskStatus.FAILED),
        (TaskStatus.UPLOADING, TaskStatus.COMPLETED),
        (TaskStatus.UPLOADING, TaskStatus.FAILED),
    }
)


class TransitionResult(Enum):
    OK = "ok"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


class Access(Enum):
    ALLOWED = "allowed"
    DENIED = "denied"


class MediaFormat(Enum):
    """Output formats offered after a download or upload."""

    VIDEO = "video"
    AUDIO = "audio"
    VIDEO_NOTE = "video_note"
    VOICE = "voice"

    @property
    def label(self) -> str:
        return {
            MediaFormat.VIDEO: "🎬 Видео",
            MediaFormat.AUDIO: "🎵 Аудио",
            MediaFormat.VIDEO_NOTE: "⭕ Кружочек",
            MediaFormat.VOICE: "🎤 Голосовое",
        }[self]


class FailureReason:
    """Well-known values stored in ``Task.failure_reason``."""

    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


@dataclass
class Task:
    """Durable record of one job."""

    id: str
    task_type: TaskType
    chat_id: int
    message_id: int
    unique_file_id: str
    status: TaskStatus = TaskStatus.PENDING
    url: Optional[str] = None
    quality: Optional[str] = None
    filename: Optional[str] = None
    thumbnail_path: Optional[str] = None
    format: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0


@dataclass
class PendingLink:
    """URL waiting for a quality choice."""

    url: str
    chat_id: int
    message_id: int
    short_id: str = ""
    created_at: int = 0


@dataclass
class PendingConversion:
    """Staged file waiting for a format choice."""

    filename: str
    chat_id: int
    message_id: int
    thumbnail_path: Optional[str] = None
    short_id: str = ""
    created_at: int = 0


@dataclass
class SubscriptionInfo:
    """Subscription state as shown by /premium."""

    expires_at: Optional[int]
    active: bool
    days_left: int = 0

    @property
    def exists(self) -> bool:
        return self.expires_at is not None
