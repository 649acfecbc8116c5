"""
Error taxonomy, formatting and logging utilities.
"""

import html
import logging
from typing import Optional

from utils import format_duration


def setup_logging(
    level: str = "INFO",
    format_string: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
) -> logging.Logger:
    """Configure root logging once and return module logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(format_string))
    root_logger.addHandler(console_handler)
    # aiosqlite logs every statement at DEBUG
    logging.getLogger("aiosqlite").setLevel(max(numeric_level, logging.INFO))
    return logging.getLogger(__name__)


class BotError(Exception):
    """Base class for all errors raised by the bot's own components."""


class AccessDenied(BotError):
    """User has no subscription or it has expired."""


class TokenNotFound(BotError):
    """Short token is unknown, expired, already consumed or foreign."""


class DurationLimitExceeded(BotError):
    """Video is longer than the configured maximum."""

    def __init__(self, duration: float, limit: int):
        super().__init__(f"duration {duration:.0f}s exceeds {limit}s")
        self.duration = duration
        self.limit = limit


class InvalidTransition(BotError, ValueError):
    """Requested status change is not an edge of the task state machine."""


class StorageFailure(BotError):
    """Persistence layer is unavailable or rejected the statement."""


class DuplicateRow(StorageFailure):
    """Insert violated a primary key or unique index."""


class ToolFailure(BotError):
    """An external collaborator (downloader, converter, delivery) failed."""

    tool = "tool"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class DownloaderFailure(ToolFailure):
    tool = "downloader"


class ConverterFailure(ToolFailure):
    tool = "converter"


class DeliveryFailure(ToolFailure):
    tool = "delivery"


class InvocationTimeout(ToolFailure):
    """External invocation exceeded its allotted duration."""

    def __init__(self, tool: str, seconds: float):
        super().__init__("timeout")
        self.tool = tool
        self.seconds = seconds

    def __str__(self) -> str:
        return f"{self.tool} timed out after {self.seconds:.0f}s"


class ErrorManager:
    """Convert internal exceptions to compact user-facing messages."""

    def to_user_message(self, error: Exception, url: Optional[str] = None) -> str:
        if isinstance(error, AccessDenied):
            return (
                "🔒 <b>Нужна Premium-подписка.</b>\n"
                "Оформите её командой /premium и отправьте ссылку снова."
            )

        if isinstance(error, DurationLimitExceeded):
            return (
                f"❌ <b>Видео слишком длинное</b> ({format_duration(error.duration)}).\n"
                f"Максимальная длительность: {format_duration(error.limit)}"
            )

        if isinstance(error, TokenNotFound):
            return "⌛ Выбор устарел. Отправьте ссылку заново."

        if isinstance(error, InvocationTimeout):
            return (
                "⏱️ <b>Превышено время ожидания.</b>\n"
                "Попробуйте снова чуть позже или выберите качество пониже."
            )

        msg = str(error).lower()

        if "drm protected" in msg:
            return (
                "🔒 <b>Видео защищено DRM.</b>\n"
                "Такой контент нельзя скачать через обычные инструменты."
            )

        if "unsupported" in msg:
            return (
                "❌ <b>Ссылка не поддерживается.</b>\n"
                "Отправьте прямую ссылку на видео."
            )

        if "too large" in msg or "max_filesize" in msg:
            return (
                "❌ <b>Файл слишком большой для Telegram.</b>\n"
                "Выберите качество пониже или другой формат."
            )

        if "video not available" in msg or "private" in msg:
            return (
                "❌ <b>Видео недоступно.</b>\n"
                "Возможно ролик удалён, приватный или ограничен по региону/возрасту."
            )

        if isinstance(error, ConverterFailure):
            return (
                "❌ <b>Не удалось сконвертировать видео.</b>\n"
                "Попробуйте выбрать другой формат или загрузить другое видео."
            )

        if isinstance(error, DeliveryFailure):
            return "❌ <b>Не удалось отправить файл.</b> Попробуйте ещё раз."

        if isinstance(error, StorageFailure):
            return "⚠️ Внутренняя ошибка. Повторите попытку позже."

        safe_details = html.escape(str(error))[:350]
        return (
            "⚠️ <b>Не удалось скачать медиа.</b>\n"
            f"<code>{safe_details}</code>"
        )


error_manager = ErrorManager()
