"""
Outbound chat messaging: choice encoding and the aiogram adapter.

The orchestrator only talks to the ``Messenger`` protocol so tests can
substitute a recorder for the Telegram client.
"""

import logging
from typing import List, NamedTuple, Optional, Protocol, Sequence

from aiogram import Bot
from aiogram.types import FSInputFile, InlineKeyboardButton, InlineKeyboardMarkup

from config import CALLBACK_DATA_LIMIT
from errors import DeliveryFailure
from models import MediaFormat

logger = logging.getLogger(__name__)

QUALITY_PREFIX = "q"
FORMAT_PREFIX = "f"


class Choice(NamedTuple):
    label: str
    payload: str


ChoiceRows = Sequence[Sequence[Choice]]


class ChoiceData(NamedTuple):
    prefix: str
    short_id: str
    value: str


def encode_choice(prefix: str, short_id: str, value: str) -> str:
    """Build callback data; raise if it would not fit the protocol ceiling."""
    data = f"{prefix}:{short_id}:{value}"
    if len(data.encode("utf-8")) > CALLBACK_DATA_LIMIT:
        raise ValueError(f"Choice payload exceeds {CALLBACK_DATA_LIMIT} bytes: {data!r}")
    return data


def decode_choice(data: Optional[str]) -> Optional[ChoiceData]:
    parts = (data or "").split(":", 2)
    if len(parts) != 3 or not all(parts):
        return None
    return ChoiceData(*parts)


class Messenger(Protocol):
    async def send_text(self, chat_id: int, text: str, choices: Optional[ChoiceRows] = None) -> int:
        """Send a message and return its id."""

    async def edit_text(
        self, chat_id: int, message_id: int, text: str, choices: Optional[ChoiceRows] = None
    ) -> None:
        ...

    async def deliver(
        self,
        chat_id: int,
        path: str,
        media_format: MediaFormat,
        thumbnail_path: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> None:
        ...

    async def fetch_file(self, file_id: str, destination: str) -> None:
        ...


def build_keyboard(choices: Optional[ChoiceRows]) -> Optional[InlineKeyboardMarkup]:
    if not choices:
        return None
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text=choice.label, callback_data=choice.payload) for choice in row]
            for row in choices
        ]
    )


class AiogramMessenger:
    """``Messenger`` backed by an aiogram ``Bot``."""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send_text(self, chat_id: int, text: str, choices: Optional[ChoiceRows] = None) -> int:
        message = await self.bot.send_message(chat_id, text, reply_markup=build_keyboard(choices))
        return message.message_id

    async def edit_text(
        self, chat_id: int, message_id: int, text: str, choices: Optional[ChoiceRows] = None
    ) -> None:
        await self.bot.edit_message_text(
            text=text,
            chat_id=chat_id,
            message_id=message_id,
            reply_markup=build_keyboard(choices),
        )

    async def deliver(
        self,
        chat_id: int,
        path: str,
        media_format: MediaFormat,
        thumbnail_path: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> None:
        file = FSInputFile(path)
        thumbnail = FSInputFile(thumbnail_path) if thumbnail_path else None

        try:
            if media_format is MediaFormat.AUDIO:
                await self.bot.send_audio(chat_id, audio=file, caption=caption, thumbnail=thumbnail)
            elif media_format is MediaFormat.VIDEO_NOTE:
                await self.bot.send_video_note(chat_id, video_note=file, thumbnail=thumbnail)
            elif media_format is MediaFormat.VOICE:
                await self.bot.send_voice(chat_id, voice=file, caption=caption)
            else:
                await self.bot.send_video(
                    chat_id,
                    video=file,
                    caption=caption,
                    thumbnail=thumbnail,
                    supports_streaming=True,
                )
            return
        except Exception:
            logger.warning("Typed upload failed for chat %s, falling back to document", chat_id, exc_info=True)

        try:
            await self.bot.send_document(chat_id, document=FSInputFile(path), caption=caption)
        except Exception as error:
            raise DeliveryFailure(str(error)[:200]) from error

    async def fetch_file(self, file_id: str, destination: str) -> None:
        await self.bot.download(file_id, destination=destination)


def quality_choices(short_id: str, qualities: Sequence[str], custom: str, custom_label: str) -> List[List[Choice]]:
    rows: List[List[Choice]] = []
    row: List[Choice] = []
    for quality in qualities:
        row.append(Choice(quality, encode_choice(QUALITY_PREFIX, short_id, quality)))
        if len(row) == 2:
            rows.append(row)
            row = []
    if row:
        rows.append(row)
    rows.append([Choice(custom_label, encode_choice(QUALITY_PREFIX, short_id, custom))])
    return rows


def format_choices(short_id: str) -> List[List[Choice]]:
    buttons = [Choice(fmt.label, encode_choice(FORMAT_PREFIX, short_id, fmt.value)) for fmt in MediaFormat]
    return [buttons[:2], buttons[2:]]
