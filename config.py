"""
Process-wide configuration for the media bot.

Values are read from the environment once at startup and frozen into
``Settings``; components receive the settings object instead of reading
globals.
"""

import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


def require_bot_token() -> str:
    """Return bot token or raise if it is not configured."""
    token = os.getenv("BOT_TOKEN", "").strip()
    if not token:
        raise RuntimeError("Установите переменную окружения BOT_TOKEN")
    return token


def _admin_id() -> Optional[int]:
    raw = os.getenv("ADMIN_ID", "").strip()
    return int(raw) if raw.isdigit() else None


LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

WORKER_POOL_SIZE: int = int(os.getenv("WORKER_POOL_SIZE", "2"))
TOKEN_TTL_SECONDS: int = int(os.getenv("TOKEN_TTL_SECONDS", str(24 * 60 * 60)))
SWEEP_INTERVAL_SECONDS: int = int(os.getenv("SWEEP_INTERVAL_SECONDS", "300"))
INVOCATION_TIMEOUT_SECONDS: int = int(os.getenv("INVOCATION_TIMEOUT_SECONDS", "600"))
MAX_FILE_SIZE_MB: int = int(os.getenv("MAX_FILE_SIZE_MB", "2000"))  # local Bot API limit
MAX_VIDEO_DURATION_SECONDS: int = int(os.getenv("MAX_VIDEO_DURATION_SECONDS", "3600"))
METADATA_TIMEOUT_SECONDS: int = int(os.getenv("METADATA_TIMEOUT_SECONDS", "30"))

STORAGE_ROOT: str = os.getenv("STORAGE_ROOT", "videos")
DATABASE_PATH: str = os.getenv("DATABASE_PATH", "data/bot.db")
DEDUP_SCOPE: str = os.getenv("DEDUP_SCOPE", "chat").strip().lower()

SUBSCRIPTION_DAYS: int = int(os.getenv("SUBSCRIPTION_DAYS", "30"))
SUBSCRIPTION_PRICE_STARS: int = int(os.getenv("SUBSCRIPTION_PRICE_STARS", "50"))
PAYMENT_PAYLOAD_PREFIX: str = "premium_sub_"

YTDLP_COOKIES_FILE: str = os.getenv("YTDLP_COOKIES_FILE", "").strip()
YTDLP_COOKIES_FROM_BROWSER: str = os.getenv("YTDLP_COOKIES_FROM_BROWSER", "").strip()

YTDL_BASE_OPTS: Dict[str, Any] = {
    "nocheckcertificate": True,
    "quiet": True,
    "no_warnings": True,
    "noplaylist": True,
    "retries": 3,
    "concurrent_fragment_downloads": 4,
    "merge_output_format": "mp4",
    "postprocessor_args": {"ffmpeg": ["-movflags", "+faststart"]},
}

# Telegram rejects callback_data longer than this many bytes.
CALLBACK_DATA_LIMIT: int = 64

# Offered when the available formats of a video cannot be read.
QUALITY_CHOICES: tuple[str, ...] = ("360p", "480p", "720p", "1080p")
# Heights offered when the video has a format at least that tall.
QUALITY_LADDER: tuple[int, ...] = (360, 480, 720, 1080, 1440, 2160)
CUSTOM_QUALITY: str = "custom"
CUSTOM_QUALITY_MAX_HEIGHT: int = 1080

URL_RE: re.Pattern[str] = re.compile(r"https?://[^\s<>'\"()\[\]{}]+", re.IGNORECASE)

DIRECT_FILE_RE: re.Pattern[str] = re.compile(
    r"(?:https?://)?[^\s]+\.(?:mp4|mkv|webm|avi|mov|wmv|flv|mp3|m4a|wav|aac|ogg)"
    r"(?:\?[^#\s]*)?(?:#[^\s]*)?$",
    re.IGNORECASE,
)

VIDEO_EXTENSIONS: tuple[str, ...] = (".mp4", ".mkv", ".webm", ".avi", ".mov", ".wmv", ".flv")
AUDIO_EXTENSIONS: tuple[str, ...] = (".mp3", ".m4a", ".wav", ".aac", ".ogg")
THUMBNAIL_EXTENSIONS: tuple[str, ...] = (".jpg", ".jpeg", ".png", ".webp")

# Containers Telegram plays inline without a conversion round.
DELIVERABLE_EXTENSIONS: tuple[str, ...] = (".mp4",)

SUPPORTED_DOMAINS: List[str] = [
    "youtube.com",
    "youtu.be",
    "tiktok.com",
    "instagram.com",
    "twitter.com",
    "x.com",
    "vk.com",
    "reddit.com",
    "vimeo.com",
    "dailymotion.com",
    "soundcloud.com",
]


@dataclass(frozen=True)
class Settings:
    """Immutable runtime configuration threaded through the application."""

    worker_pool_size: int = WORKER_POOL_SIZE
    token_ttl_seconds: int = TOKEN_TTL_SECONDS
    sweep_interval_seconds: int = SWEEP_INTERVAL_SECONDS
    invocation_timeout_seconds: int = INVOCATION_TIMEOUT_SECONDS
    max_file_size_mb: int = MAX_FILE_SIZE_MB
    max_video_duration_seconds: int = MAX_VIDEO_DURATION_SECONDS
    storage_root: str = STORAGE_ROOT
    database_path: str = DATABASE_PATH
    dedup_scope: str = DEDUP_SCOPE
    admin_id: Optional[int] = None
    subscription_days: int = SUBSCRIPTION_DAYS
    subscription_price_stars: int = SUBSCRIPTION_PRICE_STARS

    def __post_init__(self) -> None:
        if self.worker_pool_size < 1:
            raise ValueError("worker_pool_size must be positive")
        if self.token_ttl_seconds <= 0:
            raise ValueError("token_ttl_seconds must be positive")
        if self.dedup_scope not in {"chat", "global"}:
            raise ValueError(f"Unknown DEDUP_SCOPE: {self.dedup_scope!r}")


def load_settings() -> Settings:
    """Build settings from the environment. Called once at startup."""
    return Settings(admin_id=_admin_id())
