"""
External collaborators: media downloader (yt-dlp / direct HTTP) and
converter (ffmpeg).

Both are treated as black boxes: they get parameters and an output
directory, and either return output paths or raise a ``ToolFailure``.
Neither retries; a hard timeout applies to every invocation.
"""

import asyncio
import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import aiohttp
from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadCancelled, DownloadError

from config import (
    CUSTOM_QUALITY,
    CUSTOM_QUALITY_MAX_HEIGHT,
    DELIVERABLE_EXTENSIONS,
    METADATA_TIMEOUT_SECONDS,
    QUALITY_CHOICES,
    QUALITY_LADDER,
    THUMBNAIL_EXTENSIONS,
    VIDEO_EXTENSIONS,
    AUDIO_EXTENSIONS,
    YTDL_BASE_OPTS,
    YTDLP_COOKIES_FILE,
    YTDLP_COOKIES_FROM_BROWSER,
)
from errors import ConverterFailure, DownloaderFailure, InvocationTimeout
from models import MediaFormat
from utils import download_file_async, is_direct_file_url, sanitize_filename

logger = logging.getLogger(__name__)

# How long a timed-out yt-dlp thread gets to notice the abort flag.
ABORT_GRACE_SECONDS = 15

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")


@dataclass
class DownloadResult:
    path: str
    thumbnail_path: Optional[str] = None
    title: Optional[str] = None

    @property
    def ext(self) -> str:
        return Path(self.path).suffix.lower()


@dataclass
class MediaInfo:
    """What yt-dlp reports about a URL before anything is downloaded."""

    duration: Optional[float] = None
    heights: Tuple[int, ...] = ()

    @classmethod
    def from_info(cls, info: Dict[str, Any]) -> "MediaInfo":
        heights = {
            fmt["height"]
            for fmt in info.get("formats") or []
            if fmt.get("height") and fmt.get("vcodec") not in (None, "none")
        }
        return cls(duration=info.get("duration"), heights=tuple(sorted(heights)))


def available_qualities(heights: Sequence[int], ladder: Sequence[int] = QUALITY_LADDER) -> List[str]:
    """
    Ladder steps the video can serve: a step is offered when some format is
    at least that tall. Falls back to the tallest format, then to the
    static choices when nothing is known.
    """
    if not heights:
        return list(QUALITY_CHOICES)
    tallest = max(heights)
    offered = [f"{step}p" for step in ladder if step <= tallest]
    return offered or [f"{tallest}p"]


def parse_quality(quality: str) -> Optional[int]:
    """'720p' -> 720; 'custom' -> None (best up to the custom cap)."""
    if quality == CUSTOM_QUALITY:
        return None
    match = re.fullmatch(r"(\d{3,4})p", quality or "")
    if not match:
        raise ValueError(f"Unknown quality: {quality!r}")
    return int(match.group(1))


def needs_conversion(result: DownloadResult, quality: Optional[str]) -> bool:
    """A format round is needed for 'custom' requests and non-deliverable containers."""
    return quality == CUSTOM_QUALITY or result.ext not in DELIVERABLE_EXTENSIONS


def short_reason(error: BaseException, limit: int = 200) -> str:
    """Last meaningful line of a tool error, without colour codes."""
    text = _ANSI_RE.sub("", str(error)).strip()
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    reason = lines[-1] if lines else error.__class__.__name__
    return reason.removeprefix("ERROR: ")[:limit]


class Downloader:
    """Fetches a URL into a task directory."""

    def __init__(self, timeout_seconds: float, max_file_size_mb: int):
        self.timeout_seconds = timeout_seconds
        self.max_file_size_mb = max_file_size_mb

    async def invoke(self, url: str, quality: Optional[str], output_dir: str) -> DownloadResult:
        if is_direct_file_url(url):
            return await self._download_direct(url, output_dir)
        return await self._download_ytdlp(url, quality, output_dir)

    async def fetch_info(self, url: str) -> Optional[MediaInfo]:
        """
        Read duration and available heights without downloading.

        Direct file URLs carry no metadata and return None. Raises
        ``DownloaderFailure`` or ``InvocationTimeout`` like ``invoke``.
        """
        if is_direct_file_url(url):
            return None

        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, self._extract_info, url),
                timeout=METADATA_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as error:
            raise InvocationTimeout("downloader", METADATA_TIMEOUT_SECONDS) from error

    def _extract_info(self, url: str) -> MediaInfo:
        options: Dict[str, Any] = {
            **YTDL_BASE_OPTS,
            "skip_download": True,
            "socket_timeout": 5,
            **cookie_options(),
        }
        try:
            with YoutubeDL(options) as ydl:
                info = ydl.extract_info(url, download=False)
        except DownloadError as error:
            raise DownloaderFailure(short_reason(error)) from error
        return MediaInfo.from_info(info or {})

    async def _download_direct(self, url: str, output_dir: str) -> DownloadResult:
        parsed = urlparse(url)
        filename = sanitize_filename(os.path.basename(parsed.path) or f"download_{int(time.time())}")
        if "." not in filename:
            filename += ".mp4"
        filepath = os.path.join(output_dir, filename)

        try:
            async with aiohttp.ClientSession() as session:
                await asyncio.wait_for(
                    download_file_async(url, filepath, session, timeout=int(self.timeout_seconds)),
                    timeout=self.timeout_seconds,
                )
        except asyncio.TimeoutError as error:
            raise InvocationTimeout("downloader", self.timeout_seconds) from error
        except aiohttp.ClientError as error:
            raise DownloaderFailure(short_reason(error)) from error

        return DownloadResult(path=filepath, title=Path(filepath).stem)

    async def _download_ytdlp(self, url: str, quality: Optional[str], output_dir: str) -> DownloadResult:
        abort = threading.Event()
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self._run_ytdlp, url, quality, output_dir, abort)

        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as error:
            abort.set()
            # Let the worker thread stop writing before the caller removes its files.
            try:
                await asyncio.wait_for(future, timeout=ABORT_GRACE_SECONDS)
            except Exception:
                logger.debug("yt-dlp worker ended after abort", exc_info=True)
            raise InvocationTimeout("downloader", self.timeout_seconds) from error

    def _run_ytdlp(
        self,
        url: str,
        quality: Optional[str],
        output_dir: str,
        abort: threading.Event,
    ) -> DownloadResult:
        """Blocking yt-dlp execution function used in thread pool."""
        options = self.build_ytdlp_options(output_dir, quality)

        def check_abort(_progress: Dict[str, Any]) -> None:
            if abort.is_set():
                raise DownloadCancelled("aborted after timeout")

        options["progress_hooks"] = [check_abort]

        try:
            with YoutubeDL(options) as ydl:
                info = ydl.extract_info(url, download=True)
        except DownloadCancelled as error:
            raise DownloaderFailure("cancelled") from error
        except DownloadError as error:
            raise DownloaderFailure(short_reason(error)) from error

        path = find_latest_file(output_dir, VIDEO_EXTENSIONS + AUDIO_EXTENSIONS)
        if not path:
            raise DownloaderFailure("file not found after download")

        return DownloadResult(
            path=path,
            thumbnail_path=find_latest_file(output_dir, THUMBNAIL_EXTENSIONS, fallback=False),
            title=(info or {}).get("title"),
        )

    def build_ytdlp_options(self, output_dir: str, quality: Optional[str]) -> Dict[str, Any]:
        height = parse_quality(quality) if quality else None
        if height is None:
            height = CUSTOM_QUALITY_MAX_HEIGHT

        ydl_opts: Dict[str, Any] = {
            **YTDL_BASE_OPTS,
            "outtmpl": os.path.join(output_dir, "%(title).80s_%(id)s.%(ext)s"),
            "socket_timeout": 30,
            "max_filesize": self.max_file_size_mb * 1024 * 1024,
            # H.264 + AAC plays inline in Telegram without re-encoding.
            "format": (
                f"bestvideo[height<={height}][vcodec^=avc1]+bestaudio[acodec^=mp4a]/"
                f"bestvideo[height<={height}][vcodec^=avc1]+bestaudio/"
                f"bestvideo[height<={height}]+bestaudio/"
                f"best[height<={height}]/best"
            ),
            "writethumbnail": True,
            "postprocessors": [{"key": "FFmpegThumbnailsConvertor", "format": "jpg"}],
        }

        ydl_opts.update(cookie_options())
        return ydl_opts


def cookie_options() -> Dict[str, Any]:
    options: Dict[str, Any] = {}
    cookie_file = (YTDLP_COOKIES_FILE or "").strip()
    if cookie_file:
        if os.path.exists(cookie_file):
            options["cookiefile"] = cookie_file
        else:
            logger.warning("YTDLP_COOKIES_FILE is set but file does not exist: %s", cookie_file)

    cookies_from_browser = parse_cookies_from_browser(YTDLP_COOKIES_FROM_BROWSER)
    if cookies_from_browser:
        options["cookiesfrombrowser"] = cookies_from_browser
    return options


def parse_cookies_from_browser(raw_value: str) -> Optional[Tuple[str, ...]]:
    """
    Parse env string into yt-dlp `cookiesfrombrowser` tuple.

    Examples:
    - chrome
    - firefox:default-release
    - edge::Profile 1
    """
    if not raw_value:
        return None

    parts = [part.strip() for part in raw_value.split(":")]
    if not parts or not parts[0]:
        return None

    values: List[str] = [parts[0]]
    for part in parts[1:4]:
        if part:
            values.append(part)
    return tuple(values)


def find_latest_file(directory: str, allowed_ext: Tuple[str, ...], fallback: bool = True) -> Optional[str]:
    entries = [entry for entry in Path(directory).iterdir() if entry.is_file()]
    files = [entry for entry in entries if entry.suffix.lower() in allowed_ext]

    if not files and fallback:
        files = [entry for entry in entries if entry.suffix.lower() not in THUMBNAIL_EXTENSIONS]
    if not files:
        return None
    return str(max(files, key=lambda item: item.stat().st_mtime))


# (extension, ffmpeg output arguments) per target format
FFMPEG_PROFILES: Dict[MediaFormat, Tuple[str, List[str]]] = {
    MediaFormat.VIDEO: (
        "mp4",
        [
            "-c:v", "libx264", "-preset", "fast", "-crf", "28",
            "-vf", "scale='min(1280,iw)':'min(720,ih)':force_original_aspect_ratio=decrease,"
                   "scale=trunc(iw/2)*2:trunc(ih/2)*2",
            "-c:a", "aac", "-b:a", "128k",
            "-movflags", "+faststart",
        ],
    ),
    MediaFormat.AUDIO: ("mp3", ["-vn", "-c:a", "libmp3lame", "-q:a", "2"]),
    MediaFormat.VIDEO_NOTE: (
        "mp4",
        [
            "-t", "60",
            "-vf", "scale=512:512:force_original_aspect_ratio=increase,crop=512:512",
            "-c:v", "libx264", "-preset", "fast", "-crf", "28",
            "-c:a", "aac", "-b:a", "96k",
            "-movflags", "+faststart",
        ],
    ),
    MediaFormat.VOICE: ("ogg", ["-vn", "-c:a", "libopus", "-b:a", "64k"]),
}


class Converter:
    """Runs ffmpeg as a subprocess; killed when it exceeds the timeout."""

    def __init__(self, timeout_seconds: float, binary: str = "ffmpeg"):
        self.timeout_seconds = timeout_seconds
        self.binary = binary

    def build_command(self, input_path: str, target: MediaFormat) -> Tuple[List[str], str]:
        ext, args = FFMPEG_PROFILES[target]
        source = Path(input_path)
        output_path = str(source.with_name(f"{source.stem}_{target.value}.{ext}"))
        cmd = [
            self.binary,
            "-y",
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            input_path,
            *args,
            output_path,
        ]
        return cmd, output_path

    async def invoke(self, input_path: str, target: MediaFormat) -> str:
        cmd, output_path = self.build_command(input_path, target)
        logger.debug("Running %s", " ".join(cmd))

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise ConverterFailure(f"{self.binary} not found") from error

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as error:
            process.kill()
            await process.wait()
            raise InvocationTimeout("converter", self.timeout_seconds) from error

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            reason = message.splitlines()[-1] if message else f"ffmpeg exited with {process.returncode}"
            raise ConverterFailure(reason[:200])

        if not os.path.exists(output_path):
            raise ConverterFailure("ffmpeg produced no output")
        return output_path
