"""
Utilities for URL parsing, validation and task-scoped file handling.
"""

import hashlib
import logging
import os
import re
import shutil
from pathlib import Path
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse
from typing import Optional, Tuple

import aiofiles
import aiohttp

from config import DIRECT_FILE_RE, SUPPORTED_DOMAINS, URL_RE

logger = logging.getLogger(__name__)

TRACKING_PARAMS = frozenset(
    {"utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content", "fbclid", "gclid", "si", "feature"}
)


def find_first_url(text: str) -> Optional[str]:
    """Return first URL in text."""
    if not text:
        return None
    match = URL_RE.search(text)
    return match.group(0) if match else None


def strip_tracking_params(url: str) -> str:
    """Remove common tracking query params from URL."""
    try:
        parsed = urlparse(url)
        query_params = parse_qs(parsed.query)
        clean_params = {
            key: value
            for key, value in query_params.items()
            if key.lower() not in TRACKING_PARAMS
        }
        clean_query = urlencode(clean_params, doseq=True)
        return urlunparse(
            (parsed.scheme, parsed.netloc, parsed.path, parsed.params, clean_query, parsed.fragment)
        )
    except ValueError:
        return url


def is_supported_url(url: str) -> bool:
    """Check whether URL belongs to a supported platform or is a direct media file."""
    if not url:
        return False
    low = url.lower()
    if any(domain in low for domain in SUPPORTED_DOMAINS):
        return True
    return is_direct_file_url(url)


def is_direct_file_url(url: str) -> bool:
    return bool(DIRECT_FILE_RE.search(url or ""))


def content_key(url: str, quality: str) -> str:
    """Content identity of a URL download, used to deduplicate admissions."""
    normalized = strip_tracking_params(url.strip())
    parsed = urlparse(normalized)
    normalized = urlunparse(parsed._replace(scheme=parsed.scheme.lower(), netloc=parsed.netloc.lower()))
    digest = hashlib.sha1(f"{normalized}|{quality}".encode("utf-8")).hexdigest()
    return digest[:20]


def sanitize_filename(filename: str) -> str:
    """Return filesystem-safe filename."""
    safe_name = re.sub(r'[<>:"/\\|?*]', "_", filename)
    safe_name = re.sub(r"[\x00-\x1f\x7f-\x9f]", "", safe_name)
    safe_name = safe_name.strip().strip(".")
    return (safe_name or "media")[:255]


def get_file_size_mb(filepath: str) -> float:
    """File size in MB."""
    try:
        return os.path.getsize(filepath) / (1024 * 1024)
    except OSError:
        return 0.0


def task_dir(storage_root: str, task_id: str) -> Path:
    """Directory holding every file of one task."""
    return Path(storage_root) / task_id


def create_task_dir(storage_root: str, task_id: str) -> Path:
    path = task_dir(storage_root, task_id)
    path.mkdir(parents=True, exist_ok=True)
    return path


def cleanup_task_dir(storage_root: str, task_id: str) -> None:
    """Remove the task directory; missing directories are fine."""
    path = task_dir(storage_root, task_id)
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError:
        logger.warning("Failed to remove task dir %s", path, exc_info=True)


def format_duration(seconds: float) -> str:
    """Human readable duration."""
    total_seconds = max(0, int(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_file_size(bytes_size: int) -> str:
    """Human readable file size."""
    if bytes_size is None:
        return "0.0 B"

    size = float(max(bytes_size, 0))
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024.0 or unit == "TB":
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return "0.0 B"


async def download_file_async(
    url: str,
    filepath: str,
    session: aiohttp.ClientSession,
    timeout: int = 300,
) -> None:
    """Download direct file URL to local path."""
    async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
        response.raise_for_status()
        async with aiofiles.open(filepath, "wb") as file:
            async for chunk in response.content.iter_chunked(8192):
                await file.write(chunk)


def validate_url_input(url: str) -> Tuple[bool, str]:
    """Validate URL format and safety."""
    if not url:
        return False, "URL не может быть пустым"
    if len(url) > 2000:
        return False, "URL слишком длинный"

    try:
        parsed = urlparse(url)
        if parsed.scheme.lower() not in {"http", "https"}:
            return False, "Поддерживаются только HTTP/HTTPS URL"
        if not parsed.netloc:
            return False, "Некорректный URL"
    except ValueError:
        return False, "Некорректный URL"

    return True, ""


def sanitize_user_input(text: str, max_length: int = 1000) -> str:
    """Remove control chars and trim length."""
    if not text:
        return ""
    sanitized = re.sub(r"[\x00-\x1f\x7f-\x9f]", "", text)
    return sanitized.strip()[:max_length]
