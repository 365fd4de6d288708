#!/usr/bin/env python3
"""
Utility classes and functions for the Tumblr archiver.

This module contains shared utilities used by the feed client, stores and
scheduler: retry pacing, source URL handling, timestamp serialization and
atomic JSON file writes.
"""

from asyncio import sleep
from datetime import datetime, timezone
from typing import Any, Optional, Tuple
import json
import os
import re
import tempfile
from urllib.parse import urlsplit

from config import get_logger

# Module-specific logger
logger = get_logger("utils")


class RetryHelper:
    """Helper class for pacing retries of transient failures.

    The default policy is a fixed delay between attempts. With
    ``exponential=True`` the delay doubles after each failure, capped at
    ``max_delay``.
    """

    def __init__(self, max_attempts: int = 5, delay: float = 5.0, exponential: bool = False, max_delay: float = 300.0):
        """Initialize the retry helper.

        Args:
            max_attempts: Total attempts including the first one
            delay: Delay in seconds after the first failure
            exponential: Double the delay after each further failure
            max_delay: Upper bound for any single delay
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.delay = max(0.0, float(delay))
        self.exponential = exponential
        self.max_delay = max(self.delay, float(max_delay))

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay after the given failed attempt.

        Args:
            attempt: The attempt that just failed (0-based)
        """
        if not self.exponential:
            return self.delay
        return min(self.delay * (2 ** attempt), self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt is allowed after ``attempt`` (0-based) failed."""
        return attempt + 1 < self.max_attempts

    async def sleep_for_attempt(self, attempt: int):
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL."""
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    return url.startswith(('http://', 'https://')) and '.' in url


def normalize_source_url(url: str) -> str:
    """Strip whitespace and a single trailing slash from a source URL."""
    value = (url or "").strip()
    if value.endswith('/'):
        value = value[:-1]
    return value


def blog_name_from_url(url: str) -> str:
    """Return the blog name of a tumblr URL.

    ``https://foo.tumblr.com/tagged/bar`` -> ``foo``; custom domains return the
    host itself.
    """
    value = (url or "").strip()
    for prefix in ('https://', 'http://'):
        if value.startswith(prefix):
            value = value[len(prefix):]
            break
    host = value.split('/')[0].strip()
    return host.replace('.tumblr.com', '')


def split_tagged_url(url: str) -> Tuple[str, Optional[str]]:
    """Split ``<blog>/tagged/<tag>`` into the blog base URL and the tag."""
    value = normalize_source_url(url)
    marker = '/tagged/'
    index = value.find(marker)
    if index == -1:
        return value, None
    tag = value[index + len(marker):].strip('/')
    return value[:index], tag or None


def feed_base_url(url: str) -> str:
    """Return ``scheme://host/`` for a blog URL, or the tumblr URL for a bare blog name."""
    value = (url or "").strip()
    if not value.startswith(('http://', 'https://')):
        return f"https://{value}.tumblr.com/"
    parts = urlsplit(value)
    return f"{parts.scheme}://{parts.netloc}/"


def safe_filename(filename: str, max_length: int = 255) -> str:
    """Convert a string to a safe filename by removing/replacing problematic characters."""
    if not filename:
        return "untitled"

    safe_name = re.sub(r'[<>:"/\\|?*]', '_', filename)
    safe_name = re.sub(r'[\x00-\x1f\x7f-\x9f]', '', safe_name)
    safe_name = safe_name.strip('. ')

    if not safe_name:
        return "untitled"

    if len(safe_name) > max_length:
        safe_name = safe_name[:max_length].rstrip('. ')

    return safe_name


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1h 23m 45s")."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as ISO-8601 UTC with microsecond precision."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a persisted timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (including the ``Z`` suffix written by
    JavaScript's ``Date.toJSON``), epoch seconds, and datetimes.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning(f"Unparseable timestamp '{value}'")
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    logger.warning(f"Unsupported timestamp type {type(value).__name__}")
    return None


def read_json_file(file_path: str, default: Any = None) -> Any:
    """Read a JSON file, returning ``default`` when it does not exist."""
    if not os.path.isfile(file_path):
        return default
    with open(file_path, 'r', encoding='utf-8') as f:
        return json.load(f)


def write_json_atomic(file_path: str, data: Any) -> None:
    """Write JSON to a temporary file in the same directory, then swap it in.

    Readers either see the previous complete file or the new complete file.
    """
    directory = os.path.dirname(os.path.abspath(file_path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix='.tmp-', suffix='.json', dir=directory)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, ensure_ascii=False, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, file_path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
