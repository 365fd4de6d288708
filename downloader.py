#!/usr/bin/env python3
"""
Photo downloads for archived posts.

Photo posts are turned into download jobs on a DedupJobQueue keyed by post
URL. Progress is tracked in ``tumblr-downloads.json``:

    {post_url: {"reblog", "origin", "tags", "photo_urls", "downloaded",
                "downloaded_at", "download_error"}}

Files land in ``photos/`` under their original file names; files already
on disk are skipped. Entries that failed stay pending and are retried on the
next download pass.
"""

import hashlib
import os
from asyncio import TimeoutError
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

from aiohttp import ClientError, ClientSession, ClientTimeout
from bs4 import BeautifulSoup

from config import config, get_logger
from errors import FetchError, HttpStatusError, StoreError
from job_queue import DedupJobQueue
from lockfile import DataDirLock
from utils import RetryHelper, read_json_file, safe_filename, to_iso, utc_now, write_json_atomic

logger = get_logger("downloader")

# Post fields that may carry HTML with inline images
HTML_FIELDS = ("photo-caption", "regular-body", "answer", "quote-text", "link-description", "video-caption")


def _html_image_sources(html: str) -> List[str]:
    soup = BeautifulSoup(html, 'html.parser')
    sources = []
    for img in soup.find_all('img', src=True):
        src = img['src'].strip()
        if src.startswith(('http://', 'https://')):
            sources.append(src)
    return sources


def extract_photo_urls(post: Dict[str, Any]) -> List[str]:
    """Collect the photo URLs of a post, largest size first, without duplicates."""
    candidates: List[str] = list(post.get("photo_urls") or [])

    if post.get("photo-url-1280"):
        candidates.append(post["photo-url-1280"])

    for photo in post.get("photos") or []:
        if not isinstance(photo, dict):
            continue
        url = photo.get("photo-url-1280") or photo.get("photo-url-500")
        if url:
            candidates.append(url)

    for name in HTML_FIELDS:
        value = post.get(name)
        if isinstance(value, str) and '<img' in value:
            candidates.extend(_html_image_sources(value))

    seen = set()
    urls = []
    for url in candidates:
        if url not in seen:
            seen.add(url)
            urls.append(url)
    return urls


def photo_filename(url: str) -> str:
    """File name for a photo URL: its last path segment, or a hash if it has none."""
    name = os.path.basename(urlsplit(url).path)
    if not name:
        return hashlib.sha1(url.encode('utf-8')).hexdigest()
    return safe_filename(name)


@dataclass
class DownloadStats:
    posts_queued: int = 0
    posts_downloaded: int = 0
    posts_failed: int = 0
    files_downloaded: int = 0
    files_skipped: int = 0


class MediaDownloader:
    """Downloads the photos of one blog's posts into its output directory."""

    def __init__(
        self,
        output_dir: str,
        queue: Optional[DedupJobQueue] = None,
        session: Optional[ClientSession] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.output_dir = output_dir
        self.cache_path = os.path.join(output_dir, config.DOWNLOADS_CACHE_FILE)
        self.photos_dir = os.path.join(output_dir, config.PHOTOS_DIR)
        self.queue = queue or DedupJobQueue("downloads")
        self._session = session
        self._owns_session = session is None
        self.retry_helper = RetryHelper(
            max_attempts=max_attempts if max_attempts is not None else config.DOWNLOAD_MAX_ATTEMPTS,
            delay=retry_delay if retry_delay is not None else config.DOWNLOAD_RETRY_DELAY,
        )
        self.downloads: Dict[str, Dict[str, Any]] = {}
        self.stats = DownloadStats()

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(headers={'User-Agent': config.USER_AGENT})
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def load(self) -> None:
        try:
            data = read_json_file(self.cache_path, default={})
        except (OSError, ValueError) as e:
            raise StoreError(f"Could not read downloads cache {self.cache_path}: {e}") from e
        self.downloads = data if isinstance(data, dict) else {}

    def save(self) -> None:
        with DataDirLock(self.output_dir):
            write_json_atomic(self.cache_path, self.downloads)

    def pending(self) -> List[str]:
        return [url for url, info in self.downloads.items() if not info.get("downloaded")]

    def queue_post(self, post: Dict[str, Any], force: bool = False) -> bool:
        """Queue the photos of one post. Returns True if a job was queued."""
        post_url = post.get("url")
        if not post_url:
            return False
        if post.get("type") != "photo" and not post.get("photo_urls"):
            logger.debug(f"Skipping {post_url}: unsupported post type {post.get('type')}")
            return False

        info = self.downloads.get(post_url)
        if info and info.get("downloaded") and not force:
            return False

        photo_urls = extract_photo_urls(post)
        if not photo_urls:
            logger.debug(f"No photos in {post_url}")
            return False

        entry = self.downloads.setdefault(post_url, {})
        entry.update({
            "reblog": post.get("reblogged-from-name") or post.get("reblog"),
            "origin": post.get("reblogged-root-name") or post.get("origin"),
            "tags": list(post.get("tags") or []),
            "photo_urls": photo_urls,
            "downloaded": False,
        })

        queued = self.queue.push(
            post_url,
            {"post_url": post_url, "photo_urls": photo_urls},
            self._download_post,
            on_done=partial(self._on_post_done, post_url),
        )
        if queued:
            self.stats.posts_queued += 1
        return queued

    def queue_pending(self) -> int:
        """Re-queue entries left unfinished by an earlier pass."""
        count = 0
        for post_url in self.pending():
            info = self.downloads[post_url]
            if self.queue_post({"url": post_url, **info}, force=True):
                count += 1
        if count:
            logger.info(f"Re-queued {count} pending downloads")
        return count

    async def _download_post(self, payload: Dict[str, Any]) -> None:
        logger.info(f"Downloading {len(payload['photo_urls'])} photos for {payload['post_url']}")
        failures = []
        for url in payload["photo_urls"]:
            try:
                await self.download_file(url)
            except FetchError as e:
                logger.warning(f"Download failed: {url}: {e}")
                failures.append(url)
        if failures:
            raise FetchError(f"{len(failures)} of {len(payload['photo_urls'])} photos failed", payload["post_url"])

    def _on_post_done(self, post_url: str, error: Optional[BaseException]) -> None:
        entry = self.downloads.setdefault(post_url, {})
        if error is None:
            entry["downloaded"] = True
            entry["downloaded_at"] = to_iso(utc_now())
            entry.pop("download_error", None)
            self.stats.posts_downloaded += 1
        else:
            entry["downloaded"] = False
            entry["download_error"] = str(error)
            self.stats.posts_failed += 1
        self.save()
        logger.debug(f"Download queue: {self.queue.job_count()}")

    async def download_file(self, url: str) -> str:
        """Download one file into the photos directory, skipping existing files."""
        os.makedirs(self.photos_dir, exist_ok=True)
        file_path = os.path.join(self.photos_dir, photo_filename(url))
        if os.path.exists(file_path):
            self.stats.files_skipped += 1
            return file_path

        for attempt in range(self.retry_helper.max_attempts):
            try:
                await self._fetch_to_file(url, file_path)
                self.stats.files_downloaded += 1
                logger.debug(f"Downloaded {url} -> {file_path}")
                return file_path
            except HttpStatusError:
                raise
            except (ClientError, TimeoutError) as e:
                if not self.retry_helper.should_retry(attempt):
                    raise FetchError(f"{e.__class__.__name__}: {e}", url) from e
                logger.warning(f"Retry {attempt + 1}/{self.retry_helper.max_attempts - 1} for {url}: {e}")
                await self.retry_helper.sleep_for_attempt(attempt)
        raise FetchError("Download attempts exhausted", url)

    async def _fetch_to_file(self, url: str, file_path: str) -> None:
        session = await self._get_session()
        tmp_path = file_path + ".part"
        try:
            async with session.get(url, timeout=ClientTimeout(total=config.HTTP_TIMEOUT)) as response:
                if response.status != 200:
                    raise HttpStatusError(response.status, url)
                with open(tmp_path, 'wb') as f:
                    async for chunk in response.content.iter_chunked(64 * 1024):
                        f.write(chunk)
            os.replace(tmp_path, file_path)
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)

    async def download_posts(self, posts: Iterable[Dict[str, Any]]) -> DownloadStats:
        """Queue pending entries plus ``posts`` and wait for the queue to drain."""
        self.load()
        self.queue_pending()
        for post in posts:
            self.queue_post(post)
        await self.queue.join()
        self.save()
        logger.info(
            f"Downloads for {self.output_dir}: {self.stats.posts_downloaded} posts done, "
            f"{self.stats.posts_failed} failed, {self.stats.files_downloaded} files new, "
            f"{self.stats.files_skipped} already present"
        )
        return self.stats

    async def download_exported(self, exported_file: Optional[str] = None) -> DownloadStats:
        """Download photos for every post in the exported posts file."""
        exported_file = exported_file or os.path.join(self.output_dir, config.EXPORTED_POSTS_FILE)
        try:
            exported = read_json_file(exported_file)
        except (OSError, ValueError) as e:
            raise StoreError(f"Could not read exported posts {exported_file}: {e}") from e
        if exported is None:
            raise StoreError(f"Exported posts file does not exist: {exported_file}")
        return await self.download_posts(exported.values() if isinstance(exported, dict) else exported)
