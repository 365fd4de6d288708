#!/usr/bin/env python3
"""
Post records and the per-blog post store.

A blog's output directory holds two views of the same posts:

- ``tumblr-posts.json``: the post cache, a flat ``id -> {url, type,
  added_at, last_update}`` map loaded fully into memory. It alone decides
  whether a post is new.
- ``tumblr-posts.db``: the full post records in a DocumentStore.

PostStore keeps both in step so that re-ingesting a post is always an update
and never a second record.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from config import config, get_logger
from errors import BusyError, StoreError
from lockfile import DataDirLock
from models import DocumentStore
from utils import parse_timestamp, read_json_file, to_iso, utc_now, write_json_atomic

logger = get_logger("posts")

POST_TYPES = (
    "text", "quote", "photo", "link", "chat", "video", "audio",
    "regular", "answer", "conversation",
)

AVATAR_SIZES = (16, 24, 30, 40, 48, 64, 96, 128, 512)

# Scraper artifacts that are not post content
EXCLUDED_FIELDS = frozenset(
    ["bookmarklet", "mobile", "feed-item", "is-submission"]
    + [f"reblogged_from_avatar_url_{size}" for size in AVATAR_SIZES]
    + [f"reblogged_root_avatar_url_{size}" for size in AVATAR_SIZES]
    + ["video-player-500", "video-player-250", "like-button", "reblog-button"]
)


def derive_post_id(post: Dict[str, Any]) -> str:
    """Return the primary key of a post: its id, or its URL when it has none."""
    post_id = post.get("id") or post.get("url")
    if not post_id:
        raise ValueError("Post has neither an id nor a url")
    return str(post_id)


def strip_excluded_fields(post: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in post.items() if k not in EXCLUDED_FIELDS}


class Post:
    """Read-only view over a stored post record."""

    def __init__(self, record: Dict[str, Any]):
        self.record = record

    def __repr__(self) -> str:
        return f"Post(id={self.id!r}, type={self.type!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Post) and other.record == self.record

    @property
    def id(self) -> str:
        return derive_post_id(self.record)

    @property
    def url(self) -> Optional[str]:
        return self.record.get("url")

    @property
    def type(self) -> Optional[str]:
        return self.record.get("type")

    @property
    def created_at(self) -> Optional[datetime]:
        timestamp = self.record.get("unix-timestamp")
        if timestamp in (None, ""):
            return None
        try:
            return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
        except (TypeError, ValueError):
            return None

    @property
    def source_blog(self) -> Optional[str]:
        tumblelog = self.record.get("tumblelog")
        if isinstance(tumblelog, dict) and tumblelog.get("name"):
            return tumblelog["name"]
        return None

    @property
    def reblogged_from(self) -> Optional[str]:
        return self.record.get("reblogged-from-name")

    @property
    def reblogged_root(self) -> Optional[str]:
        return self.record.get("reblogged-root-name")

    @property
    def is_reblog(self) -> bool:
        return bool(self.reblogged_from or self.reblogged_root)

    @property
    def tags(self) -> List[str]:
        return list(self.record.get("tags") or [])

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.record)


@dataclass
class PostCacheEntry:
    id: str
    url: Optional[str]
    type: Optional[str]
    added_at: datetime
    last_update: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "type": self.type,
            "added_at": to_iso(self.added_at),
            "last_update": to_iso(self.last_update),
        }

    @classmethod
    def from_dict(cls, post_id: str, data: Dict[str, Any]) -> "PostCacheEntry":
        added_at = parse_timestamp(data.get("added_at")) or utc_now()
        last_update = parse_timestamp(data.get("last_update")) or added_at
        return cls(
            id=post_id,
            url=data.get("url"),
            type=data.get("type"),
            added_at=added_at,
            last_update=max(added_at, last_update),
        )


class PostCache:
    """In-memory post cache persisted as one JSON object."""

    def __init__(self, file_path: str):
        self.file_path = file_path
        self._entries: Dict[str, PostCacheEntry] = {}
        self._dirty = False

    def load(self) -> None:
        try:
            data = read_json_file(self.file_path, default={})
        except ValueError as e:
            raise StoreError(f"Post cache {self.file_path} is not valid JSON: {e}") from e
        except OSError as e:
            raise StoreError(f"Could not read post cache {self.file_path}: {e}") from e
        if not isinstance(data, dict):
            raise StoreError(f"Post cache {self.file_path} is not a JSON object")

        self._entries = {
            str(post_id): PostCacheEntry.from_dict(str(post_id), value or {})
            for post_id, value in data.items()
        }
        self._dirty = False
        logger.debug(f"Loaded {len(self._entries)} cached posts from {self.file_path}")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, post_id: object) -> bool:
        return str(post_id) in self._entries

    def get(self, post_id: str) -> Optional[PostCacheEntry]:
        return self._entries.get(str(post_id))

    def ids(self) -> List[str]:
        return list(self._entries)

    def touch(self, post_id: str, url: Optional[str], post_type: Optional[str],
              now: Optional[datetime] = None) -> Tuple[PostCacheEntry, bool]:
        """Create or refresh the entry for ``post_id``; returns (entry, created)."""
        now = now or utc_now()
        entry = self._entries.get(post_id)
        created = entry is None
        if created:
            entry = PostCacheEntry(id=post_id, url=url, type=post_type, added_at=now, last_update=now)
            self._entries[post_id] = entry
        else:
            entry.url = url or entry.url
            entry.type = post_type or entry.type
            # Never move backwards, even if the clock does
            entry.last_update = max(entry.last_update, now)
        self._dirty = True
        return entry, created

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {post_id: entry.to_dict() for post_id, entry in self._entries.items()}

    def flush(self, force: bool = False) -> bool:
        """Write the cache if it changed. Returns True when a write happened."""
        if not self._dirty and not force:
            return False
        with DataDirLock(os.path.dirname(os.path.abspath(self.file_path))):
            try:
                write_json_atomic(self.file_path, self.to_dict())
            except OSError as e:
                raise StoreError(f"Could not write post cache {self.file_path}: {e}") from e
        self._dirty = False
        return True


@dataclass
class StoredPost:
    post: Post
    entry: PostCacheEntry
    is_new: bool


NewPostListener = Callable[[Post], Any]


class PostStore:
    """Post cache plus document store for one blog's output directory."""

    def __init__(self, output_dir: str, documents: Optional[DocumentStore] = None):
        self.output_dir = output_dir
        self.cache = PostCache(os.path.join(output_dir, config.POSTS_CACHE_FILE))
        self.documents = documents or DocumentStore(os.path.join(output_dir, config.POSTS_DB_FILE))
        self._lock = DataDirLock(output_dir)
        self._listeners: List[NewPostListener] = []
        self._run_active = False
        self._opened = False

    async def open(self) -> "PostStore":
        os.makedirs(self.output_dir, exist_ok=True)
        self.cache.load()
        await self.documents.start()
        self._opened = True
        return self

    async def close(self) -> None:
        if not self._opened:
            return
        try:
            self.flush()
        finally:
            await self.documents.stop()
            self._opened = False

    def on_new_post(self, listener: NewPostListener) -> None:
        """Register a callable (sync or async) invoked with each new Post."""
        self._listeners.append(listener)

    @property
    def run_active(self) -> bool:
        return self._run_active

    def acquire_run(self) -> None:
        """Claim this store for one scrape run.

        Raises:
            BusyError: A run is already active on this store.
            LockConflictError: Another process holds the data directory lock.
        """
        if self._run_active:
            raise BusyError(f"A scrape run is already active for {self.output_dir}")
        self._lock.acquire()
        self._run_active = True

    def release_run(self) -> None:
        if not self._run_active:
            return
        self._run_active = False
        self._lock.release()

    def is_new(self, post_id: str) -> bool:
        return str(post_id) not in self.cache

    async def upsert(self, post: Dict[str, Any]) -> StoredPost:
        """Write the full record and refresh its cache entry.

        The record is inserted when the document store has no record for the
        id and updated otherwise, independent of the cache, so a lost cache
        never produces duplicates.
        """
        record = strip_excluded_fields(post)
        post_id = derive_post_id(record)
        record["id"] = post_id
        created = self.is_new(post_id)

        existing = await self.documents.find_one({"id": post_id})
        if existing is None:
            await self.documents.insert(record)
        else:
            await self.documents.update(post_id, record)

        entry, _ = self.cache.touch(post_id, record.get("url"), record.get("type"))
        stored = StoredPost(post=Post(record), entry=entry, is_new=created)
        if created:
            await self._emit_new_post(stored.post)
        return stored

    async def upsert_many(self, posts: Iterable[Dict[str, Any]]) -> int:
        """Upsert posts in order; returns how many were new."""
        new_count = 0
        for post in posts:
            stored = await self.upsert(post)
            if stored.is_new:
                new_count += 1
        return new_count

    async def _emit_new_post(self, post: Post) -> None:
        for listener in self._listeners:
            try:
                result = listener(post)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning(f"new-post listener failed for {post.id}: {e}")

    def flush(self) -> bool:
        return self.cache.flush()

    async def find_one(self, post_id: str) -> Optional[Post]:
        record = await self.documents.find_one({"id": str(post_id)})
        return Post(record) if record is not None else None

    async def find(self, query: Optional[Dict[str, Any]] = None, sort=None,
                   skip: int = 0, limit: Optional[int] = None) -> List[Post]:
        records = await self.documents.find(query, sort=sort, skip=skip, limit=limit)
        return [Post(record) for record in records]

    async def count(self, query: Optional[Dict[str, Any]] = None) -> int:
        return await self.documents.count(query)


@asynccontextmanager
async def open_post_store(output_dir: str):
    """Open a PostStore for ``output_dir`` and close it on exit."""
    store = PostStore(output_dir)
    await store.open()
    try:
        yield store
    finally:
        await store.close()
