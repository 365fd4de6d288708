#!/usr/bin/env python3
"""
Pagination walker.

Drives one scrape run for one blog: fetch a page, ingest it into the post
store, then decide whether to stop or advance the offset. Decisions are taken
in a fixed order after every page:

1. abort requested           -> aborted
2. stop-if-no-new-posts and the page added nothing new -> no_new_posts
3. max_posts reached         -> budget_exhausted
4. more posts remain         -> wait the page delay, fetch the next page
5. otherwise                 -> exhausted

Counters are per run. Everything persistent lives in the PostStore.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from config import config, get_logger
from errors import BusyError, WalkerClosedError
from feed_client import FeedClient, FeedPage
from posts import PostStore, StoredPost
from telemetry import trace_span
from utils import feed_base_url, format_duration, split_tagged_url, utc_now

logger = get_logger("walker")


class StopReason(str, Enum):
    EXHAUSTED = "exhausted"
    BUDGET_EXHAUSTED = "budget_exhausted"
    NO_NEW_POSTS = "no_new_posts"
    ABORTED = "aborted"
    ERROR = "error"


class WalkerState(Enum):
    IDLE = "idle"
    FETCHING_PAGE = "fetching_page"
    INGESTING_PAGE = "ingesting_page"
    DECIDING_NEXT = "deciding_next"
    STOPPED = "stopped"


class WalkerLifecycle(Enum):
    IDLE = "idle"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


@dataclass
class ScrapeOptions:
    stop_if_no_new_posts: bool = False
    max_posts: Optional[int] = None
    page_size: int = field(default_factory=lambda: config.FEED_PAGE_SIZE)
    page_delay: float = field(default_factory=lambda: config.PAGE_DELAY)
    start_offset: int = 0
    post_type: Optional[str] = None
    tag: Optional[str] = None
    filter: Optional[str] = None


@dataclass
class ScrapeProgress:
    page_size: int
    fetched_so_far: int
    total_count: int
    new_posts_so_far: int


@dataclass
class ScrapeResult:
    blog_url: str
    stop_reason: StopReason
    fetched_posts_count: int = 0
    new_posts_count: int = 0
    pages_fetched: int = 0
    error: Optional[BaseException] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.stop_reason is not StopReason.ERROR

    @property
    def duration(self) -> float:
        if not self.started_at or not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


ProgressCallback = Callable[[ScrapeProgress], Union[Awaitable[Any], Any]]


class PaginationWalker:
    """Walks a blog feed page by page into a PostStore.

    One walker serves one store. A second run while one is active raises
    BusyError; ``destroy()`` during a run closes the walker once that run
    finishes.
    """

    def __init__(
        self,
        feed_client: FeedClient,
        post_store: PostStore,
        on_progress: Optional[ProgressCallback] = None,
        abort_event: Optional[asyncio.Event] = None,
    ):
        self.feed_client = feed_client
        self.post_store = post_store
        self.on_progress = on_progress
        self.abort_event = abort_event
        self.state = WalkerState.IDLE
        self.lifecycle = WalkerLifecycle.IDLE
        self.last_result: Optional[ScrapeResult] = None
        self._abort_requested = False
        self._closed_event = asyncio.Event()
        self.fetched_posts_count = 0
        self.new_posts_count = 0
        self.pages_fetched = 0

    def abort(self) -> None:
        """Ask the active run to stop at its next decision point."""
        if self.lifecycle is WalkerLifecycle.RUNNING or self.lifecycle is WalkerLifecycle.SHUTTING_DOWN:
            self._abort_requested = True

    @property
    def abort_requested(self) -> bool:
        return self._abort_requested or (self.abort_event is not None and self.abort_event.is_set())

    @property
    def is_running(self) -> bool:
        return self.lifecycle in (WalkerLifecycle.RUNNING, WalkerLifecycle.SHUTTING_DOWN)

    def destroy(self) -> None:
        """Close the walker, deferring until an active run has drained."""
        if self.lifecycle is WalkerLifecycle.RUNNING:
            logger.debug("Destroy requested during a run; closing when it finishes")
            self.lifecycle = WalkerLifecycle.SHUTTING_DOWN
        elif self.lifecycle is WalkerLifecycle.IDLE:
            self._close()

    def _close(self) -> None:
        self.lifecycle = WalkerLifecycle.CLOSED
        self._closed_event.set()

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    def get_stats(self) -> Dict[str, int]:
        return {
            "fetched_posts_count": self.fetched_posts_count,
            "new_posts_count": self.new_posts_count,
            "pages_fetched": self.pages_fetched,
        }

    def _begin(self) -> None:
        if self.lifecycle in (WalkerLifecycle.CLOSED, WalkerLifecycle.SHUTTING_DOWN):
            raise WalkerClosedError("Walker was destroyed")
        if self.lifecycle is WalkerLifecycle.RUNNING:
            raise BusyError("A scrape run is already active on this walker")
        # BusyError or LockConflictError from the store leave the walker idle
        self.post_store.acquire_run()
        self.lifecycle = WalkerLifecycle.RUNNING
        self._abort_requested = False
        self.fetched_posts_count = 0
        self.new_posts_count = 0
        self.pages_fetched = 0

    def _end(self) -> None:
        self.state = WalkerState.STOPPED
        self.post_store.release_run()
        if self.lifecycle is WalkerLifecycle.SHUTTING_DOWN:
            self._close()
        else:
            self.lifecycle = WalkerLifecycle.IDLE

    async def _report(self, progress: ScrapeProgress) -> None:
        if self.on_progress is None:
            return
        try:
            result = self.on_progress(progress)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    async def _pace(self, delay: float) -> None:
        """Sleep between pages; an external abort event cuts the wait short."""
        if delay <= 0:
            return
        if self.abort_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(self.abort_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _decide(self, page: FeedPage, new_on_page: int, options: ScrapeOptions) -> Optional[StopReason]:
        if self.abort_requested:
            return StopReason.ABORTED
        if options.stop_if_no_new_posts and new_on_page == 0:
            return StopReason.NO_NEW_POSTS
        if options.max_posts and self.fetched_posts_count >= options.max_posts:
            return StopReason.BUDGET_EXHAUSTED
        if page.posts and page.has_more:
            return None
        return StopReason.EXHAUSTED

    @trace_span(
        "walker.run",
        tracer_name="walker",
        attr_from_args=lambda self, blog_url, *args, **kwargs: {"walker.blog_url": blog_url},
    )
    async def run(self, blog_url: str, options: Optional[ScrapeOptions] = None) -> ScrapeResult:
        """Scrape ``blog_url`` until a stop condition is reached.

        A ``/tagged/<tag>`` suffix on the URL scrapes only posts with that tag.

        Raises:
            BusyError: Another run is active on this walker or its store.
            WalkerClosedError: The walker was destroyed.
            FetchError, StoreError: The run failed; ``last_result`` records it
                with stop reason ``error``.
        """
        options = options or ScrapeOptions()
        self._begin()

        offset = max(0, options.start_offset)
        result = ScrapeResult(blog_url=blog_url, stop_reason=StopReason.ERROR, started_at=utc_now())
        try:
            base, tag_from_url = split_tagged_url(blog_url)
            base_url = feed_base_url(base)
            tag = options.tag or tag_from_url
            logger.info(f"Scraping {blog_url}" + (f" (tag: {tag})" if tag else "") + (f" from {offset}" if offset else ""))

            while True:
                self.state = WalkerState.FETCHING_PAGE
                page = await self.feed_client.fetch_page(
                    base_url,
                    offset=offset,
                    page_size=options.page_size,
                    post_type=options.post_type,
                    tag=tag,
                    filter=options.filter,
                )
                self.pages_fetched += 1

                self.state = WalkerState.INGESTING_PAGE
                new_on_page = await self.post_store.upsert_many(page.posts)
                self.fetched_posts_count += len(page.posts)
                self.new_posts_count += new_on_page
                self.post_store.flush()

                logger.info(
                    "Fetched %d/%d posts from %s (%d new on this page)",
                    page.start_offset + len(page.posts),
                    page.total_count,
                    blog_url,
                    new_on_page,
                )
                await self._report(ScrapeProgress(
                    page_size=len(page.posts),
                    fetched_so_far=self.fetched_posts_count,
                    total_count=page.total_count,
                    new_posts_so_far=self.new_posts_count,
                ))

                self.state = WalkerState.DECIDING_NEXT
                reason = self._decide(page, new_on_page, options)
                if reason is not None:
                    result.stop_reason = reason
                    break

                offset = page.start_offset + len(page.posts)
                await self._pace(options.page_delay)
        except Exception as e:
            result.error = e
            logger.error(f"Scrape of {blog_url} failed at offset {offset}: {e}")
            raise
        finally:
            result.fetched_posts_count = self.fetched_posts_count
            result.new_posts_count = self.new_posts_count
            result.pages_fetched = self.pages_fetched
            result.finished_at = utc_now()
            self.last_result = result
            self._end()

        logger.info(
            f"Finished {blog_url}: {result.stop_reason.value}, {result.fetched_posts_count} fetched, "
            f"{result.new_posts_count} new in {format_duration(result.duration)}"
        )
        return result

    async def scrape_post(self, blog_url: str, post_id: str) -> Optional[StoredPost]:
        """Fetch one post by id and upsert it. Returns None if the feed lacks it."""
        self._begin()
        try:
            self.state = WalkerState.FETCHING_PAGE
            base, _ = split_tagged_url(blog_url)
            post = await self.feed_client.fetch_post(feed_base_url(base), post_id)
            if post is None:
                logger.warning(f"Post {post_id} not found on {blog_url}")
                return None
            self.state = WalkerState.INGESTING_PAGE
            stored = await self.post_store.upsert(post)
            self.fetched_posts_count = 1
            self.new_posts_count = 1 if stored.is_new else 0
            self.post_store.flush()
            return stored
        finally:
            self._end()
