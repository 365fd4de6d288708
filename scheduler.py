#!/usr/bin/env python3
"""
Scrape scheduler.

Runs scrapes for the sources in the registry, one at a time, through a
global DedupJobQueue keyed by source URL, so a source is never scraped twice
concurrently and a trigger for a source that is already queued is dropped.
Downloads go through a second queue so they never hold up scraping.

Each scrape job:
- re-checks the interval gate (``now - last_scraped < scrape_interval`` skips)
- walks the feed into the source's post store
- on success stamps ``last_scraped`` and saves the registry
- exports posts (unless the source sets ``no_export``) when exporting or
  downloading is enabled, then queues a download if both the source and the
  scheduler allow it
- waits the source's ``scrape_delay`` before the queue moves on

Periodic mode re-arms every source on its own fixed interval; errors are
logged and never stop the scheduler.
"""

import asyncio
from datetime import datetime, timedelta
from time import time
from typing import Any, Callable, Dict, List, Optional

from config import config, get_logger
from downloader import MediaDownloader
from errors import ConfigError
from exporter import export_posts
from feed_client import FeedClient
from job_queue import DedupJobQueue
from posts import open_post_store
from sources import Source, SourcesRegistry
from telemetry import trace_span
from utils import format_duration, to_iso, utc_now
from walker import PaginationWalker, ScrapeOptions, ScrapeResult, StopReason

# Module-specific logger
logger = get_logger("scheduler")


class ScrapeScheduler:
    """Schedules scrape, export and download work for registered sources."""

    def __init__(
        self,
        registry: SourcesRegistry,
        feed_client: Optional[FeedClient] = None,
        *,
        export_posts: bool = False,
        download_posts: bool = False,
        scrape_interval: Optional[int] = None,
        page_delay: Optional[float] = None,
        max_posts: Optional[int] = None,
        stop_if_no_new_posts: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize scheduler.

        Args:
            registry: Loaded sources registry; saved after every successful scrape
            feed_client: Shared feed client (created on demand when omitted)
            export_posts: Export posts after each successful scrape
            download_posts: Download photos for sources that enable it
            scrape_interval: Interval for sources without their own, in seconds
            page_delay: Delay between feed pages, in seconds
            max_posts: Post budget for sources without their own
            stop_if_no_new_posts: Stop every source at its first page without new posts
            clock: Returns the current UTC time
        """
        self.registry = registry
        self.feed_client = feed_client or FeedClient()
        self._owns_client = feed_client is None
        self.export_enabled = export_posts
        self.download_enabled = download_posts
        self.default_interval = scrape_interval or config.DEFAULT_SCRAPE_INTERVAL
        self.page_delay = config.PAGE_DELAY if page_delay is None else page_delay
        self.max_posts = max_posts
        self.stop_if_no_new_posts = stop_if_no_new_posts
        self.clock = clock
        self.scrape_queue = DedupJobQueue("scrape")
        self.download_queue = DedupJobQueue("download")
        self.results: Dict[str, ScrapeResult] = {}
        self._walkers: Dict[str, PaginationWalker] = {}
        self._tickers: Dict[str, asyncio.Task] = {}
        self._stopping = asyncio.Event()

    # Gate

    def interval_for(self, source: Source) -> int:
        return source.config.effective_scrape_interval(self.default_interval)

    def is_due(self, source: Source, now: Optional[datetime] = None, force: bool = False) -> bool:
        """Whether ``source`` should be scraped at ``now``."""
        if source.config.disabled:
            return False
        if force:
            return True
        last_scraped = source.config.last_scraped
        if last_scraped is None:
            return True
        now = now or self.clock()
        return (now - last_scraped).total_seconds() >= self.interval_for(source)

    def next_due(self, source: Source) -> Optional[datetime]:
        if source.config.disabled:
            return None
        if source.config.last_scraped is None:
            return self.clock()
        return source.config.last_scraped + timedelta(seconds=self.interval_for(source))

    # Queueing

    def trigger(self, source: Source, force: bool = False) -> bool:
        """Queue a scrape of ``source``. Returns False if one is already queued or running.

        The interval gate is checked when the job runs, not here. A successful
        run stamps ``last_scraped`` with the time of this trigger, so time spent
        waiting in the queue does not push the next tick past its interval.
        """
        return self.scrape_queue.push(
            source.url,
            {"source": source, "force": force, "triggered_at": self.clock()},
            self._scrape_job,
            on_done=lambda error, url=source.url: self._on_scrape_done(url, error),
        )

    def _on_scrape_done(self, url: str, error: Optional[BaseException]) -> None:
        if error is not None:
            logger.error(f"❌ Scrape of {url} failed: {error}")
        logger.debug(f"Scrape queue: {self.scrape_queue.job_count()}")

    async def _delay(self, seconds: float) -> None:
        if seconds <= 0 or self._stopping.is_set():
            return
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _scrape_job(self, payload: Dict[str, Any]) -> None:
        source: Source = payload["source"]
        if self._stopping.is_set():
            return
        triggered_at = payload.get("triggered_at") or self.clock()
        if not self.is_due(source, triggered_at, payload.get("force", False)):
            logger.debug(f"Skipping {source.url}: scraped at {to_iso(source.config.last_scraped)}")
            return

        await self.scrape_source(source, triggered_at)
        await self._delay(source.config.effective_scrape_delay())

    @trace_span(
        "scheduler.scrape_source",
        tracer_name="scheduler",
        attr_from_args=lambda self, source, *args, **kwargs: {"source.url": source.url},
    )
    async def scrape_source(self, source: Source, started_at: Optional[datetime] = None) -> ScrapeResult:
        """Scrape one source now, then run its export and queue its download.

        ``last_scraped`` is set to ``started_at`` (the trigger time when run
        from the queue) unless the run was aborted. A source's own
        ``max_posts`` wins over the scheduler's.
        """
        started_at = started_at or self.clock()
        output_dir = self.registry.output_dir(source)
        options = ScrapeOptions(
            stop_if_no_new_posts=source.config.stop_if_no_new_posts or self.stop_if_no_new_posts,
            max_posts=source.config.max_posts or self.max_posts,
            page_delay=self.page_delay,
        )

        logger.info(f"🔄 Scraping source {source.url} into {output_dir}")
        walker: Optional[PaginationWalker] = None
        try:
            async with open_post_store(output_dir) as store:
                walker = PaginationWalker(self.feed_client, store, abort_event=self._stopping)
                self._walkers[source.url] = walker
                try:
                    result = await walker.run(source.url, options)
                finally:
                    self._walkers.pop(source.url, None)

                self.results[source.url] = result
                if result.stop_reason is StopReason.ABORTED:
                    logger.info(f"Scrape of {source.url} aborted; last_scraped left unchanged")
                    return result
                source.config.last_scraped = started_at
                self.registry.save()

                if self._should_export(source):
                    try:
                        await export_posts(store, output_dir)
                    except Exception as e:
                        logger.error(f"Export failed for {source.url}: {e}")
                        return result
        except Exception as e:
            failed = walker.last_result if walker is not None else None
            if failed is None or failed.error is not e:
                failed = ScrapeResult(
                    blog_url=source.url,
                    stop_reason=StopReason.ERROR,
                    error=e,
                    started_at=started_at,
                    finished_at=self.clock(),
                )
            self.results[source.url] = failed
            raise

        if self._should_download(source):
            self.queue_download(source)
        return result

    def _should_export(self, source: Source) -> bool:
        return not source.config.no_export and (self.export_enabled or self.download_enabled)

    def _should_download(self, source: Source) -> bool:
        return self._should_export(source) and source.config.download_posts and self.download_enabled

    def queue_download(self, source: Source) -> bool:
        output_dir = self.registry.output_dir(source)

        async def _download(_payload) -> None:
            logger.info(f"📥 Downloading posts for {source.url}")
            downloader = MediaDownloader(output_dir)
            try:
                await downloader.download_exported()
            finally:
                await downloader.close()
            await self._delay(config.DOWNLOAD_DELAY)

        def _done(error: Optional[BaseException]) -> None:
            if error is not None:
                logger.error(f"Download failed for {source.url}: {error}")
            logger.debug(f"Download queue: {self.download_queue.job_count()}")

        return self.download_queue.push(source.url, {"output_dir": output_dir}, _download, on_done=_done)

    # Modes

    async def run_once(self, force: bool = False) -> List[ScrapeResult]:
        """Scrape every active source that is due and wait for all work to finish.

        Returns the results of the sources actually scraped; failed runs carry
        stop reason ``error``. Nothing is raised for individual failures.
        """
        sources = self.registry.active_sources()
        if not sources:
            logger.warning("No active sources to scrape")
            return []

        started = time()
        triggered = []
        for source in sources:
            self.results.pop(source.url, None)
            if self.trigger(source, force=force):
                triggered.append(source)

        await self.scrape_queue.join()
        await self.download_queue.join()

        results = [self.results[s.url] for s in triggered if s.url in self.results]
        failed = sum(1 for r in results if not r.ok)
        logger.info(
            f"✅ Scraped {len(results)} of {len(sources)} sources ({failed} failed) "
            f"in {format_duration(time() - started)}"
        )
        return results

    async def _ticker(self, source: Source) -> None:
        interval = self.interval_for(source)
        while not self._stopping.is_set():
            try:
                self.trigger(source)
            except Exception as e:
                logger.error(f"Could not schedule {source.url}: {e}")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    @trace_span("scheduler.main_loop", tracer_name="scheduler")
    async def run_periodic(self) -> None:
        """Re-arm every active source on its own interval until ``stop()``."""
        sources = self.registry.active_sources()
        if not sources:
            raise ConfigError("No active sources to schedule")

        logger.info(f"🚀 Scheduling {len(sources)} sources")
        for source in sources:
            logger.info(f"  {source.url} every {format_duration(self.interval_for(source))}")
            self._tickers[source.url] = asyncio.create_task(self._ticker(source))

        await self._stopping.wait()

    async def stop(self) -> None:
        """Stop tickers, abort active runs at their next page and save the registry."""
        if self._stopping.is_set() and not self._tickers:
            return
        logger.info("📶 Scheduler stopping")
        self._stopping.set()
        for walker in list(self._walkers.values()):
            walker.abort()

        tickers = list(self._tickers.values())
        self._tickers.clear()
        for task in tickers:
            task.cancel()
        await asyncio.gather(*tickers, return_exceptions=True)

        await self.scrape_queue.close(cancel_pending=True)
        await self.download_queue.close(cancel_pending=True)
        if self._owns_client:
            await self.feed_client.close()
        self.registry.save()

    def get_status(self) -> List[Dict[str, Any]]:
        """Per-source status rows for display."""
        rows = []
        for source in self.registry.sources():
            next_due = self.next_due(source)
            result = self.results.get(source.url)
            rows.append({
                "url": source.url,
                "disabled": source.config.disabled,
                "scrape_interval": self.interval_for(source),
                "last_scraped": to_iso(source.config.last_scraped),
                "next_due": to_iso(next_due),
                "due_now": self.is_due(source),
                "queued": self.scrape_queue.is_busy(source.url),
                "last_result": result.stop_reason.value if result else None,
            })
        return rows
