#!/usr/bin/env python3
"""
Tumblr Archiver command line.

Modes:
    scrape    Scrape the given blog URLs once, or every registered source when
              no URL is given (``--force`` ignores the scrape interval)
    start     Scrape registered sources periodically until interrupted
    add       Add sources (or update their settings)
    remove    Remove sources
    list      List sources
    export    Export posts of the given data directories (default: all sources)
    download  Download photos of the given data directories (default: all sources)
    status    Show per-source schedule status

Exit codes: 0 on success, 1 on setup errors (lock held, missing input file)
or when a one-shot scrape fails.
"""

import argparse
import asyncio
import os
import signal
import sys
from typing import List, Optional

from config import config, get_logger
from downloader import MediaDownloader
from errors import ConfigError, LockConflictError
from exporter import export_posts
from feed_client import FeedClient
from lockfile import DataDirLock
from posts import open_post_store
from scheduler import ScrapeScheduler
from sources import SORT_FIELDS, SourcesRegistry, default_output_location
from telemetry import init_telemetry, trace_span
from utils import format_duration, normalize_source_url, to_iso, utc_now, validate_url
from walker import PaginationWalker, ScrapeOptions

# Module-specific logger
logger = get_logger("main")
init_telemetry("tumblr-archiver")


class TumblrArchiver:
    """Runs the archiver's command line modes."""

    def __init__(self, sources_file: Optional[str] = None) -> None:
        self.sources_file = sources_file or os.path.join(config.DATA_DIR, config.SOURCES_FILE)

    def _registry(self, must_exist: bool = False) -> SourcesRegistry:
        return SourcesRegistry(self.sources_file).load(must_exist=must_exist)

    @trace_span("cli.scrape_urls", tracer_name="cli")
    async def scrape_urls(self, urls: List[str], output_dir: Optional[str], options: ScrapeOptions,
                          post_id: Optional[str] = None) -> bool:
        """Scrape blog URLs directly, without the registry."""
        ok = True
        async with FeedClient() as client:
            for url in urls:
                blog_dir = output_dir or os.path.join(config.DATA_DIR, default_output_location(url))
                logger.info(f"📡 Scraping {url} into {blog_dir}")
                try:
                    async with open_post_store(blog_dir) as store:
                        walker = PaginationWalker(client, store)
                        if post_id:
                            stored = await walker.scrape_post(url, post_id)
                            if stored is None:
                                ok = False
                            continue
                        result = await walker.run(url, options)
                        logger.info(
                            f"✅ {url}: {result.stop_reason.value}, {result.fetched_posts_count} fetched, "
                            f"{result.new_posts_count} new"
                        )
                except LockConflictError:
                    raise
                except Exception as e:
                    logger.error(f"❌ Scrape of {url} failed: {e}")
                    ok = False
        return ok

    async def scrape_sources(self, force: bool, export: bool, download: bool,
                             scrape_interval: Optional[int], max_posts: Optional[int] = None,
                             stop_if_no_new_posts: bool = False) -> bool:
        """Scrape every due source once."""
        registry = self._registry(must_exist=True)
        scheduler = ScrapeScheduler(
            registry,
            export_posts=export,
            download_posts=download,
            scrape_interval=scrape_interval,
            max_posts=max_posts,
            stop_if_no_new_posts=stop_if_no_new_posts,
        )
        try:
            results = await scheduler.run_once(force=force)
        finally:
            await scheduler.stop()
        return all(result.ok for result in results)

    async def start(self, export: bool, download: bool, scrape_interval: Optional[int],
                    max_posts: Optional[int] = None, stop_if_no_new_posts: bool = False) -> None:
        """Periodic mode; returns after SIGINT/SIGTERM once work has drained."""
        registry = self._registry(must_exist=True)
        scheduler = ScrapeScheduler(
            registry,
            export_posts=export,
            download_posts=download,
            scrape_interval=scrape_interval,
            max_posts=max_posts,
            stop_if_no_new_posts=stop_if_no_new_posts,
        )
        loop = asyncio.get_running_loop()
        stop_task: Optional[asyncio.Future] = None

        def _request_stop() -> None:
            nonlocal stop_task
            if stop_task is None:
                logger.info("👋 Shutdown requested")
                stop_task = asyncio.ensure_future(scheduler.stop())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_stop)
        try:
            await scheduler.run_periodic()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            if stop_task is not None:
                await stop_task
            else:
                await scheduler.stop()

    def add_sources(self, urls: List[str], scrape_interval: Optional[int], download_posts: bool) -> int:
        registry = self._registry()
        added = 0
        for url in urls:
            if not validate_url(url):
                logger.warning(f"Skipping invalid URL: {url}")
                continue
            source, created = registry.add(
                url,
                scrape_interval=scrape_interval,
                download_posts=True if download_posts else None,
            )
            print(f"{'new source' if created else 'already added'}: {source.url}")
            self._print_config(source.config.to_dict())
            added += int(created)
        registry.save()
        return added

    def remove_sources(self, urls: List[str]) -> int:
        registry = self._registry(must_exist=True)
        removed = 0
        for url in urls:
            if registry.remove(url):
                print(f"removed: {normalize_source_url(url)}")
                removed += 1
            else:
                print(f"not found: {normalize_source_url(url)}")
        registry.save()
        return removed

    def list_sources(self, sort: Optional[str], order: Optional[str]) -> None:
        registry = self._registry()
        sources = registry.sources(sort=sort, order=order)
        print(f"\n📚 Sources ({len(sources)})")
        for source in sources:
            flag = " (disabled)" if source.config.disabled else ""
            print(f"   {source.url}{flag}")
            self._print_config(source.config.to_dict(), indent="      ")

    def _print_config(self, data: dict, indent: str = "   ") -> None:
        for key, value in data.items():
            print(f"{indent}{key + ':':<17} {value}")

    def _data_dirs(self, data_dirs: List[str]) -> List[str]:
        if data_dirs:
            return data_dirs
        registry = self._registry(must_exist=True)
        return [registry.output_dir(source) for source in registry.active_sources()]

    async def export(self, data_dirs: List[str]) -> bool:
        ok = True
        for data_dir in self._data_dirs(data_dirs):
            if not os.path.isfile(os.path.join(data_dir, config.POSTS_CACHE_FILE)):
                logger.warning(f"No posts cache in {data_dir}, skipping")
                continue
            try:
                with DataDirLock(data_dir):
                    async with open_post_store(data_dir) as store:
                        await export_posts(store, data_dir)
            except LockConflictError:
                raise
            except Exception as e:
                logger.error(f"❌ Export of {data_dir} failed: {e}")
                ok = False
        return ok

    async def download(self, data_dirs: List[str]) -> bool:
        ok = True
        for data_dir in self._data_dirs(data_dirs):
            downloader = MediaDownloader(data_dir)
            try:
                with DataDirLock(data_dir):
                    stats = await downloader.download_exported()
                ok = ok and stats.posts_failed == 0
            except LockConflictError:
                raise
            except Exception as e:
                logger.error(f"❌ Download for {data_dir} failed: {e}")
                ok = False
            finally:
                await downloader.close()
        return ok

    def print_status(self) -> None:
        registry = self._registry()
        scheduler = ScrapeScheduler(registry, feed_client=FeedClient())
        now = utc_now()
        print(f"\n📊 Tumblr Archiver Status")
        print(f"⏰ {to_iso(now)}")
        print(f"📁 Sources file: {self.sources_file}")
        for row in scheduler.get_status():
            state = "disabled" if row["disabled"] else ("due" if row["due_now"] else "waiting")
            print(f"\n   {row['url']} [{state}]")
            print(f"      interval:     {format_duration(row['scrape_interval'])}")
            print(f"      last scraped: {row['last_scraped'] or 'never'}")
            if row["next_due"] and not row["disabled"]:
                print(f"      next due:     {row['next_due']}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Tumblr Archiver')
    parser.add_argument('mode', choices=['scrape', 'start', 'add', 'remove', 'list', 'export', 'download', 'status'],
                        help='Operation mode')
    parser.add_argument('targets', nargs='*',
                        help='Blog URLs (scrape/add/remove) or data directories (export/download)')
    parser.add_argument('--sources-file', type=str,
                        help='Path to sources.json')
    parser.add_argument('-o', '--output-dir', type=str,
                        help='Output directory when scraping URLs directly')
    parser.add_argument('-S', '--stop-if-no-new-posts', action='store_true',
                        help='Stop after the first page without new posts')
    parser.add_argument('-M', '--max-posts', type=int,
                        help='Stop after fetching this many posts')
    parser.add_argument('--start', type=int, default=0,
                        help='Start offset when scraping URLs directly')
    parser.add_argument('--type', dest='post_type', type=str,
                        help='Only scrape posts of this type')
    parser.add_argument('--post-id', type=str,
                        help='Scrape a single post by id')
    parser.add_argument('--force', action='store_true',
                        help='Ignore scrape intervals')
    parser.add_argument('--scrape-interval', type=int,
                        help='Scrape interval in seconds')
    parser.add_argument('--export-posts', action='store_true',
                        help='Export posts after each scrape')
    parser.add_argument('--download-posts', action='store_true',
                        help='Download photos after each scrape (add: enable downloads for the source)')
    parser.add_argument('--sort', choices=SORT_FIELDS,
                        help='Sort field for list')
    parser.add_argument('--order', choices=['asc', 'desc'],
                        help='Sort order for list')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)
    archiver = TumblrArchiver(args.sources_file)

    try:
        if args.mode == 'scrape':
            if args.targets:
                options = ScrapeOptions(
                    stop_if_no_new_posts=args.stop_if_no_new_posts,
                    max_posts=args.max_posts,
                    start_offset=args.start,
                    post_type=args.post_type,
                )
                success = asyncio.run(archiver.scrape_urls(args.targets, args.output_dir, options, args.post_id))
            else:
                success = asyncio.run(archiver.scrape_sources(
                    args.force, args.export_posts, args.download_posts, args.scrape_interval,
                    args.max_posts, args.stop_if_no_new_posts))
            return 0 if success else 1

        elif args.mode == 'start':
            asyncio.run(archiver.start(args.export_posts, args.download_posts, args.scrape_interval,
                                       args.max_posts, args.stop_if_no_new_posts))

        elif args.mode == 'add':
            if not args.targets:
                logger.error("No source URLs given")
                return 1
            archiver.add_sources(args.targets, args.scrape_interval, args.download_posts)

        elif args.mode == 'remove':
            if not args.targets:
                logger.error("No source URLs given")
                return 1
            archiver.remove_sources(args.targets)

        elif args.mode == 'list':
            archiver.list_sources(args.sort, args.order)

        elif args.mode == 'export':
            return 0 if asyncio.run(archiver.export(args.targets)) else 1

        elif args.mode == 'download':
            return 0 if asyncio.run(archiver.download(args.targets)) else 1

        elif args.mode == 'status':
            archiver.print_status()

    except (ConfigError, LockConflictError) as e:
        logger.error(f"❌ {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("👋 Archiver shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
