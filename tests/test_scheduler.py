import asyncio
import json
import os
from datetime import datetime, timedelta, timezone

import pytest

from config import config
from errors import HttpStatusError
from feed_client import FeedPage
from scheduler import ScrapeScheduler
from sources import SourcesRegistry
from walker import StopReason

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeFeed:
    def __init__(self, posts_by_host, failing=(), fail_once=()):
        self.posts_by_host = posts_by_host
        self.failing = set(failing)
        self.fail_once = set(fail_once)
        self.requests = []
        self.gate = None

    async def fetch_page(self, base_url, offset=0, page_size=50, post_type=None, tag=None, filter=None):
        self.requests.append((base_url, offset))
        if self.gate is not None:
            await self.gate.wait()
        if base_url in self.failing:
            raise HttpStatusError(503, base_url)
        if base_url in self.fail_once:
            self.fail_once.discard(base_url)
            raise HttpStatusError(502, base_url)
        posts = self.posts_by_host.get(base_url, [])
        chunk = [dict(p) for p in posts[offset:offset + page_size]]
        return FeedPage(posts=chunk, start_offset=offset, total_count=len(posts), url=base_url)

    async def close(self):
        pass


def _posts(host, count):
    return [
        {"id": f"{host}-{i}", "url": f"https://{host}.tumblr.com/post/{i}", "type": "text"}
        for i in range(count)
    ]


def _registry(tmp_path, *urls, **overrides):
    registry = SourcesRegistry(str(tmp_path / "sources.json")).load()
    for url in urls:
        registry.add(url, scrape_delay=0, **overrides)
    registry.save()
    return registry


def _scheduler(registry, feed, **kwargs):
    kwargs.setdefault("page_delay", 0)
    kwargs.setdefault("clock", lambda: NOW)
    return ScrapeScheduler(registry, feed, **kwargs)


class SteppingClock:
    """Moves an hour forward on every reading, so every source is always due."""

    def __init__(self):
        self.now = NOW

    def __call__(self):
        self.now += timedelta(hours=1)
        return self.now


async def _wait_until(condition, timeout=2.0):
    for _ in range(int(timeout / 0.01)):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not met in time")


@pytest.mark.asyncio
async def test_interval_gate(tmp_path):
    registry = _registry(tmp_path, "https://a.tumblr.com", scrape_interval=600)
    scheduler = _scheduler(registry, FakeFeed({}))
    source = registry.get("https://a.tumblr.com")

    assert scheduler.is_due(source, NOW)

    source.config.last_scraped = NOW - timedelta(seconds=300)
    assert not scheduler.is_due(source, NOW)
    assert scheduler.is_due(source, NOW, force=True)
    assert scheduler.next_due(source) == NOW + timedelta(seconds=300)

    source.config.last_scraped = NOW - timedelta(seconds=600)
    assert scheduler.is_due(source, NOW)

    source.config.disabled = True
    assert not scheduler.is_due(source, NOW, force=True)
    assert scheduler.next_due(source) is None


@pytest.mark.asyncio
async def test_run_once_scrapes_due_sources_and_stamps_start_time(tmp_path):
    registry = _registry(tmp_path, "https://a.tumblr.com", "https://b.tumblr.com")
    feed = FakeFeed({
        "https://a.tumblr.com/": _posts("a", 70),
        "https://b.tumblr.com/": _posts("b", 3),
    })
    scheduler = _scheduler(registry, feed)

    results = await scheduler.run_once()
    await scheduler.stop()

    assert [r.blog_url for r in results] == ["https://a.tumblr.com", "https://b.tumblr.com"]
    assert all(r.stop_reason is StopReason.EXHAUSTED for r in results)
    assert results[0].fetched_posts_count == 70

    reloaded = SourcesRegistry(str(tmp_path / "sources.json")).load()
    assert reloaded.get("https://a.tumblr.com").config.last_scraped == NOW
    assert os.path.isfile(tmp_path / "blogs" / "a" / config.POSTS_CACHE_FILE)


@pytest.mark.asyncio
async def test_run_once_skips_recently_scraped_sources(tmp_path):
    registry = _registry(tmp_path, "https://a.tumblr.com", scrape_interval=3600)
    registry.get("https://a.tumblr.com").config.last_scraped = NOW - timedelta(minutes=5)
    feed = FakeFeed({"https://a.tumblr.com/": _posts("a", 1)})
    scheduler = _scheduler(registry, feed)

    assert await scheduler.run_once() == []
    assert feed.requests == []

    results = await scheduler.run_once(force=True)
    await scheduler.stop()
    assert len(results) == 1
    assert feed.requests == [("https://a.tumblr.com/", 0)]


@pytest.mark.asyncio
async def test_failed_source_does_not_stop_others(tmp_path):
    registry = _registry(tmp_path, "https://a.tumblr.com", "https://b.tumblr.com")
    feed = FakeFeed({"https://b.tumblr.com/": _posts("b", 2)}, failing=["https://a.tumblr.com/"])
    scheduler = _scheduler(registry, feed)

    results = await scheduler.run_once()
    await scheduler.stop()

    by_url = {r.blog_url: r for r in results}
    assert by_url["https://a.tumblr.com"].stop_reason is StopReason.ERROR
    assert isinstance(by_url["https://a.tumblr.com"].error, HttpStatusError)
    assert by_url["https://b.tumblr.com"].ok
    # A failed scrape does not move last_scraped
    assert registry.get("https://a.tumblr.com").config.last_scraped is None
    assert registry.get("https://b.tumblr.com").config.last_scraped == NOW


@pytest.mark.asyncio
async def test_export_after_scrape(tmp_path):
    registry = _registry(tmp_path, "https://a.tumblr.com")
    feed = FakeFeed({"https://a.tumblr.com/": _posts("a", 4)})
    scheduler = _scheduler(registry, feed, export_posts=True)

    await scheduler.run_once()
    await scheduler.stop()

    with open(tmp_path / "blogs" / "a" / config.EXPORTED_POSTS_FILE) as f:
        exported = json.load(f)
    assert sorted(exported) == ["a-0", "a-1", "a-2", "a-3"]


@pytest.mark.asyncio
async def test_trigger_drops_duplicates(tmp_path):
    registry = _registry(tmp_path, "https://a.tumblr.com")
    scheduler = _scheduler(registry, FakeFeed({"https://a.tumblr.com/": _posts("a", 1)}))
    source = registry.get("https://a.tumblr.com")

    assert scheduler.trigger(source)
    assert not scheduler.trigger(source)
    await scheduler.scrape_queue.join()
    await scheduler.stop()

    status = scheduler.get_status()
    assert status[0]["last_result"] == "exhausted"
    assert status[0]["queued"] is False


@pytest.mark.asyncio
async def test_scheduler_post_budget_and_source_override(tmp_path):
    registry = _registry(tmp_path, "https://a.tumblr.com", "https://b.tumblr.com")
    registry.get("https://b.tumblr.com").config.max_posts = 120
    feed = FakeFeed({
        "https://a.tumblr.com/": _posts("a", 200),
        "https://b.tumblr.com/": _posts("b", 200),
    })
    scheduler = _scheduler(registry, feed, max_posts=50)

    results = await scheduler.run_once()
    await scheduler.stop()

    by_url = {r.blog_url: r for r in results}
    assert by_url["https://a.tumblr.com"].stop_reason is StopReason.BUDGET_EXHAUSTED
    assert [o for url, o in feed.requests if url == "https://a.tumblr.com/"] == [0]
    # The source's own budget wins over the scheduler's
    assert by_url["https://b.tumblr.com"].stop_reason is StopReason.BUDGET_EXHAUSTED
    assert [o for url, o in feed.requests if url == "https://b.tumblr.com/"] == [0, 50, 100]


@pytest.mark.asyncio
async def test_last_scraped_is_the_trigger_time(tmp_path):
    registry = _registry(tmp_path, "https://a.tumblr.com")
    clock = SteppingClock()
    scheduler = _scheduler(registry, FakeFeed({"https://a.tumblr.com/": _posts("a", 2)}), clock=clock)
    source = registry.get("https://a.tumblr.com")

    assert scheduler.trigger(source)
    triggered_at = clock.now
    await scheduler.scrape_queue.join()
    await scheduler.stop()

    assert source.config.last_scraped == triggered_at
    reloaded = SourcesRegistry(str(tmp_path / "sources.json")).load()
    assert reloaded.get("https://a.tumblr.com").config.last_scraped == triggered_at


@pytest.mark.asyncio
async def test_periodic_mode_rearms_after_a_failed_run(tmp_path, monkeypatch):
    registry = _registry(tmp_path, "https://a.tumblr.com", "https://b.tumblr.com")
    feed = FakeFeed(
        {"https://a.tumblr.com/": _posts("a", 3), "https://b.tumblr.com/": _posts("b", 3)},
        fail_once=["https://a.tumblr.com/"],
    )
    scheduler = _scheduler(registry, feed, clock=SteppingClock())
    monkeypatch.setattr(scheduler, "interval_for", lambda source: 0.01)

    def runs(url):
        return sum(1 for requested, _ in feed.requests if requested == url)

    running = asyncio.ensure_future(scheduler.run_periodic())
    await _wait_until(lambda: (
        runs("https://a.tumblr.com/") >= 3
        and runs("https://b.tumblr.com/") >= 2
        and scheduler.results.get("https://a.tumblr.com") is not None
        and scheduler.results["https://a.tumblr.com"].ok
    ))
    await scheduler.stop()
    await asyncio.wait_for(running, 1)

    assert scheduler.scrape_queue.failed >= 1
    assert registry.get("https://a.tumblr.com").config.last_scraped is not None
    assert registry.get("https://b.tumblr.com").config.last_scraped is not None
    assert scheduler._tickers == {}


@pytest.mark.asyncio
async def test_stop_aborts_the_active_run(tmp_path):
    registry = _registry(tmp_path, "https://a.tumblr.com")
    feed = FakeFeed({"https://a.tumblr.com/": _posts("a", 200)})
    feed.gate = asyncio.Event()
    scheduler = _scheduler(registry, feed)

    running = asyncio.ensure_future(scheduler.run_periodic())
    await _wait_until(lambda: "https://a.tumblr.com" in scheduler._walkers and feed.requests)
    walker = scheduler._walkers["https://a.tumblr.com"]

    stopping = asyncio.ensure_future(scheduler.stop())
    await _wait_until(lambda: walker.abort_requested)
    feed.gate.set()
    await asyncio.wait_for(stopping, 1)
    await asyncio.wait_for(running, 1)

    assert scheduler.results["https://a.tumblr.com"].stop_reason is StopReason.ABORTED
    assert feed.requests == [("https://a.tumblr.com/", 0)]
    # An aborted run does not count as a scrape
    assert registry.get("https://a.tumblr.com").config.last_scraped is None
    assert scheduler._tickers == {}
