import asyncio

import pytest

from errors import BusyError, HttpStatusError, WalkerClosedError
from feed_client import FeedPage
from posts import open_post_store
from walker import PaginationWalker, ScrapeOptions, StopReason, WalkerLifecycle


class FakeFeed:
    """Serves a fixed list of posts the way the remote feed pages them."""

    def __init__(self, total, fail_at_offset=None):
        self.posts = [
            {"id": str(1000 - i), "url": f"https://example.tumblr.com/post/{1000 - i}", "type": "text"}
            for i in range(total)
        ]
        self.offsets = []
        self.calls = []
        self.fail_at_offset = fail_at_offset
        self.gate = None

    async def fetch_page(self, base_url, offset=0, page_size=50, post_type=None, tag=None, filter=None):
        self.offsets.append(offset)
        self.calls.append({"base_url": base_url, "tag": tag, "post_type": post_type})
        if self.gate is not None:
            await self.gate.wait()
        if offset == self.fail_at_offset:
            raise HttpStatusError(500, base_url)
        chunk = [dict(p) for p in self.posts[offset:offset + page_size]]
        return FeedPage(posts=chunk, start_offset=offset, total_count=len(self.posts), url=base_url)

    async def fetch_post(self, base_url, post_id, filter=None):
        for post in self.posts:
            if post["id"] == str(post_id):
                return dict(post)
        return None


def _options(**kwargs):
    kwargs.setdefault("page_size", 50)
    kwargs.setdefault("page_delay", 0)
    return ScrapeOptions(**kwargs)


@pytest.mark.asyncio
async def test_walks_until_exhausted(tmp_path):
    feed = FakeFeed(total=120)
    progress = []

    async with open_post_store(str(tmp_path)) as store:
        walker = PaginationWalker(feed, store, on_progress=progress.append)
        result = await walker.run("https://example.tumblr.com", _options())

        assert feed.offsets == [0, 50, 100]
        assert result.stop_reason is StopReason.EXHAUSTED
        assert result.fetched_posts_count == 120
        assert result.new_posts_count == 120
        assert result.pages_fetched == 3
        assert await store.count() == 120

    assert [p.fetched_so_far for p in progress] == [50, 100, 120]
    assert progress[-1].total_count == 120
    assert feed.calls[0]["base_url"] == "https://example.tumblr.com/"


@pytest.mark.asyncio
async def test_budget_stops_after_whole_page(tmp_path):
    feed = FakeFeed(total=120)

    async with open_post_store(str(tmp_path)) as store:
        walker = PaginationWalker(feed, store)
        result = await walker.run("https://example.tumblr.com", _options(max_posts=60))

    assert feed.offsets == [0, 50]
    assert result.stop_reason is StopReason.BUDGET_EXHAUSTED
    assert result.fetched_posts_count == 100


@pytest.mark.asyncio
async def test_stops_on_first_page_without_new_posts(tmp_path):
    feed = FakeFeed(total=150)

    async with open_post_store(str(tmp_path)) as store:
        # Pre-populate the first 100 posts as already archived
        await store.upsert_many(feed.posts[50:100])

        walker = PaginationWalker(feed, store)
        result = await walker.run("https://example.tumblr.com", _options(stop_if_no_new_posts=True))

    assert feed.offsets == [0, 50]
    assert result.stop_reason is StopReason.NO_NEW_POSTS
    assert result.new_posts_count == 50


@pytest.mark.asyncio
async def test_second_run_only_finds_new_posts(tmp_path):
    feed = FakeFeed(total=60)

    async with open_post_store(str(tmp_path)) as store:
        walker = PaginationWalker(feed, store)
        await walker.run("https://example.tumblr.com", _options())

        feed.posts.insert(0, {"id": "5000", "url": "https://example.tumblr.com/post/5000", "type": "text"})
        feed.offsets.clear()
        result = await walker.run("https://example.tumblr.com", _options(stop_if_no_new_posts=True))

        assert result.new_posts_count == 1
        assert await store.count() == 61


@pytest.mark.asyncio
async def test_empty_blog_is_exhausted(tmp_path):
    feed = FakeFeed(total=0)

    async with open_post_store(str(tmp_path)) as store:
        result = await PaginationWalker(feed, store).run("https://example.tumblr.com", _options())

    assert result.stop_reason is StopReason.EXHAUSTED
    assert feed.offsets == [0]


@pytest.mark.asyncio
async def test_tagged_url_passes_tag(tmp_path):
    feed = FakeFeed(total=3)

    async with open_post_store(str(tmp_path)) as store:
        await PaginationWalker(feed, store).run("https://example.tumblr.com/tagged/cats", _options())

    assert feed.calls[0]["tag"] == "cats"
    assert feed.calls[0]["base_url"] == "https://example.tumblr.com/"


@pytest.mark.asyncio
async def test_fetch_error_is_recorded_and_raised(tmp_path):
    feed = FakeFeed(total=120, fail_at_offset=50)

    async with open_post_store(str(tmp_path)) as store:
        walker = PaginationWalker(feed, store)
        with pytest.raises(HttpStatusError):
            await walker.run("https://example.tumblr.com", _options())

        assert walker.last_result.stop_reason is StopReason.ERROR
        assert walker.last_result.fetched_posts_count == 50
        assert not store.run_active
        # Posts from the page before the failure are kept
        assert await store.count() == 50


@pytest.mark.asyncio
async def test_abort_stops_at_next_decision(tmp_path):
    feed = FakeFeed(total=500)

    async with open_post_store(str(tmp_path)) as store:
        walker = PaginationWalker(feed, store)

        def on_progress(progress):
            if progress.fetched_so_far >= 100:
                walker.abort()

        walker.on_progress = on_progress
        result = await walker.run("https://example.tumblr.com", _options())

    assert result.stop_reason is StopReason.ABORTED
    assert feed.offsets == [0, 50]


@pytest.mark.asyncio
async def test_concurrent_run_is_rejected_and_destroy_is_deferred(tmp_path):
    feed = FakeFeed(total=10)
    feed.gate = asyncio.Event()

    async with open_post_store(str(tmp_path)) as store:
        walker = PaginationWalker(feed, store)
        running = asyncio.ensure_future(walker.run("https://example.tumblr.com", _options()))
        await asyncio.sleep(0)
        assert walker.is_running

        with pytest.raises(BusyError):
            await walker.run("https://example.tumblr.com", _options())

        walker.destroy()
        assert walker.lifecycle is WalkerLifecycle.SHUTTING_DOWN

        feed.gate.set()
        result = await running
        await walker.wait_closed()

        assert result.stop_reason is StopReason.EXHAUSTED
        assert walker.lifecycle is WalkerLifecycle.CLOSED
        with pytest.raises(WalkerClosedError):
            await walker.run("https://example.tumblr.com", _options())


@pytest.mark.asyncio
async def test_scrape_single_post(tmp_path):
    feed = FakeFeed(total=5)

    async with open_post_store(str(tmp_path)) as store:
        walker = PaginationWalker(feed, store)
        stored = await walker.scrape_post("https://example.tumblr.com", "998")
        missing = await walker.scrape_post("https://example.tumblr.com", "1")

        assert stored.is_new
        assert stored.post.id == "998"
        assert missing is None
        assert await store.count() == 1


@pytest.mark.asyncio
async def test_bad_blog_url_releases_walker_and_store(tmp_path):
    feed = FakeFeed(total=5)

    async with open_post_store(str(tmp_path)) as store:
        walker = PaginationWalker(feed, store)
        with pytest.raises(ValueError):
            await walker.run("http://[::1", _options())

        assert not walker.is_running
        assert not store.run_active
        assert walker.last_result.stop_reason is StopReason.ERROR
        assert feed.offsets == []

        result = await walker.run("https://example.tumblr.com", _options())
        assert result.fetched_posts_count == 5
