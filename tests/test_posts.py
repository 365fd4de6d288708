import json
import os

import pytest

from config import config
from errors import BusyError, StoreError
from posts import PostStore, derive_post_id, open_post_store, strip_excluded_fields


def _post(post_id, **extra):
    post = {
        "id": post_id,
        "url": f"https://example.tumblr.com/post/{post_id}",
        "type": "photo",
        "unix-timestamp": 1700000000,
        "tags": ["cats"],
    }
    post.update(extra)
    return post


def test_derive_post_id_falls_back_to_url():
    assert derive_post_id({"id": 42}) == "42"
    assert derive_post_id({"url": "https://example.tumblr.com/post/1"}) == "https://example.tumblr.com/post/1"
    with pytest.raises(ValueError):
        derive_post_id({"type": "text"})


def test_strip_excluded_fields():
    post = _post("1", bookmarklet=0, mobile=0, **{
        "feed-item": "",
        "like-button": "<a>like</a>",
        "reblogged_from_avatar_url_64": "x",
        "video-player-500": "<embed>",
    })
    assert strip_excluded_fields(post) == _post("1")


@pytest.mark.asyncio
async def test_upsert_is_idempotent(tmp_path):
    async with open_post_store(str(tmp_path)) as store:
        first = await store.upsert(_post("1"))
        second = await store.upsert(_post("1", tags=["cats", "dogs"]))

        assert first.is_new
        assert not second.is_new
        assert await store.count() == 1
        assert second.entry.added_at == first.entry.added_at
        assert second.entry.last_update >= first.entry.last_update

        stored = await store.find_one("1")
        assert stored.tags == ["cats", "dogs"]

    with open(os.path.join(tmp_path, config.POSTS_CACHE_FILE)) as f:
        cache = json.load(f)
    assert list(cache) == ["1"]
    assert cache["1"]["type"] == "photo"


@pytest.mark.asyncio
async def test_upsert_many_counts_new_posts_and_notifies(tmp_path):
    seen = []

    async with open_post_store(str(tmp_path)) as store:
        store.on_new_post(lambda post: seen.append(post.id))
        assert await store.upsert_many([_post("1"), _post("2")]) == 2
        assert await store.upsert_many([_post("2"), _post("3")]) == 1

    assert seen == ["1", "2", "3"]


@pytest.mark.asyncio
async def test_listener_failure_does_not_break_ingest(tmp_path):
    def broken(post):
        raise RuntimeError("listener exploded")

    async with open_post_store(str(tmp_path)) as store:
        store.on_new_post(broken)
        stored = await store.upsert(_post("1"))
        assert stored.is_new
        assert await store.count() == 1


@pytest.mark.asyncio
async def test_lost_cache_does_not_duplicate_records(tmp_path):
    async with open_post_store(str(tmp_path)) as store:
        await store.upsert(_post("1"))

    os.remove(os.path.join(tmp_path, config.POSTS_CACHE_FILE))

    async with open_post_store(str(tmp_path)) as store:
        stored = await store.upsert(_post("1", tags=["updated"]))
        # Without a cache the post counts as new again, but the record is updated in place
        assert stored.is_new
        assert await store.count() == 1
        assert (await store.find_one("1")).tags == ["updated"]


@pytest.mark.asyncio
async def test_corrupt_cache_fails_to_open(tmp_path):
    with open(os.path.join(tmp_path, config.POSTS_CACHE_FILE), "w") as f:
        f.write("{truncated")

    store = PostStore(str(tmp_path))
    with pytest.raises(StoreError):
        await store.open()


@pytest.mark.asyncio
async def test_only_one_run_per_store(tmp_path):
    async with open_post_store(str(tmp_path)) as store:
        store.acquire_run()
        try:
            with pytest.raises(BusyError):
                store.acquire_run()
        finally:
            store.release_run()
        assert not store.run_active


@pytest.mark.asyncio
async def test_post_view_properties(tmp_path):
    async with open_post_store(str(tmp_path)) as store:
        await store.upsert(_post(
            "9",
            tumblelog={"name": "example"},
            **{"reblogged-from-name": "friend", "reblogged-root-name": "origin"},
        ))
        post = await store.find_one("9")

    assert post.source_blog == "example"
    assert post.is_reblog
    assert post.reblogged_root == "origin"
    assert post.created_at.year == 2023
