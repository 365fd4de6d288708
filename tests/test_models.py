import pytest

from errors import StoreError
from models import DocumentStore, matches


DOCS = [
    {"id": "1", "type": "photo", "unix-timestamp": 100, "tags": ["cats", "red"], "tumblelog": {"name": "a"}},
    {"id": "2", "type": "text", "unix-timestamp": 300, "tags": [], "tumblelog": {"name": "b"}},
    {"id": "3", "type": "photo", "unix-timestamp": 200, "tags": ["dogs"], "reblogged-from-name": "c"},
]


def test_matches_operators():
    doc = DOCS[0]
    assert matches(doc, {})
    assert matches(doc, {"type": "photo"})
    assert matches(doc, {"tags": "cats"})
    assert matches(doc, {"tags": {"$contains": "red"}})
    assert matches(doc, {"unix-timestamp": {"$gte": 100, "$lt": 200}})
    assert matches(doc, {"tumblelog.name": "a"})
    assert matches(doc, {"reblogged-from-name": {"$exists": False}})
    assert matches(doc, {"type": {"$in": ["photo", "video"]}})
    assert matches(doc, {"type": {"$ne": "text"}})
    assert matches(doc, {"$or": [{"type": "text"}, {"tags": "cats"}]})
    assert not matches(doc, {"$and": [{"type": "photo"}, {"tags": "dogs"}]})
    assert not matches(doc, {"missing": "x"})
    assert not matches(doc, {"unix-timestamp": {"$gt": "not a number"}})


def test_matches_rejects_unknown_operator():
    with pytest.raises(ValueError):
        matches(DOCS[0], {"type": {"$regex": "ph"}})


@pytest.mark.asyncio
async def test_find_sort_skip_limit(tmp_path):
    async with DocumentStore(str(tmp_path / "posts.db")) as store:
        for doc in DOCS:
            await store.insert(doc)

        photos = await store.find({"type": "photo"}, sort="-unix-timestamp")
        assert [d["id"] for d in photos] == ["3", "1"]

        page = await store.find(sort={"unix-timestamp": 1}, skip=1, limit=1)
        assert [d["id"] for d in page] == ["3"]

        assert await store.count() == 3
        assert await store.count({"type": "photo"}) == 2
        assert await store.distinct_ids() == ["1", "2", "3"]


@pytest.mark.asyncio
async def test_insert_update_remove(tmp_path):
    async with DocumentStore(str(tmp_path / "posts.db")) as store:
        await store.insert({"id": "1", "type": "text"})

        with pytest.raises(StoreError):
            await store.insert({"id": "1", "type": "photo"})
        with pytest.raises(StoreError):
            await store.insert({"type": "photo"})

        assert await store.update("1", {"id": "1", "type": "quote"})
        assert not await store.update("missing", {"id": "missing"})
        assert (await store.find_one({"id": "1"}))["type"] == "quote"

        assert await store.remove({"type": "quote"}) == 1
        assert await store.find_one({"id": "1"}) is None


@pytest.mark.asyncio
async def test_execute_requires_running_store(tmp_path):
    store = DocumentStore(str(tmp_path / "posts.db"))
    with pytest.raises(StoreError):
        await store.find_one({"id": "1"})

    await store.start()
    try:
        with pytest.raises(StoreError):
            await store.execute("drop_everything")
    finally:
        await store.stop()
