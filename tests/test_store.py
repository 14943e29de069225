"""
Tests for the in-memory store and record locks.
"""
import asyncio

import pytest

from compono.errors import LockError, LockTimeoutError, NotFoundError, StoreError
from compono.store import MemoryStore, RecordLock, matches


# =============================================================================
# Query Matching
# =============================================================================


class TestMatches:
    """Tests for query predicate evaluation."""

    ROW = {"id": "a", "state": "ready", "count": 3, "labels": ["x=1", "y=2"], "domain": None}

    @pytest.mark.parametrize(
        "query",
        [
            None,
            {},
            {"state": "ready"},
            {"state": {"$eq": "ready"}},
            {"state": {"$ne": "init"}},
            {"state": {"$in": ["init", "ready"]}},
            {"state": {"$nin": ["destroy"]}},
            {"count": {"$gt": 2, "$lte": 3}},
            {"count": {"$gte": 3, "$lt": 4}},
            {"labels": {"$any": ["x=1", "z=9"]}},
            {"labels": {"$all": ["x=1", "y=2"]}},
            {"missing": {"$nin": ["a"]}},
        ],
    )
    def test_matching_queries(self, query):
        assert matches(self.ROW, query)

    @pytest.mark.parametrize(
        "query",
        [
            {"state": "init"},
            {"missing": "x"},
            {"count": {"$gt": 3}},
            {"labels": {"$any": ["z=9"]}},
            {"labels": {"$all": ["x=1", "z=9"]}},
            {"domain": {"$gte": 1}},
            {"state": {"$in": []}},
        ],
    )
    def test_non_matching_queries(self, query):
        assert not matches(self.ROW, query)

    def test_unknown_operator(self):
        with pytest.raises(StoreError):
            matches(self.ROW, {"count": {"$regex": "3"}})


# =============================================================================
# MemoryStore
# =============================================================================


class TestMemoryStore:
    """Tests for MemoryStore operations."""

    @pytest.mark.asyncio
    async def test_insert_and_search(self):
        store = MemoryStore()
        await store.insert("t", {"id": "1", "v": 1})
        await store.insert("t", {"id": "2", "v": 2})

        assert [r["id"] for r in await store.search("t")] == ["1", "2"]
        assert [r["id"] for r in await store.search("t", {"v": 2})] == ["2"]
        assert await store.search("other") == []

    @pytest.mark.asyncio
    async def test_insert_requires_unique_id(self):
        store = MemoryStore()
        await store.insert("t", {"id": "1"})
        with pytest.raises(StoreError, match="Duplicate"):
            await store.insert("t", {"id": "1"})
        with pytest.raises(StoreError, match="no id"):
            await store.insert("t", {"v": 1})

    @pytest.mark.asyncio
    async def test_rows_are_copies(self):
        store = MemoryStore()
        row = {"id": "1", "members": []}
        await store.insert("t", row)
        row["members"].append("leak")

        found = (await store.search("t"))[0]
        found["members"].append("leak")

        assert (await store.search("t"))[0]["members"] == []

    @pytest.mark.asyncio
    async def test_order_by_and_limit(self):
        store = MemoryStore()
        for i, last in enumerate([5, 1, 3]):
            await store.insert("t", {"id": str(i), "last": last})

        ascending = await store.search("t", order_by="+last")
        descending = await store.search("t", order_by="-last", limit=2)

        assert [r["last"] for r in ascending] == [1, 3, 5]
        assert [r["last"] for r in descending] == [5, 3]

    @pytest.mark.asyncio
    async def test_update_and_delete(self):
        store = MemoryStore()
        await store.insert("t", {"id": "1", "state": "init"})
        await store.insert("t", {"id": "2", "state": "init"})

        assert await store.update("t", {"id": "1"}, {"state": "ready"}) == 1
        assert await store.delete("t", {"state": "init"}) == 1
        assert await store.search("t") == [{"id": "1", "state": "ready"}]


class TestLocking:
    """Tests for lock tokens."""

    @pytest.mark.asyncio
    async def test_lock_excludes_other_tokens(self):
        store = MemoryStore(lock_timeout=10)
        await store.insert("t", {"id": "1"})

        await store.search("t", {"id": "1"}, lock="a")
        await store.search("t", {"id": "1"}, lock="a")  # re-entrant for the holder
        with pytest.raises(LockError):
            await store.search("t", {"id": "1"}, lock="b")

    @pytest.mark.asyncio
    async def test_unlock_requires_holder(self):
        store = MemoryStore(lock_timeout=10)
        await store.insert("t", {"id": "1", "v": 0})
        await store.search("t", {"id": "1"}, lock="a")

        with pytest.raises(LockError):
            await store.update("t", {"id": "1"}, {"v": 1}, unlock="b")

        await store.update("t", {"id": "1"}, {"v": 2}, unlock="a")
        await store.search("t", {"id": "1"}, lock="b")
        assert (await store.search("t"))[0]["v"] == 2

    @pytest.mark.asyncio
    async def test_lock_expires(self):
        store = MemoryStore(lock_timeout=0.01)
        await store.insert("t", {"id": "1"})
        await store.search("t", {"id": "1"}, lock="a")

        await asyncio.sleep(0.02)

        await store.search("t", {"id": "1"}, lock="b")


class TestRecordLock:
    """Tests for the RecordLock context manager."""

    @pytest.mark.asyncio
    async def test_writes_patch_and_releases(self):
        store = MemoryStore()
        await store.insert("collections", {"id": "c", "members": ["a"]})

        async with RecordLock(store, "collections", "c", interval=0.01, timeout=1) as lock:
            lock.set(members=lock.row["members"] + ["b"])

        assert (await store.search("collections"))[0]["members"] == ["a", "b"]
        await store.search("collections", {"id": "c"}, lock="other")

    @pytest.mark.asyncio
    async def test_error_releases_without_writing(self):
        store = MemoryStore()
        await store.insert("collections", {"id": "c", "members": []})

        with pytest.raises(RuntimeError):
            async with RecordLock(store, "collections", "c", interval=0.01, timeout=1) as lock:
                lock.set(members=["x"])
                raise RuntimeError("boom")

        assert (await store.search("collections"))[0]["members"] == []
        await store.search("collections", {"id": "c"}, lock="other")

    @pytest.mark.asyncio
    async def test_waits_for_holder(self):
        store = MemoryStore(lock_timeout=10)
        await store.insert("collections", {"id": "c", "members": []})
        await store.search("collections", {"id": "c"}, lock="holder")

        async def release_later():
            await asyncio.sleep(0.05)
            await store.update("collections", {"id": "c"}, {}, unlock="holder")

        releaser = asyncio.create_task(release_later())
        async with RecordLock(store, "collections", "c", interval=0.01, timeout=1) as lock:
            lock.set(members=["mine"])
        await releaser

        assert (await store.search("collections"))[0]["members"] == ["mine"]

    @pytest.mark.asyncio
    async def test_timeout(self):
        store = MemoryStore(lock_timeout=10)
        await store.insert("collections", {"id": "c"})
        await store.search("collections", {"id": "c"}, lock="holder")

        with pytest.raises(LockTimeoutError, match="expired timeout"):
            async with RecordLock(store, "collections", "c", interval=0.01, timeout=0.05):
                pass

    @pytest.mark.asyncio
    async def test_missing_record(self):
        store = MemoryStore()
        with pytest.raises(NotFoundError):
            async with RecordLock(store, "collections", "nope", interval=0.01, timeout=0.05):
                pass
