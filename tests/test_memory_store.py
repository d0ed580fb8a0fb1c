"""Tests for the in-memory DocumentStore and the compare-and-set helper."""
import pytest

from spark.errors import ConcurrentUpdateError
from spark.store.base import MAX_BATCH_WRITES, Filter, OrderBy, WriteBatch, atomic_update
from spark.store.memory import MemoryDocumentStore


@pytest.fixture
def seeded():
    store = MemoryDocumentStore()
    store.load(
        "rooms",
        {
            "r1": {"status": "active", "expiresAt": "2026-01-10T00:00:00.000000Z", "n": 3},
            "r2": {"status": "passed", "expiresAt": "2026-01-05T00:00:00.000000Z", "n": 1},
            "r3": {"status": "active", "expiresAt": None, "n": 2, "tags": ["x", "y"]},
            "r4": {"status": "expired", "n": "7"},
        },
    )
    return store


class TestWrites:
    @pytest.mark.asyncio
    async def test_create_if_absent_only_once(self):
        store = MemoryDocumentStore()
        assert await store.create_if_absent("matches", "m1", {"score": 1}) is True
        assert await store.create_if_absent("matches", "m1", {"score": 2}) is False
        doc = await store.get("matches", "m1")
        assert doc.data == {"score": 1}
        assert doc.version == 1

    @pytest.mark.asyncio
    async def test_compare_and_set_rejects_stale_version(self):
        store = MemoryDocumentStore()
        await store.set("rooms", "r", {"v": 1})
        assert await store.compare_and_set("rooms", "r", 1, {"v": 2}) is True
        assert await store.compare_and_set("rooms", "r", 1, {"v": 3}) is False
        doc = await store.get("rooms", "r")
        assert doc.data == {"v": 2}
        assert doc.version == 2

    @pytest.mark.asyncio
    async def test_compare_and_set_missing_document(self):
        store = MemoryDocumentStore()
        assert await store.compare_and_set("rooms", "nope", 1, {}) is False

    @pytest.mark.asyncio
    async def test_returned_data_is_a_copy(self, seeded):
        doc = await seeded.get("rooms", "r3")
        doc.data["tags"].append("z")
        again = await seeded.get("rooms", "r3")
        assert again.data["tags"] == ["x", "y"]

    @pytest.mark.asyncio
    async def test_batch_commit_applies_sets_and_deletes(self, seeded):
        batch = seeded.batch()
        batch.set("rooms_archive", "r2", {"status": "passed"})
        batch.delete("rooms", "r2")
        await seeded.commit(batch)
        assert await seeded.get("rooms", "r2") is None
        assert (await seeded.get("rooms_archive", "r2")).data == {"status": "passed"}

    def test_batch_size_is_bounded(self):
        batch = WriteBatch()
        for i in range(MAX_BATCH_WRITES):
            batch.delete("rooms", str(i))
        with pytest.raises(ValueError):
            batch.delete("rooms", "one-too-many")


class TestQuery:
    @pytest.mark.asyncio
    async def test_equality_and_range(self, seeded):
        docs = await seeded.query(
            "rooms",
            [
                Filter("status", "==", "active"),
                Filter("expiresAt", "<=", "2026-02-01T00:00:00.000000Z"),
            ],
        )
        assert [d.id for d in docs] == ["r1"]

    @pytest.mark.asyncio
    async def test_in_and_array_contains(self, seeded):
        docs = await seeded.query("rooms", [Filter("status", "in", ["passed", "expired"])])
        assert [d.id for d in docs] == ["r2", "r4"]
        docs = await seeded.query("rooms", [Filter("tags", "array_contains", "y")])
        assert [d.id for d in docs] == ["r3"]

    @pytest.mark.asyncio
    async def test_missing_field_never_matches(self, seeded):
        docs = await seeded.query("rooms", [Filter("expiresAt", "!=", "x")])
        assert {d.id for d in docs} == {"r1", "r2"}

    @pytest.mark.asyncio
    async def test_range_compares_same_kind_only(self, seeded):
        docs = await seeded.query("rooms", [Filter("n", ">=", 2)])
        assert {d.id for d in docs} == {"r1", "r3"}

    @pytest.mark.asyncio
    async def test_order_by_puts_missing_last_and_limits(self, seeded):
        docs = await seeded.query("rooms", order_by=[OrderBy("expiresAt")])
        assert [d.id for d in docs] == ["r2", "r1", "r3", "r4"]
        docs = await seeded.query(
            "rooms", order_by=[OrderBy("expiresAt", descending=True)], limit=2
        )
        assert [d.id for d in docs] == ["r1", "r2"]

    def test_filter_rejects_none_and_unknown_ops(self):
        with pytest.raises(ValueError):
            Filter("status", "==", None)
        with pytest.raises(ValueError):
            Filter("status", "~=", "a")
        with pytest.raises(ValueError):
            Filter("status", "in", "active")


class TestAtomicUpdate:
    @pytest.mark.asyncio
    async def test_retries_after_losing_a_race(self):
        store = MemoryDocumentStore()
        store.load("rooms", {"r": {"count": 0}})
        calls = []

        def mutate(doc):
            calls.append(doc.version)
            if len(calls) == 1:
                # Another writer lands between our read and our write.
                store.load("rooms", {"r": {"count": 10}})
            return {"count": doc.data["count"] + 1}, "done"

        doc, result = await atomic_update(store, "rooms", "r", mutate)
        assert result == "done"
        assert calls == [1, 2]
        assert doc.data == {"count": 11}
        assert (await store.get("rooms", "r")).data == {"count": 11}

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        store = MemoryDocumentStore()
        store.load("rooms", {"r": {"count": 0}})

        def mutate(doc):
            store.load("rooms", {"r": {"count": doc.data["count"] + 100}})
            return {"count": -1}, None

        with pytest.raises(ConcurrentUpdateError):
            await atomic_update(store, "rooms", "r", mutate, max_attempts=3)

    @pytest.mark.asyncio
    async def test_no_write_and_missing_document(self):
        store = MemoryDocumentStore()
        store.load("rooms", {"r": {"count": 0}})
        doc, result = await atomic_update(store, "rooms", "r", lambda d: (None, "skip"))
        assert result == "skip"
        assert doc.version == 1

        assert await atomic_update(store, "rooms", "missing", lambda d: ({}, 1)) == (None, None)
