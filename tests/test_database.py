import asyncio
import uuid
from datetime import datetime

import pytest
from pymongo.errors import PyMongoError

from database import StoreError, WriteBatch, split_collection_path, split_document_path
from sync import CloudSyncEngine
from timestamps import SERVER_TIMESTAMP


def test_paths():
    assert split_document_path("users/u1/rooms/r1") == ("users__rooms", "users/u1", "r1")
    assert split_collection_path("users/u1/rooms") == ("users__rooms", "users/u1")
    with pytest.raises(ValueError):
        split_document_path("users")
    with pytest.raises(ValueError):
        split_collection_path("users/u1")


def test_set_and_get_strip_internal_fields(store):
    async def run():
        await store.set("users/u1", {"name": "Ann", "created_at": SERVER_TIMESTAMP, "id": "ignored"})
        return await store.get("users/u1")

    doc = asyncio.run(run())
    assert doc["id"] == "u1"
    assert doc["name"] == "Ann"
    assert isinstance(doc["created_at"], datetime)
    assert not any(k.startswith("_") for k in doc)


def test_update_merges_and_reports_missing(store):
    async def run():
        await store.set("users/u1/data/stats", {"xp": 10, "streak": 2})
        merged = await store.update("users/u1/data/stats", {"xp": 20})
        missing = await store.update("users/u2/data/stats", {"xp": 20})
        return merged, missing, await store.get("users/u1/data/stats")

    merged, missing, doc = asyncio.run(run())
    assert merged is True
    assert missing is False
    assert doc["xp"] == 20 and doc["streak"] == 2


def test_query_is_scoped_to_parent(store):
    async def run():
        for i, name in enumerate(["a", "b", "c"]):
            await store.set(f"users/u1/rooms/{name}", {"order": i})
        await store.set("users/u2/rooms/x", {"order": 99})
        return (
            await store.query("users/u1/rooms", order_by=("order", "desc")),
            await store.query("users/u1/rooms", where=[("order", ">=", 1)], limit=1, order_by="order"),
        )

    everything, filtered = asyncio.run(run())
    assert [d["id"] for d in everything] == ["c", "b", "a"]
    assert [d["id"] for d in filtered] == ["b"]


def test_array_contains_and_in(store):
    async def run():
        await store.set("challenges/c1", {"participant_ids": ["a", "b"], "status": "in_progress"})
        await store.set("challenges/c2", {"participant_ids": ["b"], "status": "completed"})
        return (
            await store.query("challenges", where=[("participant_ids", "array_contains", "a")]),
            await store.query("challenges", where=[("status", "in", ["in_progress", "pending"])]),
        )

    contains, in_status = asyncio.run(run())
    assert [d["id"] for d in contains] == ["c1"]
    assert [d["id"] for d in in_status] == ["c1"]


def test_concurrent_transactions_do_not_lose_updates(store):
    def increment(doc):
        doc = doc or {"count": 0}
        doc["count"] += 1
        return doc

    async def run():
        await asyncio.gather(*(store.transact("counters/c", increment) for _ in range(5)))
        return await store.get("counters/c")

    assert asyncio.run(run())["count"] == 5


def test_transaction_abort_writes_nothing(store):
    async def run():
        result = await store.transact("counters/c", lambda doc: None)
        return result, await store.get("counters/c")

    assert asyncio.run(run()) == (None, None)


def test_transaction_gives_up_under_constant_interference(store, database):
    def meddle(doc):
        database["counters"].update_one({"_id": "counters/c"}, {"$set": {"_version": uuid.uuid4().hex}})
        doc["count"] += 1
        return doc

    async def run():
        await store.set("counters/c", {"count": 0})
        with pytest.raises(StoreError) as err:
            await store.transact("counters/c", meddle, max_attempts=3)
        return err.value, await store.get("counters/c")

    error, doc = asyncio.run(run())
    assert error.kind == "conflict"
    assert doc["count"] == 0


def test_batch_rolls_back_on_failure(store, monkeypatch):
    original = store._write_one
    calls = []

    def flaky(op, path, value):
        calls.append(path)
        if len(calls) == 3:
            raise PyMongoError("connection reset")
        return original(op, path, value)

    async def run():
        await store.set("users/u1/rooms/keep", {"name": "before"})
        monkeypatch.setattr(store, "_write_one", flaky)
        batch = (
            WriteBatch()
            .set("users/u1/rooms/keep", {"name": "after"})
            .set("users/u1/rooms/new", {"name": "new"})
            .delete("users/u1/rooms/keep")
        )
        with pytest.raises(StoreError):
            await store.batch(batch)
        return await store.get("users/u1/rooms/keep"), await store.get("users/u1/rooms/new")

    kept, new = asyncio.run(run())
    assert kept["name"] == "before"
    assert new is None


def test_unconfigured_store_is_a_no_op(offline_store):
    async def run():
        return (
            await offline_store.set("users/u1", {"a": 1}),
            await offline_store.get("users/u1"),
            await offline_store.update("users/u1", {"a": 2}),
            await offline_store.delete("users/u1"),
            await offline_store.query("users"),
            await offline_store.subscribe("users", lambda docs: None),
            await offline_store.transact("users/u1", lambda d: {"a": 1}),
        )

    assert asyncio.run(run()) == (False, None, False, False, [], None, None)
    assert offline_store.collection_names() == []


def test_subscription_sees_writes_from_another_client(store, second_device):
    snapshots = []

    async def run():
        await store.set("users/u1/rooms/a", {"name": "Kitchen"})
        unsubscribe = await store.subscribe("users/u1/rooms", snapshots.append)
        await second_device.set("users/u1/rooms/b", {"name": "Garage"})
        await second_device.set("users/u2/rooms/z", {"name": "Elsewhere"})
        unsubscribe()
        await second_device.delete("users/u1/rooms/a")

    asyncio.run(run())
    assert [sorted(d["id"] for d in snap) for snap in snapshots] == [["a"], ["a", "b"]]


def test_failed_subscribe_leaves_no_listener(store, alice, monkeypatch):
    async def down(*args, **kwargs):
        raise StoreError("down")

    monkeypatch.setattr(store, "query", down)

    async def run():
        with pytest.raises(StoreError):
            await store.subscribe("users/alice/rooms", lambda docs: None)
        return await CloudSyncEngine(store, alice).subscribe_to_rooms(lambda rooms: None)

    assert asyncio.run(run()) is None
    assert store.listeners.watching(["users/alice/rooms"]) == []
