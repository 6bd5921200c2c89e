from __future__ import annotations

import threading

import pytest

from restopos.errors import StoreError
from restopos.store import SqlStore


@pytest.fixture
def changes(store):
    seen = []

    async def listener(change):
        seen.append((change.table, change.event))

    store.subscribe(listener)
    return seen


async def test_writes_are_announced(store, changes):
    row = (await store.insert("tables", {"name": "T1"}))[0]
    await store.update("tables", row["id"], {"capacity": 2})
    await store.delete("tables", row["id"])
    assert changes == [("tables", "INSERT"), ("tables", "UPDATE"), ("tables", "DELETE")]


async def test_missing_rows_are_not_announced(store, changes):
    assert await store.update("tables", "nope", {"capacity": 2}) is None
    await store.delete("tables", "nope")
    assert changes == []


async def test_deferred_changes_are_delivered_after_the_block(store, changes):
    async with store.deferred_changes():
        await store.insert("tables", {"name": "T1"})
        async with store.deferred_changes():
            await store.insert("tables", {"name": "T2"})
        assert changes == []
    assert changes == [("tables", "INSERT"), ("tables", "INSERT")]


async def test_deferred_changes_are_dropped_when_the_block_fails(store, changes):
    with pytest.raises(StoreError):
        async with store.deferred_changes():
            await store.insert("tables", {"name": "T1"})
            raise StoreError("Update of orders failed", "database is locked")
    assert changes == []

    await store.insert("tables", {"name": "T2"})
    assert changes == [("tables", "INSERT")]


async def test_unknown_collection(store):
    with pytest.raises(StoreError):
        await store.select("menus")


async def test_session_work_runs_off_the_event_loop(session_factory):
    threads = []

    def factory():
        threads.append(threading.get_ident())
        return session_factory()

    store = SqlStore(factory)
    await store.insert("tables", {"name": "T1"})
    assert [r["name"] for r in await store.select("tables")] == ["T1"]
    assert len(threads) == 2
    assert threading.get_ident() not in threads
