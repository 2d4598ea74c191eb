import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from tally_sync.errors import HistoryEntryNotFound, RollbackConflict, RollbackNotAllowed
from tally_sync.models import COUNTER_KEY, HISTORY_KEY, SPECIAL_KEY, WritePolicy
from tally_sync.storage import MemoryStore, SQLiteStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        s = MemoryStore(node_id="node-a")
    else:
        s = SQLiteStore(str(tmp_path / "tally.db"), node_id="node-a")
    yield s
    s.close()


def _ts(seconds):
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    return (base + timedelta(seconds=seconds)).isoformat()


def test_subscribe_delivers_current_value_then_changes(store):
    seen = []

    async def scenario():
        await store.set(COUNTER_KEY, {"value": 5, "updatedAt": _ts(0)})
        token = store.subscribe(COUNTER_KEY, seen.append)
        await store.update(COUNTER_KEY, {"value": 6, "updatedAt": _ts(1)})
        store.unsubscribe(token)
        await store.update(COUNTER_KEY, {"value": 7, "updatedAt": _ts(2)})

    asyncio.run(scenario())

    assert [r["value"] for r in seen] == [5, 6]


def test_update_preserves_unrelated_fields(store):
    async def scenario():
        await store.set(
            COUNTER_KEY,
            {"value": 1, "updatedAt": _ts(0), "specialAnimation": True, "message": "Tak!"},
        )
        await store.update(COUNTER_KEY, {"value": 2, "updatedAt": _ts(1)})
        return await store.get(COUNTER_KEY)

    record = asyncio.run(scenario())

    assert record["value"] == 2
    assert record["specialAnimation"] is True
    assert record["message"] == "Tak!"


def test_children_are_returned_most_recent_first(store):
    async def scenario():
        for value in (1, 2, 3):
            await store.push(HISTORY_KEY, {"value": value, "type": "set"})
        return await store.children(HISTORY_KEY), await store.children(HISTORY_KEY, limit=2)

    everything, window = asyncio.run(scenario())

    assert [e["value"] for e in everything] == [3, 2, 1]
    assert [e["value"] for e in window] == [3, 2]
    assert all(e["id"] for e in everything)


def test_restore_rolls_back_and_drops_entry(store):
    async def scenario():
        await store.set(COUNTER_KEY, {"value": 150, "updatedAt": _ts(0)})
        entry_id = await store.push(
            HISTORY_KEY, {"value": 150, "previousValue": 100, "type": "add", "addedAmount": 50}
        )
        merged = await store.restore(entry_id)
        return merged, await store.children(HISTORY_KEY)

    merged, history = asyncio.run(scenario())

    assert merged["value"] == 100
    assert history == []


def test_restore_refuses_when_counter_moved(store):
    async def scenario():
        await store.set(COUNTER_KEY, {"value": 150, "updatedAt": _ts(0)})
        entry_id = await store.push(HISTORY_KEY, {"value": 150, "previousValue": 100, "type": "add"})
        await store.update(COUNTER_KEY, {"value": 175, "updatedAt": _ts(1)})
        with pytest.raises(RollbackConflict):
            await store.restore(entry_id)
        unchanged = (await store.get(COUNTER_KEY))["value"], len(await store.children(HISTORY_KEY))
        forced = await store.restore(entry_id, force=True)
        return unchanged, forced

    unchanged, forced = asyncio.run(scenario())

    assert unchanged == (175, 1)
    assert forced["value"] == 100


def test_restore_rejects_reset_and_unknown_entries(store):
    async def scenario():
        reset_id = await store.push(HISTORY_KEY, {"value": 0, "previousValue": 10, "type": "reset"})
        legacy_id = await store.push(HISTORY_KEY, {"value": 10, "type": "set"})
        with pytest.raises(RollbackNotAllowed):
            await store.restore(reset_id)
        with pytest.raises(RollbackNotAllowed):
            await store.restore(legacy_id)
        with pytest.raises(HistoryEntryNotFound):
            await store.restore("missing")

    asyncio.run(scenario())


def test_reset_zeroes_counter_and_clears_history(store):
    history_seen = []

    async def scenario():
        await store.set(COUNTER_KEY, {"value": 999, "updatedAt": _ts(0), "message": "keep"})
        await store.push(HISTORY_KEY, {"value": 999, "previousValue": 0, "type": "set"})
        store.subscribe(HISTORY_KEY, history_seen.append)
        await store.reset()
        return await store.get(COUNTER_KEY), await store.children(HISTORY_KEY)

    record, history = asyncio.run(scenario())

    assert record["value"] == 0
    assert record["message"] == "keep"
    assert history == []
    assert history_seen[-1] == {}


@pytest.mark.parametrize("backend", ["memory", "sqlite"])
def test_timestamp_policy_rejects_older_write(backend, tmp_path):
    if backend == "memory":
        store = MemoryStore(node_id="node-a", policy=WritePolicy.TIMESTAMP)
    else:
        store = SQLiteStore(str(tmp_path / "t.db"), node_id="node-a", policy=WritePolicy.TIMESTAMP)

    async def scenario():
        await store.set(COUNTER_KEY, {"value": 10, "updatedAt": _ts(5)}, writer_id="node-b")
        stale = await store.update(COUNTER_KEY, {"value": 3, "updatedAt": _ts(1)}, writer_id="node-a")
        newer = await store.update(COUNTER_KEY, {"value": 4, "updatedAt": _ts(6)}, writer_id="node-a")
        return stale, newer, await store.get(COUNTER_KEY)

    stale, newer, record = asyncio.run(scenario())
    store.close()

    assert stale is None
    assert newer["value"] == 4
    assert record["value"] == 4
    assert store.stats["rejected_writes"] == 1


def test_arrival_policy_lets_last_applied_write_win():
    store = MemoryStore(node_id="node-a", policy=WritePolicy.ARRIVAL)

    async def scenario():
        await store.set(COUNTER_KEY, {"value": 10, "updatedAt": _ts(5)}, writer_id="node-b")
        await store.update(COUNTER_KEY, {"value": 3, "updatedAt": _ts(1)}, writer_id="node-a")
        return await store.get(COUNTER_KEY)

    record = asyncio.run(scenario())

    assert record["value"] == 3
    assert store.stats["rejected_writes"] == 0
    assert store.get_status()["policy"] == "arrival"


def test_failing_subscriber_is_counted_not_raised(store):
    def broken(record):
        raise RuntimeError("listener blew up")

    async def scenario():
        store.subscribe(SPECIAL_KEY, broken)
        await store.set(SPECIAL_KEY, {"active": True})

    asyncio.run(scenario())

    assert store.stats["callback_errors"] == 2


def test_sqlite_poll_picks_up_writes_from_another_connection(tmp_path):
    path = str(tmp_path / "shared.db")
    ours = SQLiteStore(path, node_id="node-a")
    theirs = SQLiteStore(path, node_id="node-b")
    seen = []

    async def scenario():
        ours.subscribe(COUNTER_KEY, seen.append)
        ours.poll_changes()
        await theirs.set(COUNTER_KEY, {"value": 42, "updatedAt": _ts(0)})
        return ours.poll_changes()

    changed = asyncio.run(scenario())
    ours.close()
    theirs.close()

    assert changed == [COUNTER_KEY]
    assert seen[0] is None
    assert seen[-1]["value"] == 42


def test_sqlite_store_persists_across_reopen(tmp_path):
    path = str(tmp_path / "persist.db")

    async def write():
        store = SQLiteStore(path)
        await store.set(COUNTER_KEY, {"value": 321, "updatedAt": _ts(0)})
        await store.push(HISTORY_KEY, {"value": 321, "previousValue": 0, "type": "set"})
        store.close()

    async def read():
        store = SQLiteStore(path)
        result = await store.get(COUNTER_KEY), await store.children(HISTORY_KEY)
        store.close()
        return result

    asyncio.run(write())
    record, history = asyncio.run(read())

    assert record["value"] == 321
    assert len(history) == 1
