import asyncio
import time

from fastapi.testclient import TestClient

from tally_sync.config import Config
from tally_sync.holder import CounterStateHolder
from tally_sync.services.bridge import StoreBridge
from tally_sync.services.relay import RelayService, SessionRegistry
from tally_sync.storage import MemoryStore, SQLiteStore


def _wait_for(check, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if check():
            return True
        time.sleep(0.05)
    return check()


def _build_relay(node_id, db_path, monkeypatch):
    monkeypatch.setenv("NODE_ID", node_id)
    monkeypatch.setenv("STORE_POLL_INTERVAL", "0.05")
    monkeypatch.setenv("RECONNECT_BACKOFF", "0")
    monkeypatch.setenv("SPECIAL_DURATION", "30")
    config = Config()
    store = SQLiteStore(db_path, node_id=node_id)
    return RelayService(config, store, SessionRegistry())


def test_two_relays_on_one_database_converge(tmp_path, monkeypatch):
    db_path = str(tmp_path / "tally.db")
    relay_a = _build_relay("relay-a", db_path, monkeypatch)
    relay_b = _build_relay("relay-b", db_path, monkeypatch)

    try:
        with TestClient(relay_a.app) as a, TestClient(relay_b.app) as b:
            a.put("/counter", json={"value": 500})
            assert _wait_for(lambda: b.get("/display").json()["value"] == 500)

            added = b.post("/counter/add", json={"amount": 25}).json()
            assert added["value"] == 525
            assert _wait_for(lambda: a.get("/display").json()["value"] == 525)

            a.post("/counter/special", json={"message": "Tak!", "amount": 75})
            assert _wait_for(lambda: b.get("/special").json()["state"] == "announcing")
            assert _wait_for(lambda: b.get("/display").json()["value"] == 600)

            history = a.get("/history").json()["entries"]
    finally:
        relay_a.store.close()
        relay_b.store.close()

    assert [e["type"] for e in history] == ["special", "add", "set"]
    assert relay_a.holder.value == relay_b.holder.value == 600


def test_bridges_sharing_a_store_follow_each_other(monkeypatch):
    monkeypatch.setenv("RECONNECT_BACKOFF", "0")
    store = MemoryStore()
    monkeypatch.setenv("NODE_ID", "display-1")
    first = StoreBridge(Config(), CounterStateHolder(), store)
    monkeypatch.setenv("NODE_ID", "display-2")
    second = StoreBridge(Config(), CounterStateHolder(), store)

    async def scenario():
        await first.start()
        await second.start()
        for _ in range(5):
            await asyncio.sleep(0)
        await first.commit(10)
        seen_by_second = second.holder.value
        await second.commit(20)
        await first.commit(30)
        await second.flush()
        await first.stop()
        await second.stop()
        return seen_by_second, (await store.get("counter"))["value"]

    seen_by_second, stored = asyncio.run(scenario())

    assert seen_by_second == 10
    assert first.holder.value == second.holder.value == stored == 30
    # neither bridge echoed the other's value back
    assert first.stats["published"] == 2
    assert second.stats["published"] == 1
