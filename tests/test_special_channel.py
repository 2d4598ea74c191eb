import asyncio
from datetime import timedelta

from tally_sync.config import Config
from tally_sync.models import COUNTER_KEY, SPECIAL_KEY, utcnow
from tally_sync.services.special import ANNOUNCING, IDLE, SpecialEventChannel
from tally_sync.storage import MemoryStore


def _channel(monkeypatch, duration="0.05", node_id="node-1", store=None):
    monkeypatch.setenv("NODE_ID", node_id)
    monkeypatch.setenv("SPECIAL_DURATION", duration)
    store = store or MemoryStore()
    return SpecialEventChannel(Config(), store), store


def test_announce_then_expire(monkeypatch):
    channel, store = _channel(monkeypatch)
    changes = []
    channel.on_change(changes.append)

    async def scenario():
        await store.set(COUNTER_KEY, {"value": 1000})
        await channel.start()
        await channel.announce("Tak!", 5000)
        during = (channel.state, await store.get(SPECIAL_KEY), await store.get(COUNTER_KEY))
        await asyncio.sleep(0.1)
        after = (channel.state, await store.get(SPECIAL_KEY), await store.get(COUNTER_KEY))
        await channel.stop()
        return during, after

    during, after = asyncio.run(scenario())

    state, special, counter = during
    assert state == ANNOUNCING
    assert special["active"] is True
    assert special["message"] == "Tak!"
    assert special["amount"] == 5000
    assert counter["specialAnimation"] is True
    assert counter["value"] == 1000

    state, special, counter = after
    assert state == IDLE
    assert special["active"] is False
    assert counter["specialAnimation"] is False
    assert counter["value"] == 1000

    assert channel.stats["expired"] == 1
    assert channel.get_status()["timer_pending"] is False
    assert [c.active for c in changes] == [True, False]


def test_no_timer_fires_after_expiry(monkeypatch):
    channel, store = _channel(monkeypatch, duration="0.02")
    writes = []
    store.subscribe(SPECIAL_KEY, writes.append)

    async def scenario():
        await channel.start()
        await channel.announce("Tak!", 5000)
        await asyncio.sleep(0.2)
        await channel.stop()

    asyncio.run(scenario())

    # initial delivery, the announcement, one clear
    assert len(writes) == 3
    assert channel.stats["expired"] == 1


def test_clear_from_another_client_cancels_timer(monkeypatch):
    channel, store = _channel(monkeypatch, duration="5")

    async def scenario():
        await channel.start()
        await channel.announce("Tak!", 250)
        await store.set(SPECIAL_KEY, {"active": False})
        return channel.state, channel.get_status()["timer_pending"]

    state, pending = asyncio.run(scenario())

    assert state == IDLE
    assert pending is False
    assert channel.stats["cleared_remotely"] == 1
    assert channel.stats["expired"] == 0


def test_newer_announcement_replaces_the_previous(monkeypatch):
    channel, store = _channel(monkeypatch, duration="0.05")

    async def scenario():
        await channel.start()
        await channel.announce("first", 100)
        await asyncio.sleep(0.03)
        await channel.announce("second", 200)
        await asyncio.sleep(0.03)
        midway = channel.current.message, channel.state
        await asyncio.sleep(0.06)
        await channel.stop()
        return midway, await store.get(SPECIAL_KEY)

    midway, final = asyncio.run(scenario())

    assert midway == ("second", ANNOUNCING)
    assert final["active"] is False
    assert channel.stats["expired"] == 1


def test_late_joiner_clears_stale_announcement(monkeypatch):
    channel, store = _channel(monkeypatch, duration="1")
    stale_start = (utcnow() - timedelta(seconds=30)).isoformat()

    async def scenario():
        await store.set(
            SPECIAL_KEY, {"active": True, "message": "old", "amount": 1, "startedAt": stale_start}
        )
        await channel.start()
        for _ in range(5):
            await asyncio.sleep(0)
        state = channel.state
        await channel.stop()
        return state, await store.get(SPECIAL_KEY)

    state, record = asyncio.run(scenario())

    assert state == IDLE
    assert record["active"] is False


def test_stop_cancels_pending_late_joiner_clear(monkeypatch):
    channel, store = _channel(monkeypatch, duration="1")
    stale_start = (utcnow() - timedelta(seconds=30)).isoformat()

    async def scenario():
        await store.set(
            SPECIAL_KEY, {"active": True, "message": "old", "amount": 1, "startedAt": stale_start}
        )
        await channel.start()
        pending = channel.get_status()["clear_pending"]
        await channel.stop()
        for _ in range(5):
            await asyncio.sleep(0)
        return pending, channel.get_status()["clear_pending"], await store.get(SPECIAL_KEY)

    pending, after_stop, record = asyncio.run(scenario())

    assert pending is True
    assert after_stop is False
    assert record["active"] is True


def test_late_joiner_gets_remaining_window(monkeypatch):
    channel, store = _channel(monkeypatch, duration="10")
    recent_start = (utcnow() - timedelta(seconds=2)).isoformat()

    async def scenario():
        await store.set(
            SPECIAL_KEY, {"active": True, "message": "live", "amount": 7, "startedAt": recent_start}
        )
        await channel.start()
        status = channel.get_status()
        await channel.stop()
        return status

    status = asyncio.run(scenario())

    assert status["state"] == ANNOUNCING
    assert status["event"]["message"] == "live"
    assert status["timer_pending"] is True


def test_two_clients_race_to_clear_is_idempotent(monkeypatch):
    store = MemoryStore()
    first, _ = _channel(monkeypatch, duration="0.03", node_id="node-1", store=store)
    second, _ = _channel(monkeypatch, duration="0.03", node_id="node-2", store=store)
    clears = []
    store.subscribe(SPECIAL_KEY, lambda r: clears.append(r) if r and not r["active"] else None)

    async def scenario():
        await first.start()
        await second.start()
        await first.announce("Tak!", 5000)
        await asyncio.sleep(0.1)
        await first.stop()
        await second.stop()

    asyncio.run(scenario())

    assert first.state == IDLE
    assert second.state == IDLE
    assert len(clears) == 1


def test_stop_cancels_pending_timer(monkeypatch):
    channel, store = _channel(monkeypatch, duration="0.05")

    async def scenario():
        await channel.start()
        await channel.announce("Tak!", 10)
        await channel.stop()
        await asyncio.sleep(0.1)
        return await store.get(SPECIAL_KEY)

    record = asyncio.run(scenario())

    assert record["active"] is True
    assert channel.stats["expired"] == 0
    assert store.subscriber_count(SPECIAL_KEY) == 0
