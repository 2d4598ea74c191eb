import asyncio
import json
import time

import aiohttp
import structlog

from ..config import Config
from ..errors import InvalidValueError, StoreWriteError
from ..holder import CounterStateHolder
from ..models import COUNTER_KEY, Origin, coerce_number, extract_number, isoformat_now

log = structlog.get_logger()


class SyncBridge:
    """
    Glue between a CounterStateHolder and a shared transport.

    Subscribe path: values from the transport go to `holder.update_local`.
    Publish path: LOCAL holder updates are queued and written out in order.
    A value equal to the last one known to be on the transport (sent or
    received, whichever was later) is not written again, and a queued value
    the holder has already moved past is dropped.

    The connection is retried forever with a fixed backoff.
    """

    name = "bridge"
    health_interval = 0.5

    def __init__(self, config: Config, holder: CounterStateHolder):
        self.config = config
        self.holder = holder
        self.running = False
        self.connected = False
        self.last_sent = None
        self.last_received = None
        self.last_error = None
        self._remote_value = None
        self._queue = None
        self._commit_waiter = None
        self._tasks = []
        self._watch_token = None
        self._listeners = []
        self.stats = {
            "received": 0,
            "applied": 0,
            "invalid": 0,
            "published": 0,
            "skipped_duplicate": 0,
            "skipped_stale": 0,
            "publish_errors": 0,
            "connects": 0,
            "reconnects": 0,
            "last_connected_at": None,
            "last_disconnected_at": None,
        }

    # --- lifecycle ---

    async def start(self):
        if self.running:
            return
        self.running = True
        self._queue = asyncio.Queue()
        self._watch_token = self.holder.watch(self._on_holder_update)
        self._tasks = [
            asyncio.create_task(self._connection_loop()),
            asyncio.create_task(self._publish_loop()),
        ]
        log.info("bridge_started", bridge=self.name)

    async def stop(self):
        self.running = False
        if self._watch_token is not None:
            self.holder.unwatch(self._watch_token)
            self._watch_token = None
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        while self._queue is not None and not self._queue.empty():
            _, waiter = self._queue.get_nowait()
            self._queue.task_done()
            self._resolve(waiter, StoreWriteError("bridge stopped before the write went out"))
        self._set_connected(False, "stopped")
        log.info("bridge_stopped", bridge=self.name)

    async def flush(self):
        """Wait until every queued local value has been written out."""
        if self._queue is not None:
            await self._queue.join()

    async def commit(self, value):
        """Set the holder locally and wait for the write to go out.

        Raises StoreWriteError if this value's write failed; the local value
        is left in place either way. A value the holder moved past before it
        was written counts as delivered.
        """
        if not self.running:
            raise StoreWriteError("bridge is not running")
        waiter = asyncio.get_running_loop().create_future()
        # picked up by _on_holder_update while set_value runs
        self._commit_waiter = waiter
        try:
            self.holder.set_value(value)
        finally:
            self._commit_waiter = None
        await waiter
        return self.holder.value

    def add_connection_listener(self, callback):
        self._listeners.append(callback)

    # --- connection ---

    async def _connection_loop(self):
        while self.running:
            try:
                await self._session()
                reason = "closed"
            except asyncio.CancelledError:
                raise
            except Exception as e:
                reason = str(e) or type(e).__name__
                self.last_error = reason
            self._set_connected(False, reason)
            if not self.running:
                break
            self.stats["reconnects"] += 1
            log.warning(
                "bridge_reconnecting",
                bridge=self.name,
                reason=reason,
                backoff=self.config.reconnect_backoff,
            )
            await asyncio.sleep(self.config.reconnect_backoff)

    def _set_connected(self, connected, reason=None):
        if connected == self.connected:
            return
        self.connected = connected
        if connected:
            self.stats["connects"] += 1
            self.stats["last_connected_at"] = time.time()
            log.info("bridge_connected", bridge=self.name)
        else:
            self.stats["last_disconnected_at"] = time.time()
            log.info("bridge_disconnected", bridge=self.name, reason=reason)
        for callback in list(self._listeners):
            try:
                callback(connected)
            except Exception as e:
                log.error("bridge_listener_failed", bridge=self.name, error=str(e))

    async def _session(self):
        """Hold one connection open; return or raise when it drops."""
        raise NotImplementedError

    # --- subscribe path ---

    def _on_remote_value(self, value):
        self.stats["received"] += 1
        try:
            value = coerce_number(value)
        except InvalidValueError:
            self.stats["invalid"] += 1
            log.debug("bridge_ignored_value", bridge=self.name, value=repr(value))
            return
        self.last_received = value
        self._remote_value = value
        if self.holder.update_local(value):
            self.stats["applied"] += 1

    # --- publish path ---

    def _on_holder_update(self, update):
        if update.origin != Origin.LOCAL or not self.running:
            return
        waiter, self._commit_waiter = self._commit_waiter, None
        self._queue.put_nowait((update.value, waiter))

    async def _publish_loop(self):
        while True:
            value, waiter = await self._queue.get()
            try:
                if value != self.holder.value:
                    self.stats["skipped_stale"] += 1
                elif value == self._remote_value:
                    self.stats["skipped_duplicate"] += 1
                elif await self._publish(value):
                    self.last_sent = value
                    self._remote_value = value
                    self.stats["published"] += 1
                self._resolve(waiter)
            except asyncio.CancelledError:
                self._resolve(waiter, StoreWriteError("bridge stopped before the write went out"))
                raise
            except Exception as e:
                # local value stays as is until the next successful sync
                self.stats["publish_errors"] += 1
                self.last_error = str(e) or type(e).__name__
                log.error("bridge_publish_failed", bridge=self.name, value=value, error=self.last_error)
                if isinstance(e, StoreWriteError):
                    self._resolve(waiter, e)
                else:
                    self._resolve(waiter, StoreWriteError(f"counter write failed: {self.last_error}"))
            finally:
                self._queue.task_done()

    @staticmethod
    def _resolve(waiter, error=None):
        if waiter is None or waiter.done():
            return
        if error is None:
            waiter.set_result(None)
        else:
            waiter.set_exception(error)

    async def _publish(self, value):
        """Write `value` out. Return False if the transport kept a newer one."""
        raise NotImplementedError

    def get_status(self):
        return {
            "bridge": self.name,
            "connected": self.connected,
            "value": self.holder.value,
            "last_sent": self.last_sent,
            "last_received": self.last_received,
            "last_error": self.last_error,
            "stats": dict(self.stats),
        }


class StoreBridge(SyncBridge):
    """Publish-subscribe directly against a SyncStore."""

    name = "store"

    def __init__(self, config: Config, holder: CounterStateHolder, store):
        super().__init__(config, holder)
        self.store = store
        self._lost = asyncio.Event()

    def mark_lost(self, reason="store connection lost"):
        self.last_error = reason
        self._lost.set()

    async def _session(self):
        self._lost = asyncio.Event()
        token = self.store.subscribe(COUNTER_KEY, self._on_record)
        try:
            if not self.store.connected:
                raise ConnectionError("store unavailable")
            self._set_connected(True)
            while self.store.connected and not self._lost.is_set():
                try:
                    await asyncio.wait_for(self._lost.wait(), timeout=self.health_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.store.unsubscribe(token)
        raise ConnectionError(self.last_error or "store unavailable")

    def _on_record(self, record):
        if record is None:
            return
        value = extract_number(record)
        if value is None:
            self.stats["invalid"] += 1
            return
        self._on_remote_value(value)

    async def _publish(self, value):
        fields = {"value": value, "updatedAt": isoformat_now()}
        try:
            merged = await self.store.update(COUNTER_KEY, fields, writer_id=self.config.node_id)
        except Exception as e:
            raise StoreWriteError(f"counter write failed: {e}") from e
        if merged is None:
            # a newer write already won; adopt what the store holds
            log.info("bridge_write_superseded", bridge=self.name, value=value)
            current = extract_number(await self.store.get(COUNTER_KEY))
            if current is not None:
                self._on_remote_value(current)
            return False
        log.debug("counter_published", bridge=self.name, value=value)
        return True


class RelayBridge(SyncBridge):
    """
    WebSocket client of the relay server. Sends `update-count`, applies
    `count-update`, and forwards `special-update` payloads to listeners.
    """

    name = "relay"

    def __init__(self, config: Config, holder: CounterStateHolder, url=None):
        super().__init__(config, holder)
        self.url = url or config.relay_url
        self._ws = None
        self._special_listeners = []

    def on_special(self, callback):
        self._special_listeners.append(callback)

    async def _session(self):
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=5)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.ws_connect(self.url, heartbeat=30) as ws:
                self._ws = ws
                self._set_connected(True)
                try:
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            self._handle(msg.data)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            raise ConnectionError(f"websocket error: {ws.exception()}")
                finally:
                    self._ws = None

    def _handle(self, raw):
        try:
            message = json.loads(raw)
        except ValueError:
            self.stats["invalid"] += 1
            return
        if not isinstance(message, dict):
            self.stats["invalid"] += 1
            return

        event = message.get("event")
        if event == "count-update":
            self._on_remote_value(message.get("data"))
        elif event == "special-update":
            for callback in list(self._special_listeners):
                try:
                    callback(message.get("data") or {})
                except Exception as e:
                    log.error("special_listener_failed", error=str(e))
        elif event == "error":
            log.warning("relay_rejected_update", detail=message.get("data"))

    async def _publish(self, value):
        if self._ws is None:
            raise ConnectionError("relay not connected")
        await self._ws.send_json({"event": "update-count", "data": value})
        return True
