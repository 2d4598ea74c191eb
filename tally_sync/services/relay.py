import asyncio
import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from ..config import Config
from ..errors import InvalidValueError, TallyError
from ..holder import CounterStateHolder
from ..models import (
    COUNTER_KEY,
    AddRequest,
    CounterState,
    Origin,
    SetValueRequest,
    SpecialRequest,
    coerce_number,
    utcnow,
)
from .admin import AdminService
from .bridge import StoreBridge
from .display import DisplaySurface
from .special import SpecialEventChannel

log = structlog.get_logger()

SESSION_QUEUE_SIZE = 256


class Session:
    """One connected client: a WebSocket peer or an SSE stream."""

    def __init__(self, kind):
        self.id = uuid.uuid4().hex[:12]
        self.kind = kind
        self.queue = asyncio.Queue(maxsize=SESSION_QUEUE_SIZE)
        self.opened_at = utcnow()
        self.ended = False

    def send(self, event, data):
        """Queue a frame. Returns False when the session is ended or full."""
        if self.ended:
            return False
        try:
            self.queue.put_nowait((event, data))
        except asyncio.QueueFull:
            return False
        return True

    def end(self):
        """Discard pending frames and tell the writer to close the transport."""
        if self.ended:
            return
        self.ended = True
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(None)


class SessionRegistry:
    """
    Connected sessions of the relay. Created at process start and shut
    down with it; handed to the relay rather than living at module level.
    """

    def __init__(self):
        self.sessions = {}
        self.closed = False
        self.stats = {"opened": 0, "closed": 0, "broadcasts": 0, "dropped": 0}

    def open(self, kind):
        if self.closed:
            raise RuntimeError("session registry is shut down")
        session = Session(kind)
        self.sessions[session.id] = session
        self.stats["opened"] += 1
        log.info("relay_session_opened", session=session.id, kind=kind, total=len(self.sessions))
        return session

    def close(self, session):
        session.end()
        if self.sessions.pop(session.id, None) is not None:
            self.stats["closed"] += 1
            log.info("relay_session_closed", session=session.id, total=len(self.sessions))

    def broadcast(self, event, data, exclude=None):
        """Queue `event` for every session but `exclude`. Returns the number
        of sessions reached; sessions that stopped reading are dropped."""
        self.stats["broadcasts"] += 1
        reached = 0
        for session in list(self.sessions.values()):
            if session is exclude:
                continue
            if session.send(event, data):
                reached += 1
            else:
                self.stats["dropped"] += 1
                log.warning("relay_session_dropped", session=session.id, reason="queue_full")
                self.close(session)
        return reached

    def count(self, kind=None):
        if kind is None:
            return len(self.sessions)
        return sum(1 for s in self.sessions.values() if s.kind == kind)

    def shutdown(self):
        self.closed = True
        for session in list(self.sessions.values()):
            session.end()
        self.sessions.clear()

    def get_status(self):
        return {
            "total": self.count(),
            "websocket": self.count("ws"),
            "sse": self.count("sse"),
            "stats": dict(self.stats),
        }


def _api_error(status_code: int, code: str, message: str, details=None) -> HTTPException:
    payload = {"code": code, "message": message}
    if details is not None:
        payload["details"] = details
    return HTTPException(status_code=status_code, detail=payload)


class RelayService:
    """
    The tally server: fans counter and special-announcement changes out to
    WebSocket and SSE clients, and offers the admin HTTP API.

    Counter changes flow holder -> StoreBridge -> store. Whatever the holder
    sees (local admin writes, `update-count` from a peer, or changes other
    processes made to the store) is broadcast to sessions; a peer's own
    `update-count` is not echoed back to it.
    """

    def __init__(self, config: Config, store, registry: SessionRegistry, holder=None):
        self.config = config
        self.store = store
        self.registry = registry
        self.holder = holder or CounterStateHolder()
        self.bridge = StoreBridge(config, self.holder, store)
        self.special = SpecialEventChannel(config, store)
        self.admin = AdminService(config, store, self.bridge, self.special)
        self.display = DisplaySurface(self.holder, config.special_duration)
        self.start_time = utcnow()
        self._origin_session = None
        self._last_update_time = None
        self._tasks = []

        self.holder.watch(self._on_holder_update)
        self.special.on_change(self._on_special_change)
        self.bridge.add_connection_listener(self.display.set_connected)
        self.app = self._build_app()

    # --- lifecycle ---

    async def start(self):
        await self.bridge.start()
        await self.special.start()
        if hasattr(self.store, "start_polling"):
            self._tasks.append(
                asyncio.create_task(self.store.start_polling(self.config.store_poll_interval))
            )
        log.info("relay_started", node_id=self.config.node_id, value=self.holder.value)

    async def stop(self):
        self.registry.shutdown()
        await self.special.stop()
        await self.bridge.stop()
        if hasattr(self.store, "stop"):
            self.store.stop()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        log.info("relay_stopped", node_id=self.config.node_id)

    # --- fan-out ---

    def _on_holder_update(self, update):
        exclude = self._origin_session if update.origin == Origin.LOCAL else None
        self._origin_session = None
        reached = self.registry.broadcast("count-update", update.value, exclude=exclude)
        log.info(
            "count_broadcast",
            value=update.value,
            origin=update.origin.value,
            sessions=reached,
        )

    def _on_special_change(self, event):
        self.display.set_special(event)
        self.registry.broadcast("special-update", event.to_record())

    async def apply_count(self, value, origin_session=None):
        """Take a new tally from a client and pass it on to everyone else."""
        self._origin_session = origin_session
        try:
            await self.bridge.commit(value)
        finally:
            self._origin_session = None
            self._last_update_time = time.monotonic()

    def _is_recent_duplicate(self, value):
        if value != self.holder.value or self._last_update_time is None:
            return False
        return time.monotonic() - self._last_update_time <= self.config.unchanged_window

    # --- websocket ---

    async def _ws_writer(self, websocket, session):
        while True:
            message = await session.queue.get()
            if message is None:
                await websocket.close()
                return
            event, data = message
            await websocket.send_json({"event": event, "data": data})

    async def _on_ws_message(self, session, raw):
        try:
            message = json.loads(raw)
        except ValueError:
            session.send("error", {"code": "INVALID_PAYLOAD", "message": "frames must be JSON"})
            return
        if not isinstance(message, dict) or message.get("event") != "update-count":
            session.send("error", {"code": "UNKNOWN_EVENT", "message": "expected update-count"})
            return
        try:
            value = coerce_number(message.get("data"))
        except InvalidValueError as e:
            session.send("error", {"code": e.code, "message": "Invalid count value"})
            return
        try:
            await self.apply_count(value, origin_session=session)
        except TallyError as e:
            session.send("error", {"code": e.code, "message": e.message})

    # --- server-sent events ---

    @staticmethod
    def _sse_frame(event, data):
        if event == "count-update":
            return f"data: {json.dumps({'count': data})}\n\n"
        return f"event: {event}\ndata: {json.dumps(data)}\n\n"

    async def _sse_stream(self, session):
        try:
            yield self._sse_frame("count-update", self.holder.value)
            while True:
                message = await session.queue.get()
                if message is None:
                    return
                event, data = message
                if event == "error":
                    continue
                yield self._sse_frame(event, data)
        finally:
            self.registry.close(session)

    # --- app ---

    def get_status(self):
        return {
            "node_id": self.config.node_id,
            "env": self.config.app_env,
            "uptime_seconds": (utcnow() - self.start_time).total_seconds(),
            "value": self.holder.value,
            "sessions": self.registry.get_status(),
            "bridge": self.bridge.get_status(),
            "store": self.store.get_status(),
            "special": self.special.get_status(),
        }

    def _build_app(self):
        @asynccontextmanager
        async def lifespan(app):
            await self.start()
            try:
                yield
            finally:
                await self.stop()

        app = FastAPI(title=f"Tally relay {self.config.node_id}", lifespan=lifespan)
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "OPTIONS"],
            allow_headers=["Content-Type"],
        )

        @app.exception_handler(HTTPException)
        async def http_exception_handler(request: Request, exc: HTTPException):
            if isinstance(exc.detail, dict) and "code" in exc.detail and "message" in exc.detail:
                payload = dict(exc.detail)
            else:
                payload = {"code": "HTTP_ERROR", "message": str(exc.detail)}
            return JSONResponse(status_code=exc.status_code, content=payload)

        @app.exception_handler(TallyError)
        async def tally_error_handler(request: Request, exc: TallyError):
            payload = {"code": exc.code, "message": exc.message}
            if exc.details is not None:
                payload["details"] = exc.details
            log.warning("request_rejected", path=str(request.url.path), code=exc.code, error=exc.message)
            return JSONResponse(status_code=exc.status_code, content=payload)

        @app.exception_handler(RequestValidationError)
        async def validation_error_handler(request: Request, exc: RequestValidationError):
            return JSONResponse(
                status_code=400,
                content={
                    "code": "INVALID_PAYLOAD",
                    "message": "Request payload is invalid",
                    "details": json.loads(json.dumps(exc.errors(), default=str)),
                },
            )

        @app.exception_handler(Exception)
        async def unhandled_exception_handler(request: Request, exc: Exception):
            log.error("relay_unhandled_exception", error=str(exc), path=str(request.url.path))
            return JSONResponse(
                status_code=500,
                content={"code": "INTERNAL_SERVER_ERROR", "message": "Unexpected relay error"},
            )

        @app.get("/")
        async def root():
            return {"node_id": self.config.node_id, "service": "tally-relay"}

        @app.get("/health")
        async def health():
            return {"status": "ok", "connected": self.bridge.connected}

        @app.get("/status")
        async def status():
            return self.get_status()

        # --- broadcast endpoint ---

        @app.get("/events")
        async def events():
            session = self.registry.open("sse")
            return StreamingResponse(
                self._sse_stream(session),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"},
            )

        @app.post("/events")
        async def post_event(payload: Dict[str, Any]):
            """Accept {count: number} and broadcast it to every open stream."""
            try:
                count = coerce_number(payload.get("count"))
            except InvalidValueError:
                return JSONResponse(status_code=400, content={"error": "Invalid count value"})

            if self._is_recent_duplicate(count):
                return {
                    "success": True,
                    "count": count,
                    "message": "Value unchanged, no broadcast needed",
                }

            await self.apply_count(count)
            log.info("count_posted", count=count, clients=self.registry.count())
            return {"success": True, "count": count, "clients": self.registry.count()}

        @app.websocket("/ws")
        async def relay_socket(websocket: WebSocket):
            await websocket.accept()
            session = self.registry.open("ws")
            session.send("count-update", self.holder.value)
            session.send("special-update", self.special.current.to_record())
            writer = asyncio.create_task(self._ws_writer(websocket, session))
            try:
                while True:
                    raw = await websocket.receive_text()
                    await self._on_ws_message(session, raw)
            except WebSocketDisconnect:
                pass
            finally:
                writer.cancel()
                self.registry.close(session)

        # --- admin surface ---

        @app.get("/counter")
        async def get_counter():
            state = CounterState.from_record(await self.store.get(COUNTER_KEY))
            return state.to_record()

        @app.put("/counter")
        async def set_counter(body: SetValueRequest):
            entry = await self.admin.set_value(body.value)
            return {"value": self.holder.value, "entry": entry.to_record()}

        @app.post("/counter/add")
        async def add_to_counter(body: AddRequest):
            entry = await self.admin.add(body.amount)
            return {"value": self.holder.value, "entry": entry.to_record()}

        @app.post("/counter/special")
        async def special_donation(body: SpecialRequest):
            entry, event = await self.admin.special(body.message, body.amount)
            return {
                "value": self.holder.value,
                "entry": entry.to_record(),
                "special": event.to_record(),
            }

        @app.get("/special")
        async def get_special():
            return self.special.get_status()

        @app.post("/counter/reset")
        async def reset_counter():
            value = await self.admin.reset()
            return {"value": value, "history": []}

        @app.get("/history")
        async def get_history(limit: Optional[int] = None):
            if limit is not None and limit < 1:
                raise _api_error(400, "INVALID_LIMIT", "limit must be >= 1")
            entries = await self.admin.history(limit)
            return {"entries": [e.to_record() for e in entries]}

        @app.post("/history/{entry_id}/rollback")
        async def rollback(entry_id: str, force: bool = False):
            value = await self.admin.rollback(entry_id, force=force)
            return {"value": value, "entry_id": entry_id}

        @app.get("/display")
        async def display():
            return self.display.view().model_dump(mode="json")

        return app
