import asyncio

import structlog

from ..config import Config
from ..models import COUNTER_KEY, SPECIAL_KEY, SpecialAnimationEvent, isoformat_now, utcnow

log = structlog.get_logger()

IDLE = "idle"
ANNOUNCING = "announcing"


class SpecialEventChannel:
    """
    Transient "special donation" announcement on its own store key.

    idle -> announcing when an active record shows up (from `announce` here
    or from another client). announcing -> idle when the local expiry timer
    fires, which also writes {active: false} back so late joiners don't see
    a stale announcement, or when someone else clears the record first.

    The counter record carries a copy of the flags (specialAnimation,
    message, amount); they are merged in and out, never overwriting the
    counter value.
    """

    def __init__(self, config: Config, store):
        self.config = config
        self.store = store
        self.state = IDLE
        self.current = SpecialAnimationEvent()
        self._token = None
        self._timer = None
        self._clear_tasks = set()
        self._listeners = []
        self.stats = {"announced": 0, "expired": 0, "cleared_remotely": 0, "clear_errors": 0}

    @property
    def duration(self):
        return self.config.special_duration

    def on_change(self, callback):
        self._listeners.append(callback)

    async def start(self):
        if self._token is None:
            self._token = self.store.subscribe(SPECIAL_KEY, self._on_record)

    async def stop(self):
        if self._token is not None:
            self.store.unsubscribe(self._token)
            self._token = None
        self._cancel_timer()
        for task in list(self._clear_tasks):
            task.cancel()
        self._clear_tasks.clear()

    async def announce(self, message, amount):
        event = SpecialAnimationEvent(
            active=True, message=message, amount=amount, started_at=utcnow()
        )
        record = dict(event.to_record(), updatedAt=isoformat_now())
        await self.store.set(SPECIAL_KEY, record, writer_id=self.config.node_id)
        await self.store.update(
            COUNTER_KEY,
            {
                "specialAnimation": True,
                "message": message,
                "amount": amount,
                "updatedAt": isoformat_now(),
            },
            writer_id=self.config.node_id,
        )
        self.stats["announced"] += 1
        log.info("special_announced", message=message, amount=amount, duration=self.duration)
        # a store without local notification still moves us to announcing
        if self.current != event:
            self._on_record(event.to_record())
        return event

    # --- state machine ---

    def _on_record(self, record):
        event = SpecialAnimationEvent.from_record(record)
        if not event.active:
            if self.state == ANNOUNCING:
                self.stats["cleared_remotely"] += 1
            self._cancel_timer()
            self._transition(IDLE, SpecialAnimationEvent())
            return

        if event == self.current and self._timer is not None:
            return

        remaining = self._remaining(event)
        if remaining <= 0:
            # announcement outlived its window before we saw it
            self._cancel_timer()
            self._transition(IDLE, SpecialAnimationEvent())
            task = asyncio.get_running_loop().create_task(self._clear(event))
            self._clear_tasks.add(task)
            task.add_done_callback(self._clear_tasks.discard)
            return

        self._cancel_timer()
        self._transition(ANNOUNCING, event)
        self._timer = asyncio.get_running_loop().create_task(self._expire(event, remaining))

    def _remaining(self, event):
        if event.started_at is None:
            return self.duration
        age = (utcnow() - event.started_at).total_seconds()
        return self.duration - max(age, 0.0)

    async def _expire(self, event, delay):
        await asyncio.sleep(delay)
        self._timer = None
        self.stats["expired"] += 1
        self._transition(IDLE, SpecialAnimationEvent())
        await self._clear(event)

    async def _clear(self, event):
        """Write {active: false} unless a newer announcement replaced `event`."""
        try:
            stored = SpecialAnimationEvent.from_record(await self.store.get(SPECIAL_KEY))
            if not stored.active or stored.started_at != event.started_at:
                return
            await self.store.set(
                SPECIAL_KEY,
                {"active": False, "updatedAt": isoformat_now()},
                writer_id=self.config.node_id,
            )
            await self.store.update(
                COUNTER_KEY,
                {
                    "specialAnimation": False,
                    "message": None,
                    "amount": None,
                    "updatedAt": isoformat_now(),
                },
                writer_id=self.config.node_id,
            )
            log.info("special_cleared", message=event.message)
        except Exception as e:
            self.stats["clear_errors"] += 1
            log.error("special_clear_failed", error=str(e))

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _transition(self, state, event):
        changed = state != self.state or event != self.current
        self.state = state
        self.current = event
        if not changed:
            return
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception as e:
                log.error("special_listener_failed", error=str(e))

    def get_status(self):
        return {
            "state": self.state,
            "event": self.current.to_record(),
            "timer_pending": self._timer is not None,
            "clear_pending": bool(self._clear_tasks),
            "duration": self.duration,
            "stats": dict(self.stats),
        }
