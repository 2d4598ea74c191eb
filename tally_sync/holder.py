import itertools

import structlog

from .models import CounterUpdate, Origin, coerce_number

log = structlog.get_logger()


class CounterStateHolder:
    """
    Process-local copy of the tally.

    Every change is handed to watchers as a CounterUpdate tagged with its
    origin. Remote updates are tagged REMOTE so the bridge never writes them
    back; local writes are tagged LOCAL and get published.
    """

    def __init__(self, initial=0):
        self._value = coerce_number(initial)
        self._watchers = {}
        self._tokens = itertools.count(1)
        self.stats = {"local_updates": 0, "remote_updates": 0, "ignored_remote": 0}

    @property
    def value(self):
        return self._value

    def watch(self, callback):
        token = next(self._tokens)
        self._watchers[token] = callback
        return token

    def unwatch(self, token):
        return self._watchers.pop(token, None) is not None

    def update_local(self, value):
        """Apply a value that arrived from elsewhere. Not republished."""
        value = coerce_number(value)
        if value == self._value:
            self.stats["ignored_remote"] += 1
            return False
        self.stats["remote_updates"] += 1
        self._apply(value, Origin.REMOTE)
        return True

    def set_value(self, value):
        """Local (UI/admin) write; watchers see it as LOCAL."""
        value = coerce_number(value)
        self.stats["local_updates"] += 1
        self._apply(value, Origin.LOCAL)
        return True

    def _apply(self, value, origin):
        update = CounterUpdate(value=value, previous=self._value, origin=origin)
        self._value = value
        for callback in list(self._watchers.values()):
            try:
                callback(update)
            except Exception as e:
                log.error("holder_watcher_failed", origin=origin.value, error=str(e))
