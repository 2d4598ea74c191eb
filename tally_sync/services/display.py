import structlog

from ..models import DisplayMode, DisplayView, SpecialAnimationEvent, utcnow

log = structlog.get_logger()


class DisplaySurface:
    """Read-only view over the holder and the current special announcement.

    An active announcement older than `special_duration` is shown as the
    plain counter even if nobody has cleared it yet.
    """

    def __init__(self, holder, special_duration=10.0):
        self.holder = holder
        self.special_duration = special_duration
        self.special = SpecialAnimationEvent()
        self.connected = False
        self._listeners = []
        self._last_view = None
        self._token = holder.watch(lambda update: self._changed())

    def on_change(self, callback):
        self._listeners.append(callback)

    def set_special(self, record):
        if isinstance(record, SpecialAnimationEvent):
            self.special = record
        else:
            self.special = SpecialAnimationEvent.from_record(record)
        self._changed()

    def set_connected(self, connected):
        self.connected = bool(connected)
        self._changed()

    def _announcing(self):
        if not self.special.active:
            return False
        if self.special.started_at is None:
            return True
        age = (utcnow() - self.special.started_at).total_seconds()
        return age < self.special_duration

    def view(self):
        if self._announcing():
            return DisplayView(
                mode=DisplayMode.SPECIAL,
                value=self.holder.value,
                message=self.special.message,
                amount=self.special.amount,
                connected=self.connected,
            )
        return DisplayView(value=self.holder.value, connected=self.connected)

    def _changed(self):
        view = self.view()
        if view == self._last_view:
            return
        self._last_view = view
        for callback in list(self._listeners):
            try:
                callback(view)
            except Exception as e:
                log.error("display_listener_failed", error=str(e))

    def close(self):
        self.holder.unwatch(self._token)
