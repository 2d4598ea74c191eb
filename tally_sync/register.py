from datetime import datetime, timezone

from .models import WritePolicy

EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def parse_timestamp(raw):
    """Best-effort parse of an updatedAt field. Unknown values sort first."""
    if isinstance(raw, datetime):
        ts = raw
    elif isinstance(raw, str):
        try:
            ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return EPOCH
    else:
        return EPOCH
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class KeyRegister:
    """
    Last-writer-wins register guarding one store key.
    Under the timestamp policy a write only lands if its updatedAt is later
    (or equal with a higher-or-equal writer id). Under the arrival policy
    every write lands and the store's apply order decides.
    """

    def __init__(self, policy=WritePolicy.ARRIVAL):
        self.policy = WritePolicy(policy)
        self._timestamp = EPOCH
        self._writer_id = ""

    @property
    def timestamp(self):
        return self._timestamp

    @property
    def writer_id(self):
        return self._writer_id

    def accepts(self, timestamp, writer_id):
        if self.policy == WritePolicy.ARRIVAL:
            return True
        return timestamp > self._timestamp or (
            timestamp == self._timestamp and writer_id >= self._writer_id
        )

    def claim(self, timestamp, writer_id):
        """Record a write. Returns False when the policy rejects it."""
        if not self.accepts(timestamp, writer_id):
            return False
        self._timestamp = timestamp
        self._writer_id = writer_id
        return True

    def reset(self):
        self._timestamp = EPOCH
        self._writer_id = ""

    def to_dict(self):
        return {
            "policy": self.policy.value,
            "timestamp": self._timestamp.isoformat(),
            "writer_id": self._writer_id,
        }
