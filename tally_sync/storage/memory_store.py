import copy

from ..errors import RollbackConflict
from ..models import COUNTER_KEY, HISTORY_KEY, WritePolicy, extract_number
from ..register import KeyRegister
from .base import SyncStore


class MemoryStore(SyncStore):
    """In-process store. Every operation completes without yielding, so the
    multi-key operations are atomic with respect to other coroutines."""

    def __init__(self, node_id="store", policy=WritePolicy.ARRIVAL):
        super().__init__(node_id, policy)
        self._records = {}
        self._children = {}  # key -> {child_id: record}, insertion ordered
        self._registers = {}

    def _register(self, key):
        if key not in self._registers:
            self._registers[key] = KeyRegister(self.policy)
        return self._registers[key]

    def _read(self, key):
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    def _write(self, key, record, writer_id):
        if not self._register(key).claim(self._claim_timestamp(record), writer_id):
            return False
        self._records[key] = copy.deepcopy(record)
        return True

    def _delete(self, key):
        self._records.pop(key, None)
        self._registers.pop(key, None)

    def _read_children(self, key):
        return copy.deepcopy(self._children.get(key, {}))

    def _write_child(self, key, child_id, record):
        self._children.setdefault(key, {})[child_id] = copy.deepcopy(record)

    def _delete_child(self, key, child_id):
        return self._children.get(key, {}).pop(child_id, None) is not None

    def _restore(self, entry_id, fields, writer_id, expected):
        if expected is not None and extract_number(self._records.get(COUNTER_KEY)) != expected:
            raise RollbackConflict("counter changed since this entry was recorded")
        merged = dict(self._records.get(COUNTER_KEY) or {})
        merged.update(fields)
        self._register(COUNTER_KEY).reset()
        self._register(COUNTER_KEY).claim(self._claim_timestamp(merged), writer_id)
        self._records[COUNTER_KEY] = merged
        self._children.get(HISTORY_KEY, {}).pop(entry_id, None)
        return copy.deepcopy(merged)

    def _reset(self, fields, writer_id):
        merged = dict(self._records.get(COUNTER_KEY) or {})
        merged.update(fields)
        self._register(COUNTER_KEY).reset()
        self._register(COUNTER_KEY).claim(self._claim_timestamp(merged), writer_id)
        self._records[COUNTER_KEY] = merged
        self._children[HISTORY_KEY] = {}
        return copy.deepcopy(merged)
