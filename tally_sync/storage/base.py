import itertools
import uuid

import structlog

from ..models import COUNTER_KEY, HISTORY_KEY, WritePolicy, extract_number, isoformat_now
from ..register import parse_timestamp
from ..errors import HistoryEntryNotFound, RollbackConflict, RollbackNotAllowed

log = structlog.get_logger()


class SyncStore:
    """
    Shared key-value store with change notification.

    Records are plain dicts. `counter_history` is a keyed collection of
    entries rather than a single record. Every write notifies subscribers of
    the affected key with the record as it now stands (None once deleted).

    Subclasses provide the `_read_*` / `_write_*` primitives plus the two
    multi-key operations `_restore` and `_reset`, which must apply
    atomically.
    """

    def __init__(self, node_id="store", policy=WritePolicy.ARRIVAL):
        self.node_id = node_id
        self.policy = WritePolicy(policy)
        self._subscribers = {}  # token -> (key, callback)
        self._tokens = itertools.count(1)
        self.stats = {
            "reads": 0,
            "writes": 0,
            "rejected_writes": 0,
            "deletes": 0,
            "notifications": 0,
            "callback_errors": 0,
            "last_write_at": None,
            "last_writer": None,
        }

    # --- subscription ---

    @property
    def connected(self):
        return True

    def subscribe(self, key, callback):
        """Register `callback(record)` for `key`, deliver the current value
        right away and return a token for `unsubscribe`."""
        token = next(self._tokens)
        self._subscribers[token] = (key, callback)
        self._deliver(callback, key, self._snapshot(key))
        return token

    def unsubscribe(self, token):
        return self._subscribers.pop(token, None) is not None

    def subscriber_count(self, key=None):
        if key is None:
            return len(self._subscribers)
        return sum(1 for k, _ in self._subscribers.values() if k == key)

    def _notify(self, key):
        record = self._snapshot(key)
        for sub_key, callback in list(self._subscribers.values()):
            if sub_key == key:
                self._deliver(callback, key, record)

    def _deliver(self, callback, key, record):
        self.stats["notifications"] += 1
        try:
            callback(record)
        except Exception as e:
            self.stats["callback_errors"] += 1
            log.error("store_callback_failed", key=key, error=str(e))

    def _snapshot(self, key):
        if key == HISTORY_KEY:
            return self._read_children(key)
        return self._read(key)

    # --- single-key operations ---

    async def get(self, key):
        self.stats["reads"] += 1
        return self._snapshot(key)

    async def set(self, key, record, writer_id=None):
        """Overwrite `key`. Returns False if the write policy rejected it."""
        record = dict(record)
        if not self._write(key, record, writer_id or self.node_id):
            self._count_rejection(key, writer_id)
            return False
        self._count_write(writer_id)
        self._notify(key)
        return True

    async def update(self, key, fields, writer_id=None):
        """Merge `fields` into the record at `key`, keeping everything else.

        Returns the merged record, or None if the write policy rejected it.
        """
        merged = dict(self._read(key) or {})
        merged.update(fields)
        if not self._write(key, merged, writer_id or self.node_id):
            self._count_rejection(key, writer_id)
            return None
        self._count_write(writer_id)
        self._notify(key)
        return merged

    async def delete(self, key):
        self._delete(key)
        self.stats["deletes"] += 1
        self._notify(key)

    # --- keyed collections (history) ---

    async def push(self, key, record):
        """Append a child entry under `key` and return its id."""
        record = dict(record)
        child_id = record.get("id") or uuid.uuid4().hex
        record["id"] = child_id
        self._write_child(key, child_id, record)
        self._count_write(None)
        self._notify(key)
        return child_id

    async def children(self, key, limit=None):
        """Child entries of `key`, most recent first."""
        self.stats["reads"] += 1
        entries = list(self._read_children(key).values())
        entries.reverse()
        if limit is not None:
            entries = entries[:limit]
        return entries

    async def child(self, key, child_id):
        return self._read_children(key).get(child_id)

    async def remove_child(self, key, child_id):
        removed = self._delete_child(key, child_id)
        if removed:
            self.stats["deletes"] += 1
            self._notify(key)
        return removed

    # --- multi-key operations ---

    async def restore(self, entry_id, force=False, writer_id=None):
        """
        Roll the counter back to the `previousValue` of a history entry and
        drop that entry, as one transaction.

        Unless `force` is set the counter must still hold the entry's
        `value` (compare-and-set), otherwise RollbackConflict is raised and
        nothing changes.
        """
        entry = self._read_children(HISTORY_KEY).get(entry_id)
        if entry is None:
            raise HistoryEntryNotFound(f"history entry {entry_id} not found")
        if entry.get("type") == "reset" or extract_number(entry, "previousValue") is None:
            raise RollbackNotAllowed(
                "history entry has no previous value to restore",
                details={"entry_id": entry_id, "type": entry.get("type")},
            )

        current = extract_number(self._read(COUNTER_KEY))
        expected = extract_number(entry)
        if not force and current != expected:
            raise RollbackConflict(
                "counter changed since this entry was recorded",
                details={"entry_id": entry_id, "expected": expected, "current": current},
            )

        fields = {"value": entry["previousValue"], "updatedAt": isoformat_now()}
        merged = self._restore(
            entry_id, fields, writer_id or self.node_id, None if force else expected
        )
        self._count_write(writer_id)
        self._notify(COUNTER_KEY)
        self._notify(HISTORY_KEY)
        log.info(
            "history_restored",
            entry_id=entry_id,
            restored_value=fields["value"],
            forced=force,
        )
        return merged

    async def reset(self, writer_id=None):
        """Set the counter to 0 and clear the whole history in one go."""
        fields = {"value": 0, "updatedAt": isoformat_now()}
        merged = self._reset(fields, writer_id or self.node_id)
        self._count_write(writer_id)
        self._notify(COUNTER_KEY)
        self._notify(HISTORY_KEY)
        return merged

    # --- bookkeeping ---

    def _count_write(self, writer_id):
        self.stats["writes"] += 1
        self.stats["last_write_at"] = isoformat_now()
        self.stats["last_writer"] = writer_id or self.node_id

    def _count_rejection(self, key, writer_id):
        self.stats["rejected_writes"] += 1
        log.info("store_write_rejected", key=key, writer=writer_id, policy=self.policy.value)

    def _claim_timestamp(self, record):
        return parse_timestamp(record.get("updatedAt"))

    def get_status(self):
        return {
            "backend": type(self).__name__,
            "policy": self.policy.value,
            "connected": self.connected,
            "subscribers": self.subscriber_count(),
            "stats": dict(self.stats),
        }

    def close(self):
        self._subscribers.clear()

    # --- backend primitives ---

    def _read(self, key):
        raise NotImplementedError

    def _write(self, key, record, writer_id):
        """Store `record`. Return False if the write policy rejects it."""
        raise NotImplementedError

    def _delete(self, key):
        raise NotImplementedError

    def _read_children(self, key):
        """Ordered dict of child id -> record, oldest first."""
        raise NotImplementedError

    def _write_child(self, key, child_id, record):
        raise NotImplementedError

    def _delete_child(self, key, child_id):
        raise NotImplementedError

    def _restore(self, entry_id, fields, writer_id, expected):
        """Apply fields to the counter and drop the entry atomically. When
        `expected` is not None the counter must still hold that value."""
        raise NotImplementedError

    def _reset(self, fields, writer_id):
        raise NotImplementedError
