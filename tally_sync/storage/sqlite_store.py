import asyncio
import json
import os
import sqlite3

import structlog

from ..errors import RollbackConflict
from ..models import COUNTER_KEY, HISTORY_KEY, WritePolicy, extract_number
from ..register import KeyRegister, parse_timestamp
from .base import SyncStore

log = structlog.get_logger()


class SQLiteStore(SyncStore):
    """
    SQLite-backed store. Several processes may share one database file;
    `start_polling` picks up their commits and notifies local subscribers.
    """

    def __init__(self, db_path="/data/tally.db", node_id="store", policy=WritePolicy.ARRIVAL):
        super().__init__(node_id, policy)
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.running = False
        self._closed = False
        self._last_seen = {}
        self._data_version = None
        self._init_tables()

    def _init_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS records (
                key TEXT PRIMARY KEY,
                record_json TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                writer_id TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS children (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                parent TEXT NOT NULL,
                child_id TEXT NOT NULL,
                record_json TEXT NOT NULL,
                UNIQUE (parent, child_id)
            );
        """)

    @property
    def connected(self):
        return not self._closed

    # --- primitives ---

    def _read(self, key):
        row = self.conn.execute(
            "SELECT record_json FROM records WHERE key = ?", (key,)
        ).fetchone()
        if not row:
            return None
        return json.loads(row["record_json"])

    def _register_for(self, key):
        reg = KeyRegister(self.policy)
        row = self.conn.execute(
            "SELECT updated_at, writer_id FROM records WHERE key = ?", (key,)
        ).fetchone()
        if row:
            reg.claim(parse_timestamp(row["updated_at"]), row["writer_id"])
        return reg

    def _upsert(self, key, record, writer_id):
        self.conn.execute(
            "INSERT INTO records (key, record_json, updated_at, writer_id) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET record_json = excluded.record_json, "
            "updated_at = excluded.updated_at, writer_id = excluded.writer_id",
            (
                key,
                json.dumps(record),
                self._claim_timestamp(record).isoformat(),
                writer_id,
            ),
        )

    def _write(self, key, record, writer_id):
        with self._transaction():
            if not self._register_for(key).accepts(self._claim_timestamp(record), writer_id):
                return False
            self._upsert(key, record, writer_id)
        return True

    def _delete(self, key):
        self.conn.execute("DELETE FROM records WHERE key = ?", (key,))

    def _read_children(self, key):
        rows = self.conn.execute(
            "SELECT child_id, record_json FROM children WHERE parent = ? ORDER BY seq",
            (key,),
        ).fetchall()
        return {r["child_id"]: json.loads(r["record_json"]) for r in rows}

    def _write_child(self, key, child_id, record):
        self.conn.execute(
            "INSERT OR REPLACE INTO children (parent, child_id, record_json) VALUES (?, ?, ?)",
            (key, child_id, json.dumps(record)),
        )

    def _delete_child(self, key, child_id):
        cur = self.conn.execute(
            "DELETE FROM children WHERE parent = ? AND child_id = ?", (key, child_id)
        )
        return cur.rowcount > 0

    def _restore(self, entry_id, fields, writer_id, expected):
        with self._transaction():
            current = self._read(COUNTER_KEY) or {}
            if expected is not None and extract_number(current) != expected:
                raise RollbackConflict("counter changed since this entry was recorded")
            merged = dict(current)
            merged.update(fields)
            self._upsert(COUNTER_KEY, merged, writer_id)
            self._delete_child(HISTORY_KEY, entry_id)
        return merged

    def _reset(self, fields, writer_id):
        with self._transaction():
            merged = dict(self._read(COUNTER_KEY) or {})
            merged.update(fields)
            self._upsert(COUNTER_KEY, merged, writer_id)
            self.conn.execute("DELETE FROM children WHERE parent = ?", (HISTORY_KEY,))
        return merged

    def _transaction(self):
        return _Transaction(self.conn)

    # --- change notification across processes ---

    def _notify(self, key):
        self._last_seen[key] = self._snapshot(key)
        super()._notify(key)

    def subscribe(self, key, callback):
        self._last_seen.setdefault(key, self._snapshot(key))
        return super().subscribe(key, callback)

    def poll_changes(self):
        """Notify subscribers of keys changed by other connections.
        Returns the keys that changed."""
        version = self.conn.execute("PRAGMA data_version").fetchone()[0]
        if version == self._data_version:
            return []
        self._data_version = version

        changed = []
        watched = {key for key, _ in self._subscribers.values()}
        for key in watched:
            if self._snapshot(key) != self._last_seen.get(key):
                changed.append(key)
                self._notify(key)
        if changed:
            log.info("store_external_change", keys=changed)
        return changed

    async def start_polling(self, interval=1.0):
        self.running = True
        self._data_version = self.conn.execute("PRAGMA data_version").fetchone()[0]
        while self.running:
            await asyncio.sleep(interval)
            try:
                self.poll_changes()
            except sqlite3.Error as e:
                log.error("store_poll_failed", error=str(e))

    def stop(self):
        self.running = False

    def close(self):
        self.stop()
        super().close()
        if not self._closed:
            self._closed = True
            self.conn.close()


class _Transaction:
    """BEGIN IMMEDIATE ... COMMIT, rolled back on error."""

    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        self.conn.execute("BEGIN IMMEDIATE")
        return self.conn

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.conn.execute("COMMIT")
        else:
            self.conn.execute("ROLLBACK")
        return False
