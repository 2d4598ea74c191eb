from .base import SyncStore
from .memory_store import MemoryStore
from .sqlite_store import SQLiteStore


def build_store(config):
    """Create the store selected by STORE_BACKEND."""
    if config.store_backend == "sqlite":
        return SQLiteStore(config.sqlite_path, node_id=config.node_id, policy=config.write_policy)
    if config.store_backend == "memory":
        return MemoryStore(node_id=config.node_id, policy=config.write_policy)
    raise ValueError(f"unknown STORE_BACKEND {config.store_backend!r}")


__all__ = ["SyncStore", "MemoryStore", "SQLiteStore", "build_store"]
