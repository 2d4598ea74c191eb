from .admin import AdminService
from .bridge import RelayBridge, StoreBridge, SyncBridge
from .display import DisplaySurface
from .relay import RelayService, SessionRegistry
from .special import SpecialEventChannel

__all__ = [
    "AdminService",
    "DisplaySurface",
    "RelayBridge",
    "RelayService",
    "SessionRegistry",
    "SpecialEventChannel",
    "StoreBridge",
    "SyncBridge",
]
