"""ledgersync - local-first sync engine for a personal finance ledger."""

from .config import Config, load_config
from .errors import LedgerSyncError
from .events import EventEmitter, EventType, SyncEvent
from .session import LedgerSession

__version__ = "0.1.0"

__all__ = [
    "Config",
    "load_config",
    "LedgerSyncError",
    "EventEmitter",
    "EventType",
    "SyncEvent",
    "LedgerSession",
]
