"""Remote synchronization: conflict detection, transport, driver and scheduler."""

from .cloud_sync import (
    CloudSyncDriver,
    ConnectionType,
    NetworkQuality,
    SyncResult,
    SyncSettings,
    recommended_settings,
)
from .conflict_detector import (
    ConflictDetectionResult,
    ConflictDetector,
    ConflictItem,
    ConflictType,
    LocalSnapshot,
    RecommendedAction,
    RemoteSnapshot,
    Severity,
)
from .scheduler import SyncScheduler
from .transport import Credentials, HttpTransport, RemoteTransport

__all__ = [
    "CloudSyncDriver",
    "ConnectionType",
    "NetworkQuality",
    "SyncResult",
    "SyncSettings",
    "recommended_settings",
    "ConflictDetectionResult",
    "ConflictDetector",
    "ConflictItem",
    "ConflictType",
    "LocalSnapshot",
    "RecommendedAction",
    "RemoteSnapshot",
    "Severity",
    "SyncScheduler",
    "Credentials",
    "HttpTransport",
    "RemoteTransport",
]
