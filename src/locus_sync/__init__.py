"""Offline-first sync engine for the Locus background geolocation SDK."""

__version__ = "0.1.0"

from locus_sync.config import Settings, get_settings
from locus_sync.engine import EventEmitter, SyncManager, SyncState, SyncStatus
from locus_sync.sync import NetworkMonitor, QueueItem, UploadQueue

__all__ = [
    "EventEmitter",
    "NetworkMonitor",
    "QueueItem",
    "Settings",
    "SyncManager",
    "SyncState",
    "SyncStatus",
    "UploadQueue",
    "__version__",
    "get_settings",
]
