"""Sync module for the durable outbox, retry policy and HTTP transport."""

from locus_sync.sync.hooks import HookRunner
from locus_sync.sync.network import ConnectivityChangeEvent, NetworkMonitor
from locus_sync.sync.queue import DeadLetterEntry, QueueItem, StorageError, UploadQueue
from locus_sync.sync.retry import Outcome, calculate_delay, classify_status
from locus_sync.sync.uploader import SyncUploader, UploadResult

__all__ = [
    "ConnectivityChangeEvent",
    "DeadLetterEntry",
    "HookRunner",
    "NetworkMonitor",
    "Outcome",
    "QueueItem",
    "StorageError",
    "SyncUploader",
    "UploadQueue",
    "UploadResult",
    "calculate_delay",
    "classify_status",
]
