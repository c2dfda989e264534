"""Sync engine: state machine, triggers and host-facing events."""

from locus_sync.engine.events import EventEmitter, HttpEvent, LogEntry, SyncEvent
from locus_sync.engine.manager import SyncManager, SyncState, SyncStatus

__all__ = [
    "EventEmitter",
    "HttpEvent",
    "LogEntry",
    "SyncEvent",
    "SyncManager",
    "SyncState",
    "SyncStatus",
]
