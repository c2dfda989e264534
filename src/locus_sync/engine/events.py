"""Event sink for HTTP, sync, log and connectivity events."""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

from locus_sync.sync.network import ConnectivityChangeEvent

logger = logging.getLogger(__name__)

E = TypeVar("E")

DEADLETTER = "deadletter"


@dataclass(frozen=True)
class HttpEvent:
    """Outcome of one HTTP attempt, successful or not."""

    status: int
    ok: bool
    response_text: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "ok": self.ok, "responseText": self.response_text}


@dataclass(frozen=True)
class SyncEvent:
    """Terminal sync outcome, e.g. an item moved to the dead-letter log."""

    type: str
    data: dict[str, Any] = field(hash=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data}


@dataclass(frozen=True)
class LogEntry:
    """A log line surfaced to the host application."""

    level: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


class EventEmitter:
    """Fan-out of engine events to host subscribers.

    Subscribers run synchronously on the emitting context. A failing
    subscriber is logged and skipped so it cannot stall delivery.

    Example:
        emitter = EventEmitter()
        unsubscribe = emitter.on_http(lambda e: print(e.status))
        ...
        unsubscribe()
    """

    def __init__(self, log_capacity: int = 500) -> None:
        """Initialize the emitter.

        Args:
            log_capacity: Number of recent log entries kept for diagnostics
        """
        self._http_callbacks: list[Callable[[HttpEvent], None]] = []
        self._sync_callbacks: list[Callable[[SyncEvent], None]] = []
        self._log_callbacks: list[Callable[[LogEntry], None]] = []
        self._connectivity_callbacks: list[Callable[[ConnectivityChangeEvent], None]] = []

        self._logs: deque[LogEntry] = deque(maxlen=log_capacity)
        self._lock = threading.Lock()

    @staticmethod
    def _subscribe(callbacks: list[Callable[[E], None]], callback: Callable[[E], None]) -> Callable[[], None]:
        callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    @staticmethod
    def _notify(callbacks: list[Callable[[E], None]], event: E) -> None:
        for callback in list(callbacks):
            try:
                callback(event)
            except Exception:
                logger.exception("Event callback failed for %s", type(event).__name__)

    def on_http(self, callback: Callable[[HttpEvent], None]) -> Callable[[], None]:
        """Register callback for every HTTP attempt."""
        return self._subscribe(self._http_callbacks, callback)

    def on_sync(self, callback: Callable[[SyncEvent], None]) -> Callable[[], None]:
        """Register callback for terminal sync events (dead-letter)."""
        return self._subscribe(self._sync_callbacks, callback)

    def on_log(self, callback: Callable[[LogEntry], None]) -> Callable[[], None]:
        """Register callback for engine log entries."""
        return self._subscribe(self._log_callbacks, callback)

    def on_connectivity_change(
        self, callback: Callable[[ConnectivityChangeEvent], None]
    ) -> Callable[[], None]:
        """Register callback for network link changes."""
        return self._subscribe(self._connectivity_callbacks, callback)

    def emit_http(self, event: HttpEvent) -> None:
        self._notify(self._http_callbacks, event)

    def emit_sync(self, event: SyncEvent) -> None:
        self._notify(self._sync_callbacks, event)

    def emit_connectivity(self, event: ConnectivityChangeEvent) -> None:
        self._notify(self._connectivity_callbacks, event)

    def emit_log(self, level: str, message: str) -> LogEntry:
        """Record a log entry and notify log subscribers."""
        entry = LogEntry(level=level, message=message)
        with self._lock:
            self._logs.append(entry)
        self._notify(self._log_callbacks, entry)
        return entry

    def recent_logs(self, limit: int | None = None) -> list[LogEntry]:
        """Most recent log entries, oldest first."""
        with self._lock:
            entries = list(self._logs)
        if limit is not None and limit > 0:
            entries = entries[-limit:]
        return entries

    def clear(self) -> None:
        """Drop every subscriber and the log buffer."""
        self._http_callbacks.clear()
        self._sync_callbacks.clear()
        self._log_callbacks.clear()
        self._connectivity_callbacks.clear()
        with self._lock:
            self._logs.clear()
