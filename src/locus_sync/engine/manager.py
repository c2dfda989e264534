"""Sync manager coordinating the durable queue, HTTP dispatch and retries."""

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from locus_sync.config import Settings
from locus_sync.engine.events import DEADLETTER, EventEmitter, HttpEvent, SyncEvent
from locus_sync.logging import (
    log_dead_letter,
    log_http_result,
    log_retry_scheduled,
    log_state_change,
    state_logger,
    sync_logger,
)
from locus_sync.sync.body import (
    batch_idempotency_key,
    build_batch_body,
    build_location_body,
    build_queue_body,
    merge_headers,
)
from locus_sync.sync.hooks import BodyBuilder, HeadersCallback, HookRunner, PreSyncValidator
from locus_sync.sync.network import ConnectivityChangeEvent, NetworkMonitor
from locus_sync.sync.queue import (
    DEAD_LETTER_REASON,
    DeadLetterEntry,
    QueueItem,
    UploadQueue,
)
from locus_sync.sync.retry import Outcome, classify_status, next_attempt
from locus_sync.sync.uploader import SyncUploader, UploadResult

logger = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class SyncState(Enum):
    """State of the sync engine."""

    IDLE = "idle"
    SYNCING = "syncing"
    PAUSED = "paused"


@dataclass(frozen=True)
class SyncStatus:
    """Point-in-time snapshot of the engine."""

    state: SyncState
    is_paused: bool
    network_connected: bool
    is_metered: bool
    queue_length: int
    in_flight: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "isPaused": self.is_paused,
            "networkConnected": self.network_connected,
            "isMetered": self.is_metered,
            "queueLength": self.queue_length,
            "inFlight": self.in_flight,
        }


class SyncManager:
    """Offline-first delivery engine for queued payloads.

    Producers call ``enqueue``; triggers (threshold, manual, heartbeat, app
    lifecycle, connectivity restored, retry timers) flush eligible items to
    the configured endpoint. Successful items are removed, failed items are
    rescheduled with exponential backoff or dead-lettered, and an HTTP 401
    pauses all delivery until ``resume()``.

    All dispatch runs on the event loop the manager is bound to. ``enqueue``,
    ``pause`` and ``resume`` may be called from any thread.

    Example:
        manager = SyncManager(settings)
        await manager.start()
        manager.enqueue({"event": "check-in"}, type="custom")
        ...
        await manager.destroy()
    """

    def __init__(
        self,
        config: Settings,
        queue: UploadQueue | None = None,
        monitor: NetworkMonitor | None = None,
        events: EventEmitter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the sync manager.

        Args:
            config: Settings instance with endpoint, retry and batching options
            queue: Durable queue (defaults to one under ``config.data_path``)
            monitor: Network monitor (defaults to an always-connected monitor,
                probing ``config.network_probe_url`` if set)
            events: Event sink shared with the host
            transport: Optional httpx transport for the uploader
        """
        self.config = config
        self._log_sync = sync_logger()
        self._log_state = state_logger()

        self._owns_queue = queue is None
        self._queue = queue or UploadQueue(
            config.queue_db_path,
            dead_letter_capacity=config.dead_letter_capacity,
            max_days=config.queue_max_days,
            max_records=config.queue_max_records,
        )
        self._monitor = monitor or NetworkMonitor(
            probe_url=config.network_probe_url,
            probe_interval=config.network_probe_interval,
        )
        self.events = events or EventEmitter()
        self._hooks = HookRunner(timeout=config.hook_timeout)
        self._uploader = SyncUploader(
            url=config.url or "",
            method=config.http_method,
            timeout=config.http_timeout,
            transport=transport,
        )
        self._envelope = config.retry_envelope()

        # isPaused is written from response handlers and read by every trigger
        self._state_lock = threading.Lock()
        self._paused = config.start_paused
        self._last_state = SyncState.PAUSED if self._paused else SyncState.IDLE

        self._loop: asyncio.AbstractEventLoop | None = None
        self._running = False
        self._released = False
        self._in_flight: set[str] = set()
        self._dispatch_tasks: set[asyncio.Task] = set()
        self._retry_tasks: set[asyncio.Task] = set()
        self._heartbeat_task: asyncio.Task | None = None

        self._unsubscribe_network = self._monitor.on_change(self._handle_network_change)

    # ---- state

    @property
    def queue(self) -> UploadQueue:
        """The durable queue backing this manager."""
        return self._queue

    @property
    def monitor(self) -> NetworkMonitor:
        """The network monitor consulted for admission."""
        return self._monitor

    @property
    def is_paused(self) -> bool:
        """Whether delivery is halted until ``resume()``."""
        with self._state_lock:
            return self._paused

    @property
    def state(self) -> SyncState:
        """Current engine state."""
        if self.is_paused:
            return SyncState.PAUSED
        if self._dispatch_tasks:
            return SyncState.SYNCING
        return SyncState.IDLE

    @property
    def status(self) -> SyncStatus:
        """Snapshot of the process-wide sync state."""
        return SyncStatus(
            state=self.state,
            is_paused=self.is_paused,
            network_connected=self._monitor.connected,
            is_metered=self._monitor.metered,
            queue_length=self._queue.count(),
            in_flight=len(self._in_flight),
        )

    def _update_state(self, trigger: str) -> None:
        new_state = self.state
        with self._state_lock:
            old_state = self._last_state
            self._last_state = new_state
        if old_state != new_state:
            log_state_change(self._log_state, old_state.value, new_state.value, trigger)

    def _set_paused(self, paused: bool, trigger: str) -> None:
        with self._state_lock:
            self._paused = paused
        self._update_state(trigger)

    def _log(self, level: str, message: str) -> None:
        """Log to Python logging and to the host's log stream."""
        logger.log(_LEVELS.get(level, logging.INFO), message)
        self.events.emit_log(level, message)

    # ---- lifecycle

    async def start(self) -> None:
        """Bind to the running loop, start the heartbeat and network observer.

        Any eligible items left over from a previous process are flushed.

        Raises:
            RuntimeError: If the manager was destroyed
        """
        if self._released:
            raise RuntimeError("sync manager was destroyed; create a new one")
        if self._running:
            return

        self._loop = asyncio.get_running_loop()
        self._running = True

        await self._monitor.start()

        if self.config.heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(
                self._heartbeat_worker(), name="locus-sync-heartbeat"
            )

        self._log(
            "info",
            f"sync manager started: url={self.config.url}, batch={self.config.batch_sync}, "
            f"paused={self.is_paused}",
        )
        self._flush("startup", limit=self.config.max_batch_size)

    async def destroy(self) -> None:
        """Stop timers and the network observer and release resources.

        Requests already in flight are given up to ``http_timeout`` to settle;
        their outcomes are still recorded. SyncState is reset.
        """
        self._running = False
        self._released = True

        if self._heartbeat_task and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
        self._heartbeat_task = None

        self._unsubscribe_network()
        await self._monitor.stop()

        if self._dispatch_tasks:
            await asyncio.wait(set(self._dispatch_tasks), timeout=self.config.http_timeout)

        # Settled dispatches may have scheduled retries of their own
        retry_tasks = list(self._retry_tasks)
        for task in retry_tasks:
            task.cancel()
        if retry_tasks:
            await asyncio.gather(*retry_tasks, return_exceptions=True)

        await self._uploader.close()
        if self._owns_queue:
            self._queue.close()

        with self._state_lock:
            self._paused = False
            self._last_state = SyncState.IDLE
        self._in_flight.clear()
        self._loop = None
        logger.info("Sync manager destroyed")

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Wait until no dispatch or retry timer is outstanding."""

        async def _drain() -> None:
            while self._dispatch_tasks or self._retry_tasks:
                await asyncio.gather(
                    *(self._dispatch_tasks | self._retry_tasks), return_exceptions=True
                )

        await asyncio.wait_for(_drain(), timeout)

    def _bind_loop(self) -> None:
        if self._loop is None and not self._released:
            self._loop = asyncio.get_running_loop()

    async def _heartbeat_worker(self) -> None:
        """Periodic trigger, so backed-off items are retried after restarts."""
        while self._running:
            await asyncio.sleep(self.config.heartbeat_interval)
            try:
                self._flush("heartbeat")
            except Exception as e:
                self._log("error", f"heartbeat sync error: {e}")

    # ---- producer API

    def enqueue(
        self,
        payload: dict[str, Any],
        type: str | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        """Persist a payload for delivery and fire the threshold trigger.

        Args:
            payload: JSON document to deliver
            type: Optional category
            idempotency_key: Stable key (generated if omitted)

        Returns:
            Queue item ID

        Raises:
            StorageError: If the payload cannot be persisted
        """
        item_id = self._queue.enqueue(payload, type=type, idempotency_key=idempotency_key)
        self._log("debug", f"enqueued {item_id} type={type}")
        if self.config.auto_sync:
            self._trigger("threshold")
        return item_id

    def get_queue(self, limit: int | None = None) -> list[QueueItem]:
        """Queued items in creation order, for inspection."""
        return self._queue.get_queue(limit)

    def get_dead_letters(self, limit: int | None = None) -> list[DeadLetterEntry]:
        """Entries in the dead-letter log, oldest first."""
        return self._queue.read_dead_letter(limit)

    def clear_queue(self) -> int:
        """Drop every queued item. The dead-letter log is kept."""
        removed = self._queue.clear()
        self._log("info", f"queue cleared: {removed} items")
        return removed

    async def sync_queue(self, limit: int | None = None) -> int:
        """Dispatch up to ``limit`` eligible items now.

        Returns once requests are scheduled; outcomes arrive as events.

        Args:
            limit: Maximum items to send (defaults to ``max_batch_size``)

        Returns:
            Number of items dispatched
        """
        self._bind_loop()
        return self._flush("manual", limit=limit or self.config.max_batch_size)

    async def sync_now(self, payload: dict[str, Any] | None = None) -> int:
        """Manual trigger, optionally carrying a fresh location.

        With batching, the payload (if any) is queued and a batch is flushed.
        Without batching, the payload is sent on its own under the
        ``location`` root and retried in memory; it is never stored.

        Returns:
            Number of payloads dispatched
        """
        self._bind_loop()
        if self.config.batch_sync or payload is None:
            if payload is not None:
                self._queue.enqueue(payload, type="location")
            return self._flush("manual")

        if not self._admitted("manual"):
            return 0
        self._start_task(self._process_adhoc(payload, 0), "manual")
        return 1

    def pause(self) -> None:
        """Halt issuance of new requests. In-flight requests are not cancelled."""
        self._set_paused(True, "pause")
        self._log("info", "sync paused by app request")

    def resume(self) -> None:
        """Lift a pause and immediately flush eligible items."""
        self._set_paused(False, "resume")
        self._log("info", "sync resumed, processing pending items")
        self._trigger("resume", limit=self.config.max_batch_size)

    def on_app_state_change(self, foreground: bool) -> None:
        """Lifecycle trigger for app foreground/background transitions."""
        self._trigger("foreground" if foreground else "background")

    def set_body_builder(self, builder: BodyBuilder | None) -> None:
        """Register (or clear) the custom body builder."""
        self._hooks.body_builder = builder

    def set_pre_sync_validator(self, validator: PreSyncValidator | None) -> None:
        """Register (or clear) the pre-sync validator."""
        self._hooks.validator = validator

    def set_headers_callback(self, callback: HeadersCallback | None) -> None:
        """Register (or clear) the dynamic headers provider."""
        self._hooks.headers_callback = callback

    # ---- triggers

    def _trigger(self, reason: str, limit: int | None = None) -> None:
        """Request a flush on the manager's loop, from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("Sync trigger ignored, manager not started: reason=%s", reason)
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            self._flush(reason, limit)
        else:
            loop.call_soon_threadsafe(self._flush, reason, limit)

    def _handle_network_change(self, event: ConnectivityChangeEvent) -> None:
        self.events.emit_connectivity(event)
        if event.connected:
            self._trigger("connectivity")

    def _admitted(self, reason: str) -> bool:
        if self._released:
            return False
        if not self.config.url:
            self._log("debug", f"sync skipped ({reason}): no url configured")
            return False
        if self.is_paused:
            self._log("debug", f"sync skipped ({reason}): sync is paused, call resume()")
            return False
        if not self._monitor.connected:
            self._log("debug", f"sync skipped ({reason}): network unavailable")
            return False
        if self._monitor.metered and self.config.disable_auto_sync_on_cellular:
            self._log("debug", f"sync skipped ({reason}): metered network")
            return False
        return True

    def _threshold_reached(self) -> bool:
        eligible = self._queue.count_eligible(exclude=self._in_flight)
        if self.config.batch_sync:
            threshold = self.config.auto_sync_threshold or self.config.max_batch_size
        else:
            threshold = max(self.config.auto_sync_threshold, 1)
        return eligible >= threshold

    def _flush(self, reason: str, limit: int | None = None) -> int:
        """Read eligible items and dispatch them. Runs on the manager's loop.

        Automatic triggers send one batch (batching on) or the single oldest
        item (batching off); ``limit`` widens that for manual and resume
        flushes.
        """
        if not self._admitted(reason):
            return 0
        if reason == "threshold" and not self._threshold_reached():
            return 0

        batch_size = self.config.max_batch_size
        if self.config.batch_sync:
            items = self._queue.read_eligible(limit or batch_size, exclude=self._in_flight)
            groups = [items[i : i + batch_size] for i in range(0, len(items), batch_size)]
        else:
            items = self._queue.read_eligible(limit or 1, exclude=self._in_flight)
            groups = [[item] for item in items]

        if not items:
            return 0

        self._dispatch(groups, reason)
        return len(items)

    # ---- dispatch

    def _start_task(self, coro: Any, reason: str) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._on_dispatch_done)
        self._update_state(reason)
        return task

    def _on_dispatch_done(self, task: asyncio.Task) -> None:
        self._dispatch_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._log("error", f"sync dispatch failed: {task.exception()}")
        self._update_state("settled")

    def _dispatch(self, groups: list[list[QueueItem]], reason: str) -> None:
        for group in groups:
            self._in_flight.update(item.id for item in group)
        count = sum(len(group) for group in groups)
        self._log("debug", f"sync ({reason}): {count} items in {len(groups)} requests")
        self._start_task(self._process(groups), reason)

    async def _process(self, groups: list[list[QueueItem]]) -> None:
        """Validate once for the whole trigger, then send every group concurrently."""
        unsent = list(groups)
        try:
            payloads = [item.payload for group in groups for item in group]
            if not await self._hooks.validate(payloads, dict(self.config.extras)):
                self._log("info", "sync aborted by pre-sync validator")
                return
            unsent = []
            results = await asyncio.gather(
                *(self._send_group(group) for group in groups), return_exceptions=True
            )
            for result in results:
                if isinstance(result, Exception):
                    self._log("error", f"sync dispatch failed: {result}")
        finally:
            for group in unsent:
                self._release(group)

    def _release(self, items: list[QueueItem]) -> None:
        self._in_flight.difference_update(item.id for item in items)

    async def _send_group(self, items: list[QueueItem]) -> None:
        """Send one group; its items stay in flight until this group settles."""
        try:
            await self._send_items(items)
        finally:
            self._release(items)

    async def _request_headers(self, idempotency_key: str | None) -> dict[str, str]:
        dynamic = await self._hooks.headers()
        idempotency: dict[str, str] = {}
        if idempotency_key and self.config.idempotency_header:
            idempotency[self.config.idempotency_header] = idempotency_key
        return merge_headers(self.config.headers, dynamic, idempotency)

    async def _send_items(self, items: list[QueueItem]) -> None:
        if self.is_paused:
            return

        batch = self.config.batch_sync
        payloads = [item.payload for item in items]
        extras = dict(self.config.extras)

        custom = await self._hooks.build_body(payloads, extras)
        if custom is not None and not custom:
            self._log("info", f"sync skipped by body builder: {len(items)} items stay queued")
            return

        if custom is not None:
            body = custom
        elif batch:
            body = build_batch_body(payloads, extras, self.config.params, self.config.http_root_property)
        else:
            body = build_queue_body(items[0], extras, self.config.params, self.config.http_root_property)

        key = batch_idempotency_key(items) if batch else items[0].idempotency_key
        headers = await self._request_headers(key)

        if self.is_paused:
            return

        result = await self._uploader.send(body, headers)
        self._handle_result(items, result)

    def _report(self, result: UploadResult, item_count: int) -> Outcome:
        self.events.emit_http(HttpEvent(result.status, result.ok, result.response_text))
        log_http_result(self._log_sync, result.status, result.ok, item_count, result.elapsed_ms)
        if result.ok:
            self._log("info", f"http {result.status}")
        else:
            self._log("error", f"http {result.status} {result.response_text}")

        outcome = classify_status(result.status)
        if outcome is Outcome.AUTH_PAUSE:
            self._set_paused(True, "http_401")
            self._log("error", "http 401 - sync paused")
        return outcome

    def _handle_result(self, items: list[QueueItem], result: UploadResult) -> None:
        outcome = self._report(result, len(items))
        if outcome is Outcome.SUCCESS:
            self._queue.remove(item.id for item in items)
        elif outcome is Outcome.RETRY:
            self._schedule_retry(items)

    def _schedule_retry(self, items: list[QueueItem]) -> None:
        """Reschedule or dead-letter a failed group with one shared attempt count."""
        decision = next_attempt(max(item.retry_count for item in items), self._envelope)
        ids = [item.id for item in items]

        if decision.dead_letter:
            for item_id in ids:
                entry = self._queue.move_to_dead_letter(item_id, DEAD_LETTER_REASON, decision.attempt)
                if entry is not None:
                    self._emit_dead_letter(entry)
            return

        for item_id in ids:
            self._queue.update_retry(item_id, decision.attempt, decision.next_retry_at)
        log_retry_scheduled(self._log_sync, ids, decision.attempt, decision.delay_ms)

        task = asyncio.create_task(self._retry_after(ids, decision.delay_ms / 1000))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _retry_after(self, ids: list[str], delay: float) -> None:
        await asyncio.sleep(delay)
        if not self._admitted("retry"):
            return

        # A newer failure may have pushed next_retry_at past this timer
        items = [
            item
            for item in self._queue.get_items(ids)
            if item.id not in self._in_flight and item.is_eligible()
        ]
        if not items:
            return

        if self.config.batch_sync:
            groups = [items]
        else:
            groups = [[item] for item in items]
        self._dispatch(groups, "retry")

    def _emit_dead_letter(self, entry: DeadLetterEntry) -> None:
        log_dead_letter(self._log_sync, entry.id, entry.reason, entry.attempts)
        self.events.emit_sync(SyncEvent(type=DEADLETTER, data=entry.to_event_data()))

    # ---- ad-hoc sends

    async def _process_adhoc(self, payload: dict[str, Any], retry_count: int) -> None:
        """Send one location that is not in the queue, retrying in memory."""
        extras = dict(self.config.extras)
        if not await self._hooks.validate([payload], extras):
            self._log("info", "sync aborted by pre-sync validator")
            return
        if self.is_paused:
            return

        custom = await self._hooks.build_body([payload], extras)
        if custom is not None and not custom:
            self._log("info", "sync skipped by body builder")
            return
        body = custom if custom is not None else build_location_body(
            payload, extras, self.config.params, self.config.http_root_property
        )
        headers = await self._request_headers(None)
        if self.is_paused:
            return

        result = await self._uploader.send(body, headers)
        if self._report(result, 1) is not Outcome.RETRY:
            return

        decision = next_attempt(retry_count, self._envelope)
        if decision.dead_letter:
            entry = self._queue.record_dead_letter(
                payload, DEAD_LETTER_REASON, decision.attempt, type="location"
            )
            self._emit_dead_letter(entry)
            return

        log_retry_scheduled(self._log_sync, [], decision.attempt, decision.delay_ms)
        task = asyncio.create_task(self._retry_adhoc(payload, decision.attempt, decision.delay_ms / 1000))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _retry_adhoc(self, payload: dict[str, Any], retry_count: int, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._admitted("retry"):
            self._start_task(self._process_adhoc(payload, retry_count), "retry")
