"""Connectivity state observed by the sync engine."""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectivityChangeEvent:
    """Emitted when the link comes up, goes down, or changes metering."""

    connected: bool
    metered: bool

    def to_dict(self) -> dict[str, Any]:
        return {"connected": self.connected, "metered": self.metered}


class NetworkMonitor:
    """Thread-safe view of the device's network link.

    A platform observer (or the built-in reachability probe) calls
    ``update()`` from its own thread; the sync engine only reads
    ``connected`` and ``metered``.

    Example:
        monitor = NetworkMonitor()
        monitor.on_change(lambda e: print(f"connected={e.connected}"))
        monitor.update(connected=False)
    """

    def __init__(
        self,
        connected: bool = True,
        metered: bool = False,
        probe_url: str | None = None,
        probe_interval: float = 30.0,
    ) -> None:
        """Initialize the network monitor.

        Args:
            connected: Initial connectivity
            metered: Initial metering (cellular or capped link)
            probe_url: Optional URL polled to infer connectivity
            probe_interval: Seconds between probes
        """
        self._connected = connected
        self._metered = metered
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[ConnectivityChangeEvent], None]] = []

        self.probe_url = probe_url
        self.probe_interval = probe_interval
        self._probe_task: asyncio.Task | None = None
        self._client: httpx.AsyncClient | None = None

    @property
    def connected(self) -> bool:
        """Whether any network link is up."""
        with self._lock:
            return self._connected

    @property
    def metered(self) -> bool:
        """Whether the active link is metered."""
        with self._lock:
            return self._metered

    def on_change(
        self, callback: Callable[[ConnectivityChangeEvent], None]
    ) -> Callable[[], None]:
        """Register a callback for connectivity changes.

        Args:
            callback: Function called with the new state after each change

        Returns:
            Function that unregisters the callback
        """
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def update(self, connected: bool, metered: bool | None = None) -> None:
        """Record a new link state, notifying callbacks if it changed.

        Args:
            connected: Whether any network link is up
            metered: Whether the link is metered (unchanged if None)
        """
        with self._lock:
            new_metered = self._metered if metered is None else metered
            changed = connected != self._connected or new_metered != self._metered
            self._connected = connected
            self._metered = new_metered

        if not changed:
            return

        logger.info("Network changed: connected=%s, metered=%s", connected, new_metered)
        event = ConnectivityChangeEvent(connected=connected, metered=new_metered)
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                logger.exception("Connectivity callback failed")

    async def start(self) -> None:
        """Start the reachability probe if a probe URL is configured."""
        if not self.probe_url or self._probe_task is not None:
            return
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(5.0))
        self._probe_task = asyncio.create_task(self._probe_loop(), name="locus-network-probe")

    async def check(self) -> bool:
        """Probe the configured URL once and update the connected flag.

        Any HTTP response counts as connected; transport errors do not.

        Returns:
            The connectivity observed by this probe
        """
        if not self.probe_url:
            return self.connected

        client = self._client or httpx.AsyncClient(timeout=httpx.Timeout(5.0))
        try:
            await client.get(self.probe_url)
            reachable = True
        except httpx.HTTPError as e:
            logger.debug("Network probe failed: %s", e)
            reachable = False
        finally:
            if client is not self._client:
                await client.aclose()

        self.update(connected=reachable)
        return reachable

    async def _probe_loop(self) -> None:
        while True:
            try:
                await self.check()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Network probe error: %s", e)
            await asyncio.sleep(self.probe_interval)

    async def stop(self) -> None:
        """Stop the probe and release its HTTP client."""
        if self._probe_task and not self._probe_task.done():
            self._probe_task.cancel()
            try:
                await self._probe_task
            except asyncio.CancelledError:
                pass
        self._probe_task = None

        if self._client is not None:
            await self._client.aclose()
            self._client = None
