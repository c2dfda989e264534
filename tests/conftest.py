"""Shared fixtures for the sync engine tests."""

import json
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from locus_sync.config import Settings
from locus_sync.engine import SyncManager
from locus_sync.sync import UploadQueue

ENDPOINT = "https://api.example.com/locations"


class RecordingServer:
    """Fake endpoint built on httpx.MockTransport.

    Raises queued transport errors first, then answers with queued status
    codes, then ``default_status``.
    """

    def __init__(
        self,
        statuses: list[int] | None = None,
        default_status: int = 200,
        errors: list[Exception] | None = None,
    ):
        self.statuses = list(statuses or [])
        self.errors = list(errors or [])
        self.default_status = default_status
        self.requests: list[httpx.Request] = []

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.errors:
            raise self.errors.pop(0)
        status = self.statuses.pop(0) if self.statuses else self.default_status
        return httpx.Response(status, text=f"status {status}")

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def bodies(self) -> list[dict]:
        return [json.loads(request.content) for request in self.requests]

    def header_values(self, name: str) -> list[str | None]:
        return [request.headers.get(name) for request in self.requests]


def make_settings(data_dir: Path, **overrides) -> Settings:
    """Settings isolated from the environment, with millisecond backoff."""
    values = {
        "url": ENDPOINT,
        "retry_delay": 10,
        "max_retry_delay": 50,
        "data_dir": data_dir,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def queue(tmp_path):
    """A durable queue in a temporary directory."""
    q = UploadQueue(tmp_path / "queue.db")
    yield q
    q.close()


@pytest.fixture
def server():
    """Fake endpoint answering 200 by default."""
    return RecordingServer()


@pytest_asyncio.fixture
async def make_manager(tmp_path):
    """Factory for started sync managers; every manager is destroyed after the test."""
    managers: list[SyncManager] = []

    async def _make(server: RecordingServer, start: bool = True, **overrides) -> SyncManager:
        manager = SyncManager(make_settings(tmp_path, **overrides), transport=server.transport)
        managers.append(manager)
        if start:
            await manager.start()
        return manager

    yield _make

    for manager in managers:
        await manager.destroy()
