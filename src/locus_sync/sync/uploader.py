"""Async HTTP transport for sync requests."""

import json
import time
from dataclasses import dataclass
from typing import Any

import httpx

from locus_sync import __version__


@dataclass
class UploadResult:
    """Result of a single HTTP attempt."""

    status: int
    ok: bool
    response_text: str
    elapsed_ms: float = 0.0
    error: str | None = None


class SyncUploader:
    """Sends JSON bodies to the configured endpoint.

    Uses httpx.AsyncClient for connection pooling. Makes exactly one attempt
    per call: retry and backoff belong to the sync manager, which persists
    the retry state. Transport errors are reported as status 0 rather than
    raised.
    """

    def __init__(
        self,
        url: str,
        method: str = "POST",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the uploader.

        Args:
            url: Endpoint receiving sync requests
            method: HTTP verb
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.url = url
        self.method = method.upper()
        self.timeout = timeout

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={
                "User-Agent": f"locus-sync/{__version__}",
            },
            transport=transport,
        )

    async def send(self, body: dict[str, Any], headers: dict[str, str]) -> UploadResult:
        """Send one request.

        Args:
            body: JSON document to send
            headers: Request headers (Content-Type is always set to JSON)

        Returns:
            UploadResult with the status and raw response text
        """
        request_headers = dict(headers)
        request_headers["Content-Type"] = "application/json"
        started = time.monotonic()

        try:
            content = json.dumps(body).encode("utf-8")
        except (TypeError, ValueError) as e:
            return UploadResult(
                status=0,
                ok=False,
                response_text=f"Body is not JSON serializable: {e}",
                error=str(e),
            )

        try:
            response = await self._client.request(
                self.method,
                self.url,
                content=content,
                headers=request_headers,
            )
        except httpx.ConnectError as e:
            error = f"Connection error: {e}"
        except httpx.TimeoutException as e:
            error = f"Timeout: {e}"
        except httpx.HTTPError as e:
            error = f"HTTP error: {e}"
        except Exception as e:
            # InvalidURL, or a client closed while the request was pending
            error = f"Request failed: {e}"
        else:
            return UploadResult(
                status=response.status_code,
                ok=200 <= response.status_code < 300,
                response_text=response.text,
                elapsed_ms=(time.monotonic() - started) * 1000,
            )

        return UploadResult(
            status=0,
            ok=False,
            response_text=error,
            elapsed_ms=(time.monotonic() - started) * 1000,
            error=error,
        )

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        await self._client.aclose()

    async def __aenter__(self) -> "SyncUploader":
        """Enter async context manager."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        """Exit async context manager."""
        await self.close()
