"""Pluggable pre-sync validation, body building and dynamic headers.

Hooks are host-supplied callables, sync or async. Each invocation carries a
timeout; on timeout or error the engine falls back to its default behaviour
(proceed, default envelope, static headers) so a slow or broken hook never
stalls delivery. Sync callables run in a worker thread.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)

Payloads = list[dict[str, Any]]
Extras = dict[str, Any]

PreSyncValidator = Callable[[Payloads, Extras], Union[bool, Awaitable[bool]]]
BodyBuilder = Callable[[Payloads, Extras], Union[dict[str, Any], None, Awaitable[dict[str, Any] | None]]]
HeadersCallback = Callable[[], Union[dict[str, str], Awaitable[dict[str, str]]]]


class HookTimeoutError(Exception):
    """A hook did not answer within the configured timeout."""


class HookRunner:
    """Invokes the optional sync hooks with timeout and fail-open fallback.

    Example:
        hooks = HookRunner(timeout=10.0)
        hooks.validator = lambda payloads, extras: len(payloads) > 0
        if await hooks.validate(payloads, extras):
            body = await hooks.build_body(payloads, extras)
    """

    def __init__(self, timeout: float = 10.0) -> None:
        """Initialize the hook runner.

        Args:
            timeout: Seconds to wait for any hook before failing open
        """
        self.timeout = timeout
        self.validator: PreSyncValidator | None = None
        self.body_builder: BodyBuilder | None = None
        self.headers_callback: HeadersCallback | None = None

        # At most one validation outstanding; concurrent triggers skip validation
        self._validation_pending = False

    @property
    def validation_pending(self) -> bool:
        """Whether a validation is currently outstanding."""
        return self._validation_pending

    async def _invoke(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Call a hook, awaiting coroutine results, bounded by the timeout."""
        if inspect.iscoroutinefunction(fn):
            pending: Awaitable[Any] = fn(*args)
        else:
            pending = asyncio.to_thread(fn, *args)

        try:
            result = await asyncio.wait_for(pending, timeout=self.timeout)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise HookTimeoutError(f"hook timed out after {self.timeout}s") from e
        return result

    async def validate(self, payloads: Payloads, extras: Extras) -> bool:
        """Ask the pre-sync validator whether this send may proceed.

        Returns True when no validator is registered, when another
        validation is already pending, or when the validator times out or
        raises.

        Args:
            payloads: Payloads about to be sent
            extras: Configured envelope extras

        Returns:
            False only if the validator explicitly rejected the send
        """
        validator = self.validator
        if validator is None:
            return True

        if self._validation_pending:
            logger.debug("Validation already in progress, allowing sync")
            return True

        self._validation_pending = True
        try:
            result = await self._invoke(validator, payloads, extras)
        except HookTimeoutError:
            logger.warning("Pre-sync validation timed out, allowing sync")
            return True
        except Exception as e:
            logger.warning("Pre-sync validation failed, allowing sync: %s", e)
            return True
        finally:
            self._validation_pending = False

        if result is False:
            logger.info("Pre-sync validation rejected %d payloads", len(payloads))
            return False
        return True

    async def build_body(self, payloads: Payloads, extras: Extras) -> dict[str, Any] | None:
        """Ask the body builder for a custom request body.

        Returns None (use the default envelope) when no builder is
        registered or when it times out, raises, or returns a non-mapping.
        An empty dict is passed through: it tells the caller to skip the send.

        Args:
            payloads: Payloads about to be sent
            extras: Configured envelope extras

        Returns:
            Custom body, empty dict to skip, or None for the default envelope
        """
        builder = self.body_builder
        if builder is None:
            return None

        try:
            result = await self._invoke(builder, payloads, extras)
        except HookTimeoutError:
            logger.warning("Sync body builder timed out, using default body")
            return None
        except Exception as e:
            logger.warning("Sync body builder failed, using default body: %s", e)
            return None

        if result is None:
            return None
        if not isinstance(result, dict):
            logger.warning(
                "Sync body builder returned %s, using default body", type(result).__name__
            )
            return None
        return result

    async def headers(self) -> dict[str, str]:
        """Fetch dynamic headers, or an empty mapping on timeout or error."""
        callback = self.headers_callback
        if callback is None:
            return {}

        try:
            result = await self._invoke(callback)
        except HookTimeoutError:
            logger.warning("Headers callback timed out, using static headers")
            return {}
        except Exception as e:
            logger.warning("Headers callback failed, using static headers: %s", e)
            return {}

        if not isinstance(result, dict):
            return {}
        return {str(k): str(v) for k, v in result.items()}
