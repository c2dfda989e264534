"""Retry policy: exponential backoff and HTTP status classification."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from locus_sync.config import RetryEnvelope


class Outcome(Enum):
    """How the engine treats the result of one HTTP attempt."""

    SUCCESS = "success"
    AUTH_PAUSE = "auth_pause"
    RETRY = "retry"


@dataclass(frozen=True)
class RetryDecision:
    """What to do with an item after a failed attempt."""

    attempt: int
    dead_letter: bool
    delay_ms: int = 0
    next_retry_at: datetime | None = None


def calculate_delay(attempt: int, base_delay: int, multiplier: float, max_delay: int) -> int:
    """Backoff delay in milliseconds before the given attempt.

    >>> calculate_delay(3, 5000, 2.0, 300000)
    20000
    """
    if attempt <= 1:
        return base_delay
    delay = min(base_delay * multiplier ** (attempt - 1), max_delay)
    return int(max(delay, base_delay))


def classify_status(status: int) -> Outcome:
    """Map an HTTP status (0 for transport errors) to an outcome.

    Only 401 is special-cased; every other non-2xx status, including 4xx
    client errors and 429, goes through the standard retry path.
    """
    if 200 <= status < 300:
        return Outcome.SUCCESS
    if status == 401:
        return Outcome.AUTH_PAUSE
    return Outcome.RETRY


def next_attempt(
    retry_count: int,
    envelope: RetryEnvelope,
    now: datetime | None = None,
) -> RetryDecision:
    """Decide between rescheduling and dead-lettering after a failure.

    Args:
        retry_count: Failed attempts recorded before this one
        envelope: Backoff parameters
        now: Reference time (defaults to the current UTC time)

    Returns:
        RetryDecision for the attempt that just failed
    """
    attempt = retry_count + 1
    if attempt > envelope.max_retry:
        return RetryDecision(attempt=attempt, dead_letter=True)

    delay_ms = calculate_delay(attempt, envelope.base_delay, envelope.multiplier, envelope.max_delay)
    now = now or datetime.now(timezone.utc)
    return RetryDecision(
        attempt=attempt,
        dead_letter=False,
        delay_ms=delay_ms,
        next_retry_at=now + timedelta(milliseconds=delay_ms),
    )
