"""Structured JSON logging for the Locus sync engine.

Provides audit-friendly logging with contextual fields for queue operations,
HTTP attempts, and state changes. Payload contents are never logged.

Usage:
    from locus_sync.logging import setup_logging, get_logger

    setup_logging("INFO")
    log = get_logger("locus_sync.sync")
    log.info("http_result", extra={"status": 200, "item_count": 3})
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from functools import lru_cache
from logging.handlers import RotatingFileHandler
from pathlib import Path

from pythonjsonlogger import jsonlogger

from locus_sync import __version__

# Device identifier, set by setup_logging()
_device_id: str | None = None


class LocusJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter that adds SDK context to all log records."""

    def add_fields(
        self,
        log_record: dict,
        record: logging.LogRecord,
        message_dict: dict,
    ) -> None:
        """Add standard fields to every log record."""
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = self.formatTime(record)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        log_record["sdk_version"] = __version__
        if _device_id:
            log_record["device_id"] = _device_id

        if "message" not in log_record and record.getMessage():
            log_record["message"] = record.getMessage()

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        """Format time as ISO 8601."""
        dt = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return dt.isoformat()


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    device_id: str | None = None,
    max_bytes: int = 10_000_000,  # 10MB
    backup_count: int = 5,
) -> None:
    """Configure root logger with JSON formatting.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path for rotating file handler
        device_id: Identifier of the device running the SDK
        max_bytes: Max size per log file for rotation
        backup_count: Number of backup files to keep
    """
    global _device_id
    if device_id:
        _device_id = device_id

    formatter = LocusJsonFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # JSON to stderr for easy parsing
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


@lru_cache(maxsize=32)
def get_logger(name: str) -> logging.Logger:
    """Get a named logger with SDK context.

    Args:
        name: Logger name (e.g., 'locus_sync.sync', 'locus_sync.queue')

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def sync_logger() -> logging.Logger:
    """Get logger for HTTP sync events."""
    return get_logger("locus_sync.sync")


def state_logger() -> logging.Logger:
    """Get logger for state changes."""
    return get_logger("locus_sync.state")


def queue_logger() -> logging.Logger:
    """Get logger for durable queue events."""
    return get_logger("locus_sync.queue")


# --- Audit Event Functions ---


def log_state_change(
    logger: logging.Logger,
    old_state: str,
    new_state: str,
    trigger: str | None = None,
) -> None:
    """Log a state transition.

    Args:
        logger: Logger instance
        old_state: Previous state
        new_state: New state
        trigger: What triggered the change
    """
    extra = {
        "event": "state_change",
        "old_state": old_state,
        "new_state": new_state,
    }
    if trigger:
        extra["trigger"] = trigger
    logger.info("State changed", extra=extra)


def log_http_result(
    logger: logging.Logger,
    status: int,
    ok: bool,
    item_count: int,
    elapsed_ms: float,
) -> None:
    """Log the outcome of one HTTP attempt.

    Args:
        logger: Logger instance
        status: HTTP status code (0 for transport errors)
        ok: Whether the status was 2xx
        item_count: Number of queue items carried by the request
        elapsed_ms: Round-trip time in milliseconds
    """
    extra = {
        "event": "http_result",
        "status": status,
        "ok": ok,
        "item_count": item_count,
        "elapsed_ms": elapsed_ms,
    }
    if ok:
        logger.info("HTTP sync succeeded", extra=extra)
    else:
        logger.warning("HTTP sync failed", extra=extra)


def log_retry_scheduled(
    logger: logging.Logger,
    item_ids: list[str],
    attempt: int,
    delay_ms: int,
) -> None:
    """Log a scheduled retry.

    Args:
        logger: Logger instance
        item_ids: Queue item IDs that will be retried together
        attempt: Attempt number the retry will be
        delay_ms: Backoff delay in milliseconds
    """
    logger.info(
        "Retry scheduled",
        extra={
            "event": "retry_scheduled",
            "item_ids": item_ids,
            "attempt": attempt,
            "delay_ms": delay_ms,
        },
    )


def log_dead_letter(
    logger: logging.Logger,
    item_id: str | None,
    reason: str,
    attempts: int,
) -> None:
    """Log an item leaving active delivery for the dead-letter log.

    Args:
        logger: Logger instance
        item_id: Queue item ID (None for payloads that were never stored)
        reason: Why the item was dead-lettered
        attempts: Number of attempts made
    """
    logger.error(
        "Item dead-lettered",
        extra={
            "event": "dead_letter",
            "item_id": item_id,
            "reason": reason,
            "attempts": attempts,
        },
    )
