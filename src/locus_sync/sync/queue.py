"""SQLite-backed durable outbox for offline-first payload delivery."""

import copy
import json
import sqlite3
import threading
import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from locus_sync.logging import queue_logger

logger = queue_logger()

DEAD_LETTER_REASON = "max_retries_exhausted"


class StorageError(Exception):
    """Raised when the durable store cannot be read or written."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def _from_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


@dataclass
class QueueItem:
    """A payload waiting in the outbox."""

    id: str
    payload: dict[str, Any]
    idempotency_key: str
    created_at: datetime
    retry_count: int = 0
    next_retry_at: datetime | None = None
    type: str | None = None

    def is_eligible(self, now: datetime | None = None) -> bool:
        """Whether the item's backoff window has elapsed."""
        if self.next_retry_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        return self.next_retry_at <= now

    def to_dict(self) -> dict[str, Any]:
        """Return the diagnostic representation used by hosts and the CLI."""
        data: dict[str, Any] = {
            "id": self.id,
            "createdAt": self.created_at.isoformat(),
            "payload": self.payload,
            "retryCount": self.retry_count,
            "idempotencyKey": self.idempotency_key,
        }
        if self.next_retry_at is not None:
            data["nextRetryAt"] = self.next_retry_at.isoformat()
        if self.type is not None:
            data["type"] = self.type
        return data


@dataclass(frozen=True)
class DeadLetterEntry:
    """Audit record of a payload that exhausted its retry budget."""

    id: str
    reason: str
    attempts: int
    payload: dict[str, Any] = field(hash=False)
    timestamp: datetime
    type: str | None = None
    idempotency_key: str | None = None

    def to_event_data(self) -> dict[str, Any]:
        """Return the ``deadletter`` event body."""
        return {
            "reason": self.reason,
            "attempts": self.attempts,
            "payload": copy.deepcopy(self.payload),
            "timestamp": self.timestamp.isoformat(),
        }


class UploadQueue:
    """SQLite-backed durable outbox with a bounded dead-letter log.

    Items persist across process restarts and are read back in creation
    order. Reads are non-destructive: an item only leaves the active table
    when it is removed after a successful send or moved to the dead-letter
    log. All operations share one connection and are serialized by a lock,
    so concurrent completions cannot lose a retry update.
    """

    def __init__(
        self,
        db_path: Path | str,
        dead_letter_capacity: int = 100,
        max_days: int = 0,
        max_records: int = 0,
    ) -> None:
        """Initialize the durable queue.

        Args:
            db_path: Path to the SQLite database file, or ":memory:"
            dead_letter_capacity: Maximum entries kept in the dead-letter log
            max_days: Drop active items older than this many days (0 disables)
            max_records: Keep at most this many active items (0 disables)
        """
        self.db_path = str(db_path)
        self.dead_letter_capacity = dead_letter_capacity
        self.max_days = max_days
        self.max_records = max_records
        self._lock = threading.Lock()

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._create_tables()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open queue database {self.db_path}: {e}") from e

    def _create_tables(self) -> None:
        """Create the queue and dead-letter tables if they don't exist."""
        with self._conn:
            # seq breaks created_at ties so FIFO order is stable
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS queue (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    payload TEXT NOT NULL,
                    type TEXT,
                    idempotency_key TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    next_retry_at INTEGER,
                    created_at INTEGER NOT NULL
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_queue_created
                ON queue (created_at, seq)
            """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS dead_letter (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    type TEXT,
                    idempotency_key TEXT,
                    reason TEXT NOT NULL,
                    attempts INTEGER NOT NULL,
                    failed_at INTEGER NOT NULL
                )
            """)

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> QueueItem:
        return QueueItem(
            id=row["id"],
            payload=json.loads(row["payload"]),
            type=row["type"],
            idempotency_key=row["idempotency_key"],
            retry_count=row["retry_count"],
            next_retry_at=_from_ms(row["next_retry_at"]),
            created_at=_from_ms(row["created_at"]),
        )

    @staticmethod
    def _row_to_dead_letter(row: sqlite3.Row) -> DeadLetterEntry:
        return DeadLetterEntry(
            id=row["id"],
            reason=row["reason"],
            attempts=row["attempts"],
            payload=json.loads(row["payload"]),
            type=row["type"],
            idempotency_key=row["idempotency_key"],
            timestamp=_from_ms(row["failed_at"]),
        )

    def enqueue(
        self,
        payload: dict[str, Any],
        type: str | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        """Add a payload to the outbox.

        Args:
            payload: JSON-serializable document to deliver
            type: Optional caller-supplied category
            idempotency_key: Stable key sent with every attempt; generated
                when not supplied

        Returns:
            Queue item ID (UUID)

        Raises:
            StorageError: If the payload cannot be persisted
        """
        item_id = str(uuid.uuid4())
        key = idempotency_key or str(uuid.uuid4())
        now = _now_ms()

        try:
            payload_json = json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Payload is not JSON serializable: {e}") from e

        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        """
                        INSERT INTO queue
                            (id, payload, type, idempotency_key, retry_count, next_retry_at, created_at)
                        VALUES (?, ?, ?, ?, 0, NULL, ?)
                        """,
                        (item_id, payload_json, type, key, now),
                    )
                    self._prune(now)
            except sqlite3.Error as e:
                raise StorageError(f"Failed to enqueue payload: {e}") from e

        return item_id

    def _prune(self, now: int) -> None:
        """Apply retention limits. Caller holds the lock and transaction."""
        if self.max_days > 0:
            cutoff = now - self.max_days * 24 * 60 * 60 * 1000
            cursor = self._conn.execute("DELETE FROM queue WHERE created_at < ?", (cutoff,))
            if cursor.rowcount:
                logger.info("Pruned %d queue items older than %d days", cursor.rowcount, self.max_days)
        if self.max_records > 0:
            cursor = self._conn.execute(
                """
                DELETE FROM queue WHERE seq IN (
                    SELECT seq FROM queue ORDER BY created_at DESC, seq DESC LIMIT -1 OFFSET ?
                )
                """,
                (self.max_records,),
            )
            if cursor.rowcount:
                logger.info("Pruned %d queue items over the %d record limit", cursor.rowcount, self.max_records)

    def read_eligible(self, limit: int, exclude: Iterable[str] = ()) -> list[QueueItem]:
        """Get items ready for dispatch without removing them.

        Items whose ``next_retry_at`` lies in the future, and items listed in
        ``exclude`` (typically those already in flight), are skipped.

        Args:
            limit: Maximum number of items to return
            exclude: Item IDs to leave out

        Returns:
            List of QueueItem objects ordered by creation time
        """
        if limit <= 0:
            return []

        excluded = set(exclude)
        now = _now_ms()
        items: list[QueueItem] = []

        with self._lock:
            cursor = self._conn.execute(
                """
                SELECT * FROM queue
                WHERE next_retry_at IS NULL OR next_retry_at <= ?
                ORDER BY created_at ASC, seq ASC
                """,
                (now,),
            )
            for row in cursor:
                if row["id"] in excluded:
                    continue
                items.append(self._row_to_item(row))
                if len(items) >= limit:
                    break
        return items

    def get_queue(self, limit: int | None = None) -> list[QueueItem]:
        """Get all active items in creation order, eligible or not.

        Args:
            limit: Maximum number of items to return (None for all)

        Returns:
            List of QueueItem objects
        """
        with self._lock:
            cursor = self._conn.execute(
                "SELECT * FROM queue ORDER BY created_at ASC, seq ASC LIMIT ?",
                (limit if limit and limit > 0 else -1,),
            )
            return [self._row_to_item(row) for row in cursor.fetchall()]

    def get_items(self, ids: Iterable[str]) -> list[QueueItem]:
        """Get the active items with the given IDs, in creation order."""
        wanted = list(dict.fromkeys(ids))
        if not wanted:
            return []

        placeholders = ",".join("?" for _ in wanted)
        with self._lock:
            cursor = self._conn.execute(
                f"SELECT * FROM queue WHERE id IN ({placeholders}) ORDER BY created_at ASC, seq ASC",
                wanted,
            )
            return [self._row_to_item(row) for row in cursor.fetchall()]

    def remove(self, ids: Iterable[str]) -> int:
        """Remove items after a successful send. Absent IDs are ignored.

        Args:
            ids: Queue item IDs

        Returns:
            Number of items removed
        """
        ids = list(ids)
        if not ids:
            return 0

        placeholders = ",".join("?" for _ in ids)
        with self._lock:
            with self._conn:
                cursor = self._conn.execute(f"DELETE FROM queue WHERE id IN ({placeholders})", ids)
        return cursor.rowcount

    def update_retry(self, item_id: str, retry_count: int, next_retry_at: datetime) -> None:
        """Record a failed attempt and when the item becomes eligible again.

        Args:
            item_id: Queue item ID
            retry_count: Number of failed attempts so far
            next_retry_at: Earliest time of the next attempt
        """
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "UPDATE queue SET retry_count = ?, next_retry_at = ? WHERE id = ?",
                    (retry_count, _to_ms(next_retry_at), item_id),
                )

    def move_to_dead_letter(
        self,
        item_id: str,
        reason: str = DEAD_LETTER_REASON,
        attempts: int | None = None,
    ) -> DeadLetterEntry | None:
        """Move an item from active delivery to the dead-letter log.

        The delete, the insert and capacity eviction happen in a single
        transaction, so the item is never present in both places.

        Args:
            item_id: Queue item ID
            reason: Why the item was abandoned
            attempts: Attempt count to record (defaults to the stored retry count)

        Returns:
            The new DeadLetterEntry, or None if the item was not queued
        """
        with self._lock:
            row = self._conn.execute("SELECT * FROM queue WHERE id = ?", (item_id,)).fetchone()
            if row is None:
                return None

            entry = DeadLetterEntry(
                id=row["id"],
                reason=reason,
                attempts=attempts if attempts is not None else row["retry_count"],
                payload=json.loads(row["payload"]),
                type=row["type"],
                idempotency_key=row["idempotency_key"],
                timestamp=datetime.now(timezone.utc),
            )
            with self._conn:
                self._conn.execute("DELETE FROM queue WHERE id = ?", (item_id,))
                self._insert_dead_letter(entry, row["payload"])
        return entry

    def record_dead_letter(
        self,
        payload: dict[str, Any],
        reason: str = DEAD_LETTER_REASON,
        attempts: int = 0,
        type: str | None = None,
    ) -> DeadLetterEntry:
        """Append a payload that was never queued to the dead-letter log."""
        entry = DeadLetterEntry(
            id=str(uuid.uuid4()),
            reason=reason,
            attempts=attempts,
            payload=copy.deepcopy(payload),
            type=type,
            timestamp=datetime.now(timezone.utc),
        )
        with self._lock:
            with self._conn:
                self._insert_dead_letter(entry, json.dumps(payload))
        return entry

    def _insert_dead_letter(self, entry: DeadLetterEntry, payload_json: str) -> None:
        """Insert and evict the oldest entries beyond capacity. Caller holds the lock."""
        self._conn.execute(
            """
            INSERT INTO dead_letter
                (id, payload, type, idempotency_key, reason, attempts, failed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                payload_json,
                entry.type,
                entry.idempotency_key,
                entry.reason,
                entry.attempts,
                _to_ms(entry.timestamp),
            ),
        )
        self._conn.execute(
            """
            DELETE FROM dead_letter WHERE seq NOT IN (
                SELECT seq FROM dead_letter ORDER BY seq DESC LIMIT ?
            )
            """,
            (self.dead_letter_capacity,),
        )

    def read_dead_letter(self, limit: int | None = None) -> list[DeadLetterEntry]:
        """Get dead-letter entries, oldest first."""
        with self._lock:
            cursor = self._conn.execute(
                "SELECT * FROM dead_letter ORDER BY seq ASC LIMIT ?",
                (limit if limit and limit > 0 else -1,),
            )
            return [self._row_to_dead_letter(row) for row in cursor.fetchall()]

    def clear_dead_letter(self) -> int:
        """Delete every dead-letter entry."""
        with self._lock:
            with self._conn:
                cursor = self._conn.execute("DELETE FROM dead_letter")
        return cursor.rowcount

    def clear(self) -> int:
        """Remove all active items. The dead-letter log is kept.

        Returns:
            Number of items removed
        """
        with self._lock:
            with self._conn:
                cursor = self._conn.execute("DELETE FROM queue")
        return cursor.rowcount

    def count(self) -> int:
        """Number of active items, eligible or not."""
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM queue").fetchone()[0]

    def count_eligible(self, exclude: Iterable[str] = ()) -> int:
        """Number of active items whose backoff has elapsed, minus ``exclude``."""
        excluded = set(exclude)
        with self._lock:
            cursor = self._conn.execute(
                "SELECT id FROM queue WHERE next_retry_at IS NULL OR next_retry_at <= ?",
                (_now_ms(),),
            )
            return sum(1 for row in cursor if row["id"] not in excluded)

    def get_stats(self) -> dict[str, int]:
        """Get queue statistics.

        Returns:
            Dictionary with pending, waiting (in backoff) and dead-letter counts
        """
        now = _now_ms()
        with self._lock:
            total = self._conn.execute("SELECT COUNT(*) FROM queue").fetchone()[0]
            waiting = self._conn.execute(
                "SELECT COUNT(*) FROM queue WHERE next_retry_at > ?", (now,)
            ).fetchone()[0]
            dead = self._conn.execute("SELECT COUNT(*) FROM dead_letter").fetchone()[0]

        return {
            "pending": total - waiting,
            "waiting": waiting,
            "dead_letter": dead,
            "total": total,
        }

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
