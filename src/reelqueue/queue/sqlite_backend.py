"""SQLite implementation of QueueBackend.

This module provides the local-first, crash-safe durable queue using:
- sqlite-utils for schema management and read helpers
- WAL mode with synchronous=FULL so a published message survives a crash
- BEGIN IMMEDIATE transactions for atomic claim
- Exponential backoff retry for database lock handling
- Heartbeat leases for redelivery after a consumer crash
"""

import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from sqlite_utils import Database

from ..errors import QueueUnavailable
from ..logging import get_logger
from .backends import QueueBackend
from .models import Delivery, MessageEvent, MessageStatus, QueueMessage

logger = get_logger("queue.sqlite")


# SQLite schema SQL
SCHEMA_SQL = """
-- Messages table (one row per unacknowledged message)
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue TEXT NOT NULL,
    body TEXT NOT NULL,
    status TEXT NOT NULL,
    delivery_count INTEGER NOT NULL DEFAULT 0,
    consumer_id TEXT,
    published_at TEXT NOT NULL,
    delivered_at TEXT,
    last_heartbeat TEXT
);

CREATE INDEX IF NOT EXISTS idx_messages_ready ON messages(queue, status, id);
CREATE INDEX IF NOT EXISTS idx_messages_consumer ON messages(consumer_id, status);

-- Message event log (audit trail)
CREATE TABLE IF NOT EXISTS message_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id INTEGER NOT NULL,
    queue TEXT NOT NULL,
    event TEXT NOT NULL,
    consumer_id TEXT,
    timestamp TEXT NOT NULL,
    detail TEXT
);

CREATE INDEX IF NOT EXISTS idx_events_message ON message_events(message_id, id);
"""


def _now() -> str:
    return datetime.now().isoformat(timespec="microseconds")


def _is_locked(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "database is locked" in message or "database is busy" in message


class SQLiteQueue(QueueBackend):
    """SQLite-based durable queue with atomic claim operations.

    Features:
    - Named queues sharing one database file
    - Atomic claim via UPDATE...RETURNING with BEGIN IMMEDIATE
    - Per-consumer prefetch limit checked inside the claim transaction
    - Exponential backoff retry for database lock contention
    - Heartbeat leases and stale-lease redelivery
    - Automatic event logging

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock at transaction start, so two
      workers can never select the same ready message
    - One connection per instance, guarded by a lock so the consumer's
      heartbeat thread can share it
    """

    def __init__(
        self,
        db_path: str,
        name: str = "video_processing_queue",
        prefetch: int = 1,
        busy_timeout_s: float = 5.0,
    ):
        """Initialize queue backend (not connected yet).

        Args:
            db_path: Path to SQLite database file
            name: Queue name
            prefetch: Max unacknowledged messages per consumer
            busy_timeout_s: How long SQLite waits on a locked database
        """
        if prefetch < 1:
            raise ValueError("prefetch must be >= 1")

        self.db_path = Path(db_path)
        self.name = name
        self.prefetch = prefetch
        self.busy_timeout_s = busy_timeout_s
        self.db: Optional[Database] = None
        self._lock = threading.RLock()

    @property
    def is_connected(self) -> bool:
        return self.db is not None

    def connect(self) -> None:
        """Open the database, enable WAL and create the schema.

        Raises:
            QueueUnavailable: If the database file cannot be opened
        """
        with self._lock:
            self.close()
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(
                    str(self.db_path),
                    timeout=self.busy_timeout_s,
                    isolation_level=None,  # explicit BEGIN/COMMIT below
                    check_same_thread=False,
                )
                db = Database(conn)
                db.execute("PRAGMA journal_mode=WAL")
                db.execute("PRAGMA synchronous=FULL")
                db.executescript(SCHEMA_SQL)
            except (sqlite3.Error, OSError) as e:
                raise QueueUnavailable(f"Cannot open queue database {self.db_path}: {e}") from e

            self.db = db
            logger.info("queue_connected", queue=self.name, db_path=str(self.db_path))

    def close(self) -> None:
        with self._lock:
            if self.db is None:
                return
            try:
                self.db.conn.close()
            except sqlite3.Error as e:
                logger.warning("queue_close_failed", error=str(e))
            self.db = None

    @contextmanager
    def _session(self) -> Iterator[Database]:
        """Serialize access to the connection and map database errors.

        Any database error other than lock contention drops the connection:
        the caller sees QueueUnavailable and is expected to reconnect.
        """
        with self._lock:
            if self.db is None:
                raise QueueUnavailable(f"Queue '{self.name}' is not connected")
            try:
                yield self.db
            except sqlite3.OperationalError as e:
                if _is_locked(e):
                    raise QueueUnavailable(f"Queue database is locked: {e}") from e
                self.close()
                raise QueueUnavailable(f"Queue connection lost: {e}") from e
            except sqlite3.DatabaseError as e:
                self.close()
                raise QueueUnavailable(f"Queue connection lost: {e}") from e

    @staticmethod
    @contextmanager
    def _immediate(db: Database) -> Iterator[None]:
        """BEGIN IMMEDIATE ... COMMIT, rolling back on any error."""
        db.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            try:
                db.execute("ROLLBACK")
            except sqlite3.Error:
                pass  # connection already broken, nothing to roll back
            raise
        else:
            db.execute("COMMIT")

    def publish(self, message: QueueMessage) -> int:
        """Persist message; it is durable once this returns.

        Args:
            message: Message to enqueue

        Returns:
            Queue row id
        """
        with self._session() as db:
            with self._immediate(db):
                cursor = db.execute(
                    """
                    INSERT INTO messages (queue, body, status, delivery_count, published_at)
                    VALUES (?, ?, ?, 0, ?)
                    """,
                    (self.name, message.encode(), MessageStatus.READY.value, _now()),
                )
                message_id = cursor.lastrowid
                self._log_event(db, message_id, "published", detail=f"job_id={message.job_id}")
        return message_id

    def claim(self, consumer_id: str) -> Optional[Delivery]:
        """Atomically pop next ready message and mark it in flight.

        Args:
            consumer_id: Unique identifier for the claiming consumer

        Returns:
            Delivery, or None if the queue is empty or prefetch is exhausted

        Atomicity: Uses BEGIN IMMEDIATE + UPDATE...RETURNING
        Retry logic: Exponential backoff on database lock
        """
        return self._claim_with_retry(consumer_id, max_retries=3)

    def _claim_with_retry(self, consumer_id: str, max_retries: int = 3) -> Optional[Delivery]:
        """Claim with exponential backoff on SQLITE_BUSY.

        Implementation note:
        - BEGIN IMMEDIATE ensures write lock from transaction start
        - Exponential backoff: 100ms, 200ms, 400ms delays
        """
        with self._session() as db:
            for attempt in range(max_retries):
                try:
                    with self._immediate(db):
                        return self._claim_locked(db, consumer_id)
                except sqlite3.OperationalError as e:
                    if _is_locked(e) and attempt < max_retries - 1:
                        time.sleep(0.1 * (2 ** attempt))
                        continue
                    raise
        return None

    def _claim_locked(self, db: Database, consumer_id: str) -> Optional[Delivery]:
        held = db.execute(
            "SELECT COUNT(*) FROM messages WHERE queue = ? AND status = ? AND consumer_id = ?",
            (self.name, MessageStatus.IN_FLIGHT.value, consumer_id),
        ).fetchone()[0]
        if held >= self.prefetch:
            return None

        now = _now()
        rows = db.execute(
            """
            UPDATE messages
            SET status = ?,
                consumer_id = ?,
                delivered_at = ?,
                last_heartbeat = ?,
                delivery_count = delivery_count + 1
            WHERE id = (
                SELECT id FROM messages
                WHERE queue = ? AND status = ?
                ORDER BY id ASC
                LIMIT 1
            )
            RETURNING id, body, delivery_count
            """,
            (
                MessageStatus.IN_FLIGHT.value,
                consumer_id,
                now,
                now,
                self.name,
                MessageStatus.READY.value,
            ),
        ).fetchall()

        if not rows:
            return None

        message_id, body, delivery_count = rows[0]
        self._log_event(
            db, message_id, "delivered", consumer_id=consumer_id,
            detail=f"delivery_count={delivery_count}",
        )
        return Delivery(
            message_id=message_id,
            body=body,
            consumer_id=consumer_id,
            delivery_count=delivery_count,
            delivered_at=datetime.fromisoformat(now),
        )

    def ack(self, delivery: Delivery) -> bool:
        """Delete the message if delivery.consumer_id still holds it."""
        with self._session() as db:
            with self._immediate(db):
                cursor = db.execute(
                    "DELETE FROM messages WHERE id = ? AND consumer_id = ? AND status = ?",
                    (delivery.message_id, delivery.consumer_id, MessageStatus.IN_FLIGHT.value),
                )
                if cursor.rowcount == 0:
                    return False
                self._log_event(db, delivery.message_id, "acked", consumer_id=delivery.consumer_id)
                return True

    def heartbeat(self, delivery: Delivery) -> None:
        """Update the lease timestamp. Only touches messages still held."""
        with self._session() as db:
            db.execute(
                """
                UPDATE messages
                SET last_heartbeat = ?
                WHERE id = ? AND consumer_id = ? AND status = ?
                """,
                (_now(), delivery.message_id, delivery.consumer_id, MessageStatus.IN_FLIGHT.value),
            )

    def recover(self, consumer_id: str) -> int:
        with self._session() as db:
            with self._immediate(db):
                rows = db.execute(
                    """
                    UPDATE messages
                    SET status = ?, consumer_id = NULL
                    WHERE queue = ? AND status = ? AND consumer_id = ?
                    RETURNING id
                    """,
                    (MessageStatus.READY.value, self.name, MessageStatus.IN_FLIGHT.value, consumer_id),
                ).fetchall()
                for (message_id,) in rows:
                    self._log_event(
                        db, message_id, "requeued", consumer_id=consumer_id,
                        detail="consumer reconnected before ack",
                    )
        return len(rows)

    def requeue_stale(self, timeout_s: float) -> int:
        """Crash recovery: release in-flight messages whose lease expired.

        Args:
            timeout_s: Lease is stale if no heartbeat in this duration

        Returns:
            Count of released messages
        """
        cutoff = (datetime.now() - timedelta(seconds=timeout_s)).isoformat(timespec="microseconds")

        with self._session() as db:
            with self._immediate(db):
                rows = db.execute(
                    """
                    UPDATE messages
                    SET status = ?, consumer_id = NULL
                    WHERE queue = ? AND status = ? AND last_heartbeat < ?
                    RETURNING id
                    """,
                    (MessageStatus.READY.value, self.name, MessageStatus.IN_FLIGHT.value, cutoff),
                ).fetchall()
                for (message_id,) in rows:
                    self._log_event(
                        db, message_id, "requeued", detail="stale lease (crash recovery)"
                    )
        return len(rows)

    def stats(self) -> Dict[str, int]:
        with self._session() as db:
            table = db["messages"]
            ready = table.count_where("queue = ? AND status = ?", [self.name, MessageStatus.READY.value])
            in_flight = table.count_where(
                "queue = ? AND status = ?", [self.name, MessageStatus.IN_FLIGHT.value]
            )
        return {"ready": ready, "in_flight": in_flight, "total": ready + in_flight}

    def peek(self) -> List[Dict[str, Any]]:
        """All unacknowledged messages of this queue, oldest first."""
        with self._session() as db:
            return [
                dict(row)
                for row in db["messages"].rows_where("queue = ?", [self.name], order_by="id")
            ]

    def events(self, message_id: Optional[int] = None) -> List[MessageEvent]:
        """Audit trail for this queue (optionally for one message)."""
        where = "queue = ?"
        params: List[Any] = [self.name]
        if message_id is not None:
            where += " AND message_id = ?"
            params.append(message_id)

        with self._session() as db:
            return [
                MessageEvent(
                    id=row["id"],
                    message_id=row["message_id"],
                    event=row["event"],
                    consumer_id=row["consumer_id"],
                    timestamp=datetime.fromisoformat(row["timestamp"]),
                    detail=row["detail"],
                )
                for row in db["message_events"].rows_where(where, params, order_by="id")
            ]

    def _log_event(
        self,
        db: Database,
        message_id: int,
        event: str,
        consumer_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        """Append to the audit trail inside the caller's transaction."""
        db.execute(
            """
            INSERT INTO message_events (message_id, queue, event, consumer_id, timestamp, detail)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (message_id, self.name, event, consumer_id, _now(), detail[:200] if detail else None),
        )
