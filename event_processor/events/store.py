"""SQLite event store: atomic claim, status transitions and idempotent insert."""

import asyncio
import json
import logging
import random
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any

import aiosqlite

from event_processor.events.models import EmitResult, Event, EventStatus, FailureResult

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS system_events (
    seq               INTEGER PRIMARY KEY AUTOINCREMENT,
    id                TEXT    NOT NULL UNIQUE,
    event_type        TEXT    NOT NULL,
    entity_type       TEXT    NOT NULL,
    entity_id         TEXT    NOT NULL,
    payload           TEXT    NOT NULL,
    status            TEXT    NOT NULL DEFAULT 'pending',
    attempts          INTEGER NOT NULL DEFAULT 0,
    tenant_id         TEXT,
    idempotency_key   TEXT    UNIQUE,
    emitted_by        TEXT,
    claimed_by        TEXT,
    processing_since  REAL,
    next_attempt_at   REAL,
    processed_at      REAL,
    last_error        TEXT,
    created_at        REAL    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_se_type_status ON system_events(event_type, status, created_at);
CREATE INDEX IF NOT EXISTS idx_se_status_since ON system_events(status, processing_since);
"""

_EVENT_COLUMNS = (
    "id, event_type, entity_type, entity_id, payload, status, attempts, "
    "tenant_id, idempotency_key, emitted_by, created_at"
)


def compute_retry_delay(attempt: int, base: float = 5.0, max_delay: float = 300.0) -> float:
    """Exponential backoff with jitter."""
    delay = min(base * (2 ** max(attempt, 0)), max_delay)
    jitter = random.uniform(0, delay * 0.3)
    return delay + jitter


def _row_to_event(row: tuple, *, status: str | None = None, attempts_delta: int = 0) -> Event:
    """Convert a row selected with _EVENT_COLUMNS to an Event."""
    payload = json.loads(row[4]) if isinstance(row[4], str) else (row[4] or {})
    return Event(
        id=row[0],
        event_type=row[1],
        entity_type=row[2],
        entity_id=row[3],
        payload=payload,
        status=status or row[5],
        attempts=(row[6] or 0) + attempts_delta,
        tenant_id=row[7],
        idempotency_key=row[8],
        emitted_by=row[9],
        created_at=row[10] or 0.0,
        claimed_from=row[5] if status else None,
    )


class EventStore:
    """SQLite-backed event store. One connection per instance.

    Writes on the shared connection are serialized with an asyncio lock so an
    explicit BEGIN IMMEDIATE never lands inside another coroutine's open
    transaction. Cross-process exclusivity comes from SQLite's write lock.
    """

    def __init__(
        self,
        db_path: Path,
        busy_timeout: int = 5000,
        max_attempts: int = 5,
        stale_timeout: float = 300.0,
        backoff_base: float = 5.0,
        max_backoff: float = 300.0,
    ) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._max_attempts = max_attempts
        self._stale_timeout = stale_timeout
        self._backoff_base = backoff_base
        self._max_backoff = max_backoff
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def ensure_conn(self) -> aiosqlite.Connection:
        """Open connection and ensure schema. Idempotent."""
        if self._conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(str(self._db_path))
            await self._conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()
            logger.debug("event_store: schema ensured at %s", self._db_path)
        return self._conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def insert(
        self,
        event_type: str,
        entity_type: str,
        entity_id: str,
        payload: dict[str, Any],
        emitted_by: str | None = None,
        tenant_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> EmitResult:
        """Insert a pending event. A colliding idempotency key returns the existing id."""
        conn = await self.ensure_conn()
        event_id = uuid.uuid4().hex
        async with self._lock:
            try:
                await conn.execute(
                    """
                    INSERT INTO system_events (id, event_type, entity_type, entity_id, payload,
                        status, attempts, tenant_id, idempotency_key, emitted_by, created_at)
                    VALUES (?, ?, ?, ?, ?, 'pending', 0, ?, ?, ?, ?)
                    """,
                    (
                        event_id,
                        event_type,
                        entity_type,
                        entity_id,
                        json.dumps(payload, ensure_ascii=False),
                        tenant_id,
                        idempotency_key,
                        emitted_by,
                        time.time(),
                    ),
                )
                await conn.commit()
            except sqlite3.IntegrityError:
                await conn.commit()
                if idempotency_key is None:
                    raise
                cursor = await conn.execute(
                    "SELECT id FROM system_events WHERE idempotency_key = ?",
                    (idempotency_key,),
                )
                row = await cursor.fetchone()
                if row is None:
                    raise
                logger.debug(
                    "event_store: idempotency key %s already present as %s",
                    idempotency_key,
                    row[0],
                )
                return EmitResult(event_id=row[0], duplicate=True)
        return EmitResult(event_id=event_id)

    async def claim(self, consumer: str, event_type: str, limit: int) -> list[Event]:
        """Atomically claim eligible events of event_type for consumer.

        Eligible: pending; failed with an elapsed backoff; processing with a
        claim older than stale_timeout. Stale claims already at max_attempts are
        dead-lettered in the same transaction instead of being reclaimed.
        """
        if limit <= 0:
            return []
        conn = await self.ensure_conn()
        now = time.time()
        stale_before = now - self._stale_timeout
        async with self._lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = await conn.execute(
                    """
                    UPDATE system_events
                    SET status = 'dead_lettered', processed_at = ?,
                        last_error = 'stale: max attempts exceeded',
                        claimed_by = NULL, processing_since = NULL
                    WHERE event_type = ? AND status = 'processing'
                      AND processing_since < ? AND attempts >= ?
                    """,
                    (now, event_type, stale_before, self._max_attempts),
                )
                if cursor.rowcount:
                    logger.warning(
                        "event_store: dead-lettered %d stale %s events",
                        cursor.rowcount,
                        event_type,
                    )
                cursor = await conn.execute(
                    f"""
                    SELECT {_EVENT_COLUMNS}
                    FROM system_events
                    WHERE event_type = ?
                      AND (
                        status = 'pending'
                        OR (status = 'failed' AND (next_attempt_at IS NULL OR next_attempt_at <= ?))
                        OR (status = 'processing' AND processing_since < ?)
                      )
                    ORDER BY created_at, seq
                    LIMIT ?
                    """,
                    (event_type, now, stale_before, limit),
                )
                rows = await cursor.fetchall()
                ids = [row[0] for row in rows]
                if ids:
                    placeholders = ",".join("?" * len(ids))
                    await conn.execute(
                        f"""
                        UPDATE system_events
                        SET status = 'processing', attempts = attempts + 1,
                            claimed_by = ?, processing_since = ?, next_attempt_at = NULL
                        WHERE id IN ({placeholders})
                        """,
                        [consumer, now, *ids],
                    )
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        return [
            _row_to_event(row, status=EventStatus.PROCESSING.value, attempts_delta=1)
            for row in rows
        ]

    async def mark_processed(self, event_id: str, consumer: str) -> bool:
        """processing -> processed. Returns False when the event was not processing."""
        conn = await self.ensure_conn()
        async with self._lock:
            cursor = await conn.execute(
                """
                UPDATE system_events
                SET status = 'processed', processed_at = ?, claimed_by = ?,
                    processing_since = NULL, last_error = NULL
                WHERE id = ? AND status = 'processing'
                """,
                (time.time(), consumer, event_id),
            )
            await conn.commit()
        return bool(cursor.rowcount)

    async def mark_failed(self, event_id: str, consumer: str, error: str) -> FailureResult:
        """processing -> failed (with backoff) or dead_lettered at max_attempts.

        The claim already counted this attempt, so attempts is not bumped again.
        """
        conn = await self.ensure_conn()
        now = time.time()
        async with self._lock:
            cursor = await conn.execute(
                "SELECT attempts FROM system_events WHERE id = ? AND status = 'processing'",
                (event_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                logger.warning(
                    "event_store: mark_failed on %s ignored, event is not processing",
                    event_id,
                )
                return FailureResult(dead_lettered=False)
            attempts = row[0] or 0
            if attempts >= self._max_attempts:
                await conn.execute(
                    """
                    UPDATE system_events
                    SET status = 'dead_lettered', processed_at = ?, last_error = ?,
                        claimed_by = ?, processing_since = NULL
                    WHERE id = ?
                    """,
                    (now, error, consumer, event_id),
                )
                await conn.commit()
                return FailureResult(dead_lettered=True, attempts=attempts)
            next_attempt_at = now + compute_retry_delay(
                attempts - 1, self._backoff_base, self._max_backoff
            )
            await conn.execute(
                """
                UPDATE system_events
                SET status = 'failed', last_error = ?, next_attempt_at = ?,
                    claimed_by = ?, processing_since = NULL
                WHERE id = ?
                """,
                (error, next_attempt_at, consumer, event_id),
            )
            await conn.commit()
        return FailureResult(
            dead_lettered=False, attempts=attempts, next_attempt_at=next_attempt_at
        )

    async def release(self, event_ids: list[str], refund_attempt: bool = False) -> int:
        """Reset exactly these processing events to pending.

        Attempts are left untouched unless refund_attempt is set, which undoes
        the increment of the claim for events no consumer ever looked at.
        """
        if not event_ids:
            return 0
        conn = await self.ensure_conn()
        placeholders = ",".join("?" * len(event_ids))
        attempts_sql = "MAX(attempts - 1, 0)" if refund_attempt else "attempts"
        async with self._lock:
            cursor = await conn.execute(
                f"""
                UPDATE system_events
                SET status = 'pending', attempts = {attempts_sql},
                    claimed_by = NULL, processing_since = NULL
                WHERE status = 'processing' AND id IN ({placeholders})
                """,
                list(event_ids),
            )
            await conn.commit()
        return cursor.rowcount or 0

    async def recover_stale(self) -> tuple[int, int]:
        """Apply the stale-claim policy across all event types.

        Returns (reset_count, dead_letter_count).
        """
        conn = await self.ensure_conn()
        now = time.time()
        stale_before = now - self._stale_timeout
        async with self._lock:
            cursor = await conn.execute(
                """
                UPDATE system_events
                SET status = 'dead_lettered', processed_at = ?,
                    last_error = 'stale: max attempts exceeded',
                    claimed_by = NULL, processing_since = NULL
                WHERE status = 'processing' AND processing_since < ? AND attempts >= ?
                """,
                (now, stale_before, self._max_attempts),
            )
            dead_count = cursor.rowcount or 0
            cursor = await conn.execute(
                """
                UPDATE system_events
                SET status = 'pending', claimed_by = NULL, processing_since = NULL
                WHERE status = 'processing' AND processing_since < ?
                """,
                (stale_before,),
            )
            reset_count = cursor.rowcount or 0
            await conn.commit()
        return (reset_count, dead_count)

    async def get(self, event_id: str) -> Event | None:
        """Load one event by id."""
        conn = await self.ensure_conn()
        cursor = await conn.execute(
            f"SELECT {_EVENT_COLUMNS} FROM system_events WHERE id = ?", (event_id,)
        )
        row = await cursor.fetchone()
        return _row_to_event(row) if row else None

    async def list_events(self, event_type: str | None = None) -> list[Event]:
        """All events (optionally of one type) in insertion order."""
        conn = await self.ensure_conn()
        if event_type is None:
            cursor = await conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM system_events ORDER BY created_at, seq"
            )
        else:
            cursor = await conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM system_events WHERE event_type = ? "
                "ORDER BY created_at, seq",
                (event_type,),
            )
        rows = await cursor.fetchall()
        return [_row_to_event(row) for row in rows]

    async def count_by_status(self) -> dict[str, int]:
        conn = await self.ensure_conn()
        cursor = await conn.execute(
            "SELECT status, COUNT(*) FROM system_events GROUP BY status"
        )
        rows = await cursor.fetchall()
        return {row[0]: row[1] for row in rows}
