"""CRM SQLite schema: sequences, enrollments, approval queue, audit trail, tenant autopilot."""

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

_BUSY_TIMEOUT_MS = 5000

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sequences (
    id            TEXT    PRIMARY KEY,
    name          TEXT    NOT NULL,
    trigger_type  TEXT    NOT NULL,
    is_active     INTEGER NOT NULL DEFAULT 1,
    tenant_id     TEXT,
    created_at    REAL    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_seq_trigger ON sequences(trigger_type, is_active, created_at);

CREATE TABLE IF NOT EXISTS sequence_enrollments (
    id            TEXT    PRIMARY KEY,
    lead_id       TEXT    NOT NULL,
    sequence_id   TEXT    NOT NULL REFERENCES sequences(id),
    status        TEXT    NOT NULL DEFAULT 'active',
    current_step  INTEGER NOT NULL DEFAULT 0,
    tenant_id     TEXT,
    created_at    REAL    NOT NULL,
    UNIQUE (lead_id, sequence_id)
);

CREATE TABLE IF NOT EXISTS ceo_action_queue (
    id            TEXT    PRIMARY KEY,
    action_type   TEXT    NOT NULL,
    target_type   TEXT    NOT NULL,
    target_id     TEXT    NOT NULL,
    tenant_id     TEXT,
    payload       TEXT    NOT NULL,
    priority      TEXT    NOT NULL DEFAULT 'normal'
                  CHECK (priority IN ('low', 'normal', 'high', 'critical')),
    status        TEXT    NOT NULL DEFAULT 'pending',
    source        TEXT,
    reasoning     TEXT,
    created_at    REAL    NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_caq_open_action
    ON ceo_action_queue(action_type, target_id)
    WHERE status IN ('pending', 'approved');

CREATE TABLE IF NOT EXISTS action_history (
    id            TEXT    PRIMARY KEY,
    action_table  TEXT    NOT NULL,
    action_id     TEXT    NOT NULL,
    action_type   TEXT    NOT NULL,
    target_type   TEXT    NOT NULL,
    target_id     TEXT    NOT NULL,
    actor_type    TEXT    NOT NULL,
    actor_module  TEXT,
    new_state     TEXT,
    created_at    REAL    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ah_target ON action_history(target_type, target_id);

CREATE TABLE IF NOT EXISTS tenant_autopilot (
    tenant_id     TEXT    PRIMARY KEY,
    mode          TEXT    NOT NULL,
    updated_at    REAL    NOT NULL
);
"""


class CrmDb:
    """SQLite connection for the CRM tables. One connection per instance."""

    def __init__(self, db_path: Path, busy_timeout: int = _BUSY_TIMEOUT_MS) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._conn: aiosqlite.Connection | None = None

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
            logger.debug("crm: schema ensured at %s", self._db_path)
        return self._conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
