"""CRM repository: the reads and writes consumers perform against the CRM tables."""

import json
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass
from typing import Any

from event_processor.crm.schema import CrmDb

logger = logging.getLogger(__name__)


class DuplicateRecordError(Exception):
    """A uniqueness constraint rejected the write; an equivalent row already exists."""


@dataclass
class SequenceRecord:
    id: str
    name: str
    trigger_type: str
    is_active: bool
    tenant_id: str | None
    created_at: float


@dataclass
class EnrollmentRecord:
    id: str
    lead_id: str
    sequence_id: str
    status: str
    current_step: int
    tenant_id: str | None
    created_at: float


@dataclass
class ApprovalRecord:
    id: str
    action_type: str
    target_type: str
    target_id: str
    tenant_id: str | None
    payload: dict
    priority: str
    status: str
    source: str | None
    reasoning: str | None
    created_at: float


@dataclass
class ActionHistoryRecord:
    id: str
    action_table: str
    action_id: str
    action_type: str
    target_type: str
    target_id: str
    actor_type: str
    actor_module: str | None
    new_state: dict | None
    created_at: float


def _json_or_none(raw: Any) -> Any:
    if raw is None:
        return None
    return json.loads(raw) if isinstance(raw, str) else raw


class CrmRepository:
    """Data access for CRM tables. Also serves as the tenant autopilot config source."""

    def __init__(self, db: CrmDb) -> None:
        self._db = db

    async def close(self) -> None:
        await self._db.close()

    async def _insert(self, sql: str, params: tuple) -> None:
        conn = await self._db.ensure_conn()
        try:
            await conn.execute(sql, params)
        except sqlite3.IntegrityError as e:
            await conn.commit()
            raise DuplicateRecordError(str(e)) from e
        await conn.commit()

    # ---------- sequences ---------- #

    async def add_sequence(
        self,
        name: str,
        trigger_type: str,
        is_active: bool = True,
        tenant_id: str | None = None,
        created_at: float | None = None,
    ) -> SequenceRecord:
        record = SequenceRecord(
            id=uuid.uuid4().hex,
            name=name,
            trigger_type=trigger_type,
            is_active=is_active,
            tenant_id=tenant_id,
            created_at=created_at if created_at is not None else time.time(),
        )
        await self._insert(
            """
            INSERT INTO sequences (id, name, trigger_type, is_active, tenant_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.name,
                record.trigger_type,
                1 if record.is_active else 0,
                record.tenant_id,
                record.created_at,
            ),
        )
        return record

    async def first_active_sequence(self, trigger_type: str) -> SequenceRecord | None:
        """Oldest active sequence for trigger_type (ties broken by insertion order)."""
        conn = await self._db.ensure_conn()
        cursor = await conn.execute(
            """
            SELECT id, name, trigger_type, is_active, tenant_id, created_at
            FROM sequences
            WHERE trigger_type = ? AND is_active = 1
            ORDER BY created_at ASC, rowid ASC
            LIMIT 1
            """,
            (trigger_type,),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return SequenceRecord(
            id=row[0],
            name=row[1],
            trigger_type=row[2],
            is_active=bool(row[3]),
            tenant_id=row[4],
            created_at=row[5],
        )

    # ---------- enrollments ---------- #

    async def find_enrollment(self, lead_id: str, sequence_id: str) -> EnrollmentRecord | None:
        conn = await self._db.ensure_conn()
        cursor = await conn.execute(
            """
            SELECT id, lead_id, sequence_id, status, current_step, tenant_id, created_at
            FROM sequence_enrollments
            WHERE lead_id = ? AND sequence_id = ?
            """,
            (lead_id, sequence_id),
        )
        row = await cursor.fetchone()
        return EnrollmentRecord(*row) if row else None

    async def list_enrollments(self, lead_id: str | None = None) -> list[EnrollmentRecord]:
        conn = await self._db.ensure_conn()
        sql = (
            "SELECT id, lead_id, sequence_id, status, current_step, tenant_id, created_at "
            "FROM sequence_enrollments"
        )
        params: tuple = ()
        if lead_id is not None:
            sql += " WHERE lead_id = ?"
            params = (lead_id,)
        cursor = await conn.execute(sql + " ORDER BY created_at, rowid", params)
        rows = await cursor.fetchall()
        return [EnrollmentRecord(*row) for row in rows]

    async def insert_enrollment(
        self, lead_id: str, sequence_id: str, tenant_id: str | None = None
    ) -> EnrollmentRecord:
        """Create an active enrollment at step 0. Raises DuplicateRecordError on (lead, sequence) collision."""
        record = EnrollmentRecord(
            id=uuid.uuid4().hex,
            lead_id=lead_id,
            sequence_id=sequence_id,
            status="active",
            current_step=0,
            tenant_id=tenant_id,
            created_at=time.time(),
        )
        await self._insert(
            """
            INSERT INTO sequence_enrollments
                (id, lead_id, sequence_id, status, current_step, tenant_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.lead_id,
                record.sequence_id,
                record.status,
                record.current_step,
                record.tenant_id,
                record.created_at,
            ),
        )
        return record

    # ---------- approval queue ---------- #

    async def find_open_approval(self, action_type: str, target_id: str) -> ApprovalRecord | None:
        """Pending or approved queue entry for (action_type, target_id), if any."""
        conn = await self._db.ensure_conn()
        cursor = await conn.execute(
            """
            SELECT id, action_type, target_type, target_id, tenant_id, payload, priority,
                   status, source, reasoning, created_at
            FROM ceo_action_queue
            WHERE action_type = ? AND target_id = ? AND status IN ('pending', 'approved')
            LIMIT 1
            """,
            (action_type, target_id),
        )
        row = await cursor.fetchone()
        return self._approval_from_row(row) if row else None

    async def list_approvals(self, target_id: str | None = None) -> list[ApprovalRecord]:
        conn = await self._db.ensure_conn()
        sql = (
            "SELECT id, action_type, target_type, target_id, tenant_id, payload, priority, "
            "status, source, reasoning, created_at FROM ceo_action_queue"
        )
        params: tuple = ()
        if target_id is not None:
            sql += " WHERE target_id = ?"
            params = (target_id,)
        cursor = await conn.execute(sql + " ORDER BY created_at, rowid", params)
        rows = await cursor.fetchall()
        return [self._approval_from_row(row) for row in rows]

    async def insert_approval(
        self,
        action_type: str,
        target_type: str,
        target_id: str,
        payload: dict[str, Any],
        tenant_id: str | None = None,
        priority: str = "normal",
        source: str | None = None,
        reasoning: str | None = None,
    ) -> ApprovalRecord:
        """Queue an action for human approval. Raises DuplicateRecordError if one is already open."""
        record = ApprovalRecord(
            id=uuid.uuid4().hex,
            action_type=action_type,
            target_type=target_type,
            target_id=target_id,
            tenant_id=tenant_id,
            payload=payload,
            priority=priority,
            status="pending",
            source=source,
            reasoning=reasoning,
            created_at=time.time(),
        )
        await self._insert(
            """
            INSERT INTO ceo_action_queue (id, action_type, target_type, target_id, tenant_id,
                payload, priority, status, source, reasoning, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.action_type,
                record.target_type,
                record.target_id,
                record.tenant_id,
                json.dumps(record.payload, ensure_ascii=False),
                record.priority,
                record.status,
                record.source,
                record.reasoning,
                record.created_at,
            ),
        )
        return record

    @staticmethod
    def _approval_from_row(row: tuple) -> ApprovalRecord:
        return ApprovalRecord(
            id=row[0],
            action_type=row[1],
            target_type=row[2],
            target_id=row[3],
            tenant_id=row[4],
            payload=_json_or_none(row[5]) or {},
            priority=row[6],
            status=row[7],
            source=row[8],
            reasoning=row[9],
            created_at=row[10],
        )

    # ---------- audit trail ---------- #

    async def record_action(
        self,
        action_table: str,
        action_id: str,
        action_type: str,
        target_type: str,
        target_id: str,
        actor_module: str | None,
        new_state: dict[str, Any] | None = None,
        actor_type: str = "module",
    ) -> str:
        history_id = uuid.uuid4().hex
        await self._insert(
            """
            INSERT INTO action_history (id, action_table, action_id, action_type, target_type,
                target_id, actor_type, actor_module, new_state, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                history_id,
                action_table,
                action_id,
                action_type,
                target_type,
                target_id,
                actor_type,
                actor_module,
                json.dumps(new_state, ensure_ascii=False) if new_state is not None else None,
                time.time(),
            ),
        )
        return history_id

    async def list_actions(self, target_id: str | None = None) -> list[ActionHistoryRecord]:
        conn = await self._db.ensure_conn()
        sql = (
            "SELECT id, action_table, action_id, action_type, target_type, target_id, "
            "actor_type, actor_module, new_state, created_at FROM action_history"
        )
        params: tuple = ()
        if target_id is not None:
            sql += " WHERE target_id = ?"
            params = (target_id,)
        cursor = await conn.execute(sql + " ORDER BY created_at, rowid", params)
        rows = await cursor.fetchall()
        return [
            ActionHistoryRecord(*row[:8], new_state=_json_or_none(row[8]), created_at=row[9])
            for row in rows
        ]

    # ---------- tenant autopilot ---------- #

    async def set_autopilot_mode(self, tenant_id: str, mode: str) -> None:
        conn = await self._db.ensure_conn()
        await conn.execute(
            """
            INSERT INTO tenant_autopilot (tenant_id, mode, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(tenant_id) DO UPDATE SET mode = excluded.mode,
                updated_at = excluded.updated_at
            """,
            (tenant_id, mode, time.time()),
        )
        await conn.commit()

    async def fetch_autopilot_mode(self, tenant_id: str) -> str | None:
        conn = await self._db.ensure_conn()
        cursor = await conn.execute(
            "SELECT mode FROM tenant_autopilot WHERE tenant_id = ?", (tenant_id,)
        )
        row = await cursor.fetchone()
        return row[0] if row else None
