"""
audit/store.py -- SQLAlchemy Core persistence for audit records.

Pattern: Repository + Data Mapper (same shape as auth/store.py).
AuditStore exposes append and read operations only. There is deliberately no
update or delete method; on SQLite, triggers additionally abort any UPDATE or
DELETE against the table, so the log stays write-once even for code that
bypasses this class.

Indexes:
  (actor_id, action, timestamp)    -- an account's own history
  (initiator_id, timestamp)        -- what an administrator did
  (method, action, timestamp)      -- login analytics by method

Layer rule: no imports from api/, web/, or auth/.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, func, select, text
from sqlalchemy.engine import Engine

from audit.models import AuditAction, AuditEvent, AuditRecord, AuditStatus, LoginMethod
from core.database import create_store_engine, from_iso, to_iso

_metadata = MetaData()

_audit_records = Table(
    "audit_records",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("action", String(40), nullable=False),
    Column("status", String(10), nullable=False),
    Column("actor_id", Integer),
    Column("initiator_id", Integer),
    Column("method", String(10)),
    Column("email", String(255)),
    Column("ip", String(64), nullable=False),
    Column("device", Text, nullable=False),
    Column("metadata_json", Text, nullable=False, server_default="{}"),
    Column("timestamp", String(40), nullable=False),
    Index("ix_audit_actor_action_time", "actor_id", "action", "timestamp"),
    Index("ix_audit_initiator_time", "initiator_id", "timestamp"),
    Index("ix_audit_method_action_time", "method", "action", "timestamp"),
)

_SQLITE_GUARDS = (
    """
    CREATE TRIGGER IF NOT EXISTS audit_records_no_update
    BEFORE UPDATE ON audit_records
    BEGIN
        SELECT RAISE(ABORT, 'audit records are append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS audit_records_no_delete
    BEFORE DELETE ON audit_records
    BEGIN
        SELECT RAISE(ABORT, 'audit records are append-only');
    END
    """,
)


class AuditStore:
    """Append-only repository for AuditRecord entities.

    Usage:
        store = AuditStore("sqlite:///audit.db")
        record = store.append(event, timestamp=utcnow())
        history = store.for_actor(record.actor_id)
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = create_store_engine(db_url)
        _metadata.create_all(self.engine)
        if self.engine.dialect.name == "sqlite":
            with self.engine.begin() as conn:
                for ddl in _SQLITE_GUARDS:
                    conn.execute(text(ddl))

    def append(self, event: AuditEvent, timestamp: datetime) -> AuditRecord:
        """Insert one record and return it. The caller stamps the timestamp."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _audit_records.insert().values(
                    action=event.action.value,
                    status=event.status.value,
                    actor_id=event.actor_id,
                    initiator_id=event.initiator_id,
                    method=event.method.value if event.method else None,
                    email=event.email,
                    ip=event.context.ip or "unknown",
                    device=event.context.device or "unknown",
                    metadata_json=json.dumps(event.metadata, default=str, sort_keys=True),
                    timestamp=to_iso(timestamp),
                )
            )
            record_id = result.inserted_primary_key[0]
        return AuditRecord(
            id=record_id,
            action=event.action,
            status=event.status,
            ip=event.context.ip or "unknown",
            device=event.context.device or "unknown",
            timestamp=timestamp,
            actor_id=event.actor_id,
            initiator_id=event.initiator_id,
            method=event.method,
            email=event.email,
            metadata=json.loads(json.dumps(event.metadata, default=str)),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, record_id: int) -> Optional[AuditRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(_audit_records.select().where(_audit_records.c.id == record_id)).fetchone()
        return _row_to_record(row) if row is not None else None

    def for_actor(self, actor_id: int, page: int = 1, limit: int = 50) -> list[AuditRecord]:
        """Return an account's records, newest first, paginated."""
        offset = (max(page, 1) - 1) * limit
        with self.engine.connect() as conn:
            rows = conn.execute(
                _audit_records.select()
                .where(_audit_records.c.actor_id == actor_id)
                .order_by(_audit_records.c.timestamp.desc(), _audit_records.c.id.desc())
                .offset(offset)
                .limit(limit)
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def by_action(
        self,
        action: AuditAction,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 500,
    ) -> list[AuditRecord]:
        """Return records of one action within an optional [start, end] window."""
        query = _audit_records.select().where(_audit_records.c.action == action.value)
        if start is not None:
            query = query.where(_audit_records.c.timestamp >= to_iso(start))
        if end is not None:
            query = query.where(_audit_records.c.timestamp <= to_iso(end))
        query = query.order_by(_audit_records.c.timestamp.asc(), _audit_records.c.id.asc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_record(r) for r in rows]

    def by_initiator(self, initiator_id: int, limit: int = 500) -> list[AuditRecord]:
        """Return the administrative actions an account performed, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _audit_records.select()
                .where(_audit_records.c.initiator_id == initiator_id)
                .order_by(_audit_records.c.timestamp.desc(), _audit_records.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def count(
        self,
        action: Optional[AuditAction] = None,
        actor_id: Optional[int] = None,
        status: Optional[AuditStatus] = None,
    ) -> int:
        query = select(func.count()).select_from(_audit_records)
        if action is not None:
            query = query.where(_audit_records.c.action == action.value)
        if actor_id is not None:
            query = query.where(_audit_records.c.actor_id == actor_id)
        if status is not None:
            query = query.where(_audit_records.c.status == status.value)
        with self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_record(row) -> AuditRecord:
    return AuditRecord(
        id=row.id,
        action=AuditAction(row.action),
        status=AuditStatus(row.status),
        ip=row.ip,
        device=row.device,
        timestamp=from_iso(row.timestamp),
        actor_id=row.actor_id,
        initiator_id=row.initiator_id,
        method=LoginMethod(row.method) if row.method else None,
        email=row.email,
        metadata=json.loads(row.metadata_json or "{}"),
    )
