"""
audit/store.py -- Append-only SQLAlchemy Core persistence for the audit trail.

The table lives in its own database (Settings.audit_database_url) so a slow or
unavailable audit sink never holds locks on the credential tables.

There is deliberately no update or delete method: rows are immutable once written.

Usage:
    store = AuditLogStore("sqlite:///aaa_audit.db")
    store.append(AuditEvent(action="AUTH_LOGIN", occurred_at=utc_now(), actor_user_id=1))
    recent = store.list_events(action="AUTH_LOGIN", limit=20)
"""

from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import Column, Integer, MetaData, String, Table, Text
from sqlalchemy.engine import Engine

from audit.models import AuditEvent
from core.clock import from_iso, to_iso, utc_now
from core.db import make_engine

_metadata = MetaData()

_audit_log = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("occurred_at", String(32), nullable=False, index=True),
    Column("actor_user_id", Integer, index=True),
    Column("actor_client_id", Integer),
    Column("action", String(64), nullable=False, index=True),
    Column("target_type", String(64)),
    Column("target_id", String(128)),
    Column("request_id", String(64)),
    Column("ip_address", String(64)),
    Column("user_agent", String(255)),
    Column("details", Text),  # JSON object serialized as text
    Column("created_at", String(32), nullable=False),
)


class AuditLogStore:
    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def append(self, event: AuditEvent) -> int:
        """Insert one event and return its row id."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_log.insert().values(
                    occurred_at=to_iso(event.occurred_at),
                    actor_user_id=event.actor_user_id,
                    actor_client_id=event.actor_client_id,
                    action=event.action,
                    target_type=event.target_type,
                    target_id=event.target_id,
                    request_id=event.request_id,
                    ip_address=event.ip_address[:64] if event.ip_address else None,
                    user_agent=event.user_agent[:255] if event.user_agent else None,
                    details=json.dumps(event.details, default=str, sort_keys=True),
                    created_at=to_iso(utc_now()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_events(
        self,
        action: str | None = None,
        actor_user_id: int | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Return the most recent events, newest first, optionally filtered."""
        stmt = _audit_log.select()
        if action is not None:
            stmt = stmt.where(_audit_log.c.action == action)
        if actor_user_id is not None:
            stmt = stmt.where(_audit_log.c.actor_user_id == actor_user_id)
        stmt = stmt.order_by(_audit_log.c.occurred_at.desc(), _audit_log.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_event(row) for row in rows]

    def list_between(self, start: datetime, end: datetime) -> list[AuditEvent]:
        """Return events with start <= occurred_at < end, oldest first."""
        stmt = (
            _audit_log.select()
            .where((_audit_log.c.occurred_at >= to_iso(start)) & (_audit_log.c.occurred_at < to_iso(end)))
            .order_by(_audit_log.c.occurred_at, _audit_log.c.id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_event(row) for row in rows]

    def close(self) -> None:
        self.engine.dispose()


def _row_to_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        action=row.action,
        occurred_at=from_iso(row.occurred_at),
        actor_user_id=row.actor_user_id,
        actor_client_id=row.actor_client_id,
        target_type=row.target_type,
        target_id=row.target_id,
        request_id=row.request_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        details=json.loads(row.details) if row.details else {},
        created_at=from_iso(row.created_at),
    )
