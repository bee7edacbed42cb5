"""
api/routes/v1/audit.py -- Read side of the audit trail.

Routes:
  GET /api/v1/audit/events  -- most recent events, newest first (requires audit.read)

Queued writes are flushed before reading so a caller sees its own login.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditEventRow
from auth.dependencies import require_authority
from auth.models import User

router = APIRouter()


@router.get("/audit/events", response_model=list[AuditEventRow])
def list_audit_events(
    request: Request,
    action: Optional[str] = Query(default=None, max_length=64),
    limit: int = Query(default=50, ge=1, le=500),
    current_user: User = Depends(require_authority("audit.read")),
) -> list[AuditEventRow]:
    request.app.state.audit_recorder.flush(timeout=2.0)
    events = request.app.state.audit_store.list_events(action=action, limit=limit)
    return [
        AuditEventRow(
            id=e.id,
            occurred_at=e.occurred_at,
            action=e.action,
            actor_user_id=e.actor_user_id,
            actor_client_id=e.actor_client_id,
            target_type=e.target_type,
            target_id=e.target_id,
            request_id=e.request_id,
            ip_address=e.ip_address,
            user_agent=e.user_agent,
            details=e.details,
        )
        for e in events
    ]
