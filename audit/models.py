"""
audit/models.py -- Immutable audit-trail records and the request provenance they carry.

An AuditEvent is written once and never updated or deleted by this service;
retention belongs to whoever operates the audit database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# Action codes. Free-form strings are accepted by the recorder, but everything
# this service emits comes from this list.
AUTH_LOGIN = "AUTH_LOGIN"
AUTH_LOGIN_FAIL = "AUTH_LOGIN_FAIL"
AUTH_REFRESH = "AUTH_REFRESH"
AUTH_REFRESH_FAIL = "AUTH_REFRESH_FAIL"
AUTH_LOGOUT_ALL = "AUTH_LOGOUT_ALL"
AUTH_TOKEN_INVALID = "AUTH_TOKEN_INVALID"
AUTH_TOKEN_USERLOAD_FAIL = "AUTH_TOKEN_USERLOAD_FAIL"
REFRESH_TOKEN_CLEANUP = "REFRESH_TOKEN_CLEANUP"


@dataclass(frozen=True)
class RequestContext:
    """Where a call came from. Every field is optional so jobs can pass an empty one."""

    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class AuditEvent:
    """One row of the audit trail.

    At most one of actor_user_id / actor_client_id is set; neither means a
    system event (e.g. the housekeeping job).
    """

    action: str
    occurred_at: datetime
    actor_user_id: int | None = None
    actor_client_id: int | None = None
    target_type: str | None = None
    target_id: str | None = None
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
    created_at: datetime | None = None
