"""
API request and response models for the AAA service REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route handlers
map between the two.

Wire format is camelCase JSON (usernameOrEmail, accessTokenExpiresAt, ...).
Python attributes stay snake_case; populate_by_name lets tests and handlers
construct models either way. Serialize with model_dump(mode="json", by_alias=True).
"""

from datetime import datetime
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = _CAMEL

    username_or_email: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=191)]
    # Not stripped: leading/trailing spaces may be part of a password.
    password: str = Field(min_length=1, max_length=255, json_schema_extra={"format": "password"})


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh."""

    model_config = _CAMEL

    # Unconstrained: an empty or oversized token is just an unknown token (401), not a 422.
    refresh_token: str


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class AuthResponse(BaseModel):
    """Returned by login and refresh. The refresh token is shown exactly once."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    access_token: str
    refresh_token: str
    access_token_expires_at: datetime


class LogoutAllResponse(BaseModel):
    model_config = _CAMEL

    revoked_count: int


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = _CAMEL

    user_id: int
    username: str
    email: str
    authorities: list[str]


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditEventRow(BaseModel):
    """One audit-trail row as exposed by GET /api/v1/audit/events."""

    model_config = _CAMEL

    id: int
    occurred_at: datetime
    action: str
    actor_user_id: Optional[int] = None
    actor_client_id: Optional[int] = None
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    request_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
