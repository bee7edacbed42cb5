"""
auth/models.py -- Domain dataclasses for authentication and authorization entities.

Pattern: Data class (pure data containers, almost zero logic). Stores and
services do the work.

Relations are one-directional and by reference:
  User holds its Role objects (only when loaded via CredentialStore.get_with_roles),
  Role holds the *codes* of its permissions. Nothing points back from a Role to
  its users, so there are no cyclic object graphs.

Equality follows the business keys: User by username (case-insensitive),
Role and Permission by code, ApiClient by client_id, RefreshToken by token_hash.

Layer rule: no imports from api/, audit/, or jobs/.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(eq=False)
class Permission:
    """A single grant, in dotted form (e.g. "user.read")."""

    code: str
    name: str = ""
    description: str | None = None
    id: int | None = None

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Permission) and self.code == other.code

    def __hash__(self) -> int:
        return hash(self.code)


@dataclass(eq=False)
class Role:
    """A named bundle of permissions. code is the authority string (e.g. "ROLE_ADMIN").

    permissions holds permission codes, not Permission objects.
    """

    code: str
    name: str = ""
    description: str | None = None
    permissions: frozenset[str] = frozenset()
    id: int | None = None

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Role) and self.code == other.code

    def __hash__(self) -> int:
        return hash(self.code)


@dataclass(eq=False)
class User:
    """An interactive identity.

    The four boolean gates are independent; a user may authenticate only when
    all of them are True (see is_usable).

    roles is empty unless the record was loaded with CredentialStore.get_with_roles().
    id is None before the record is written to the database.
    """

    username: str
    email: str
    password_hash: str
    enabled: bool = True
    account_non_locked: bool = True
    account_non_expired: bool = True
    credentials_non_expired: bool = True
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    roles: tuple[Role, ...] = ()
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_usable(self) -> bool:
        return self.enabled and self.account_non_locked and self.account_non_expired and self.credentials_non_expired

    def __eq__(self, other: object) -> bool:
        return isinstance(other, User) and self.username.lower() == other.username.lower()

    def __hash__(self) -> int:
        return hash(self.username.lower())


@dataclass(eq=False)
class ApiClient:
    """A machine identity. Only its role as an audit actor matters to the core.

    client_secret_hash is a one-way hash; the raw secret is never stored.
    scopes and allowed_ips are kept as the raw delimited strings.
    """

    client_id: str
    client_secret_hash: str
    name: str
    scopes: str | None = None
    allowed_ips: str | None = None
    enabled: bool = True
    id: int | None = None
    created_at: str | None = None

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ApiClient) and self.client_id == other.client_id

    def __hash__(self) -> int:
        return hash(self.client_id)


@dataclass(eq=False)
class RefreshToken:
    """Server-side record of an opaque refresh token.

    Only token_hash is stored -- the raw value is handed to the client once at
    issuance and is unrecoverable afterwards. revoked moves False -> True once
    and never back.
    """

    user_id: int
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: datetime | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and not self.is_expired(now)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, RefreshToken) and self.token_hash == other.token_hash

    def __hash__(self) -> int:
        return hash(self.token_hash)


class RefreshTokenStatus(str, enum.Enum):
    """Read-only classification of a presented refresh token, used in audit detail."""

    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"
    UNKNOWN = "unknown"

    @property
    def failure_reason(self) -> str:
        return {
            RefreshTokenStatus.REVOKED: "reuse_detected",
            RefreshTokenStatus.EXPIRED: "expired",
            RefreshTokenStatus.UNKNOWN: "unknown_token",
            RefreshTokenStatus.ACTIVE: "rotation_lost",
        }[self]


@dataclass(frozen=True)
class ClaimSet:
    """Verified contents of an access token."""

    subject: str
    issuer: str
    issued_at: datetime
    expires_at: datetime
    token_id: str
    authorities: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class AccessGrant:
    """What a successful login or refresh hands back to the client."""

    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
