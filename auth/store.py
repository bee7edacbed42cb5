"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_user / _row_to_refresh_token / _row_to_api_client are the mappers.
Service, gate, and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Username and email uniqueness is case-insensitive, enforced by unique
  functional indexes on lower(column) so "Alice" and "alice" cannot coexist.

  refresh_tokens stores only the keyed hash of each token. Revocation is a
  single conditional UPDATE (revoked = false AND expires_at > now) whose
  rowcount tells the caller whether it won -- two concurrent rotations of the
  same token cannot both succeed.

Timestamps are ISO-8601 UTC strings from core.clock.to_iso, so expiry
comparisons happen in SQL with plain string ordering.

Layer rule: no imports from api/, audit/, or jobs/.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import NotFound
from auth.models import ApiClient, Permission, RefreshToken, Role, User
from core.clock import from_iso, to_iso, utc_now
from core.db import make_engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(64), nullable=False),
    Column("email", String(191), nullable=False),
    Column("password_hash", String(255), nullable=False),
    Column("enabled", Boolean, nullable=False, default=True),
    Column("account_non_locked", Boolean, nullable=False, default=True),
    Column("account_non_expired", Boolean, nullable=False, default=True),
    Column("credentials_non_expired", Boolean, nullable=False, default=True),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("phone", String(40)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)
Index("uk_users_username", func.lower(_users.c.username), unique=True)
Index("uk_users_email", func.lower(_users.c.email), unique=True)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(64), nullable=False, unique=True),  # e.g. ROLE_ADMIN
    Column("name", String(128), nullable=False),
    Column("description", String(512)),
    Column("created_at", String(32), nullable=False),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(128), nullable=False, unique=True),  # e.g. user.read
    Column("name", String(128), nullable=False),
    Column("description", String(512)),
    Column("created_at", String(32), nullable=False),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id"), primary_key=True),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", Integer, ForeignKey("roles.id"), primary_key=True),
    Column("permission_id", Integer, ForeignKey("permissions.id"), primary_key=True),
)

_api_clients = Table(
    "api_clients",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_id", String(128), nullable=False, unique=True),
    Column("client_secret_hash", String(255), nullable=False),
    Column("name", String(191), nullable=False),
    Column("scopes", String(512)),  # space- or comma-delimited
    Column("allowed_ips", String(1024)),  # CSV / CIDR list
    Column("enabled", Boolean, nullable=False, default=True),
    Column("created_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("revoked", Boolean, nullable=False, default=False),
    Column("revoked_at", String(32)),
    Column("ip_address", String(64)),
    Column("user_agent", String(255)),
)


def _now_iso() -> str:
    return to_iso(utc_now())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, roles, permissions, API clients, and refresh tokens.

    Usage:
        store = CredentialStore("sqlite:///aaa.db")
        store.create_user(User(username="alice", email="alice@example.com", password_hash=...))
        user = store.get_with_roles("ALICE")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists in any letter case.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    password_hash=user.password_hash,
                    enabled=user.enabled,
                    account_non_locked=user.account_non_locked,
                    account_non_expired=user.account_non_expired,
                    credentials_non_expired=user.credentials_non_expired,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    phone=user.phone,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by username, ignoring case. Roles are not loaded."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(func.lower(_users.c.username) == username.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email, ignoring case. Roles are not loaded."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(func.lower(_users.c.email) == email.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_with_roles(self, username: str) -> User | None:
        """Load a user together with its roles and their permission codes.

        One outer-joined query instead of a round trip per role, so login and
        the per-request gate pay a single query for the full authority set.
        """
        stmt = (
            select(
                _users,
                _roles.c.id.label("role_id"),
                _roles.c.code.label("role_code"),
                _roles.c.name.label("role_name"),
                _roles.c.description.label("role_description"),
                _permissions.c.code.label("permission_code"),
            )
            .select_from(
                _users.outerjoin(_user_roles, _user_roles.c.user_id == _users.c.id)
                .outerjoin(_roles, _roles.c.id == _user_roles.c.role_id)
                .outerjoin(_role_permissions, _role_permissions.c.role_id == _roles.c.id)
                .outerjoin(_permissions, _permissions.c.id == _role_permissions.c.permission_id)
            )
            .where(func.lower(_users.c.username) == username.lower())
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        if not rows:
            return None

        role_rows: dict[int, dict] = {}
        for row in rows:
            if row.role_id is None:
                continue
            entry = role_rows.setdefault(
                row.role_id,
                {"code": row.role_code, "name": row.role_name, "description": row.role_description, "perms": set()},
            )
            if row.permission_code is not None:
                entry["perms"].add(row.permission_code)

        user = _row_to_user(rows[0])
        user.roles = tuple(
            Role(
                id=role_id,
                code=entry["code"],
                name=entry["name"],
                description=entry["description"],
                permissions=frozenset(entry["perms"]),
            )
            for role_id, entry in sorted(role_rows.items())
        )
        return user

    def set_user_flags(self, user_id: int, **flags: bool) -> bool:
        """Update one or more of the four account gates.

        Accepted flags: enabled, account_non_locked, account_non_expired,
        credentials_non_expired. Unknown keys raise ValueError.

        Returns True if a row was updated, False if user_id was not found.
        """
        allowed = {"enabled", "account_non_locked", "account_non_expired", "credentials_non_expired"}
        unknown = set(flags) - allowed
        if unknown:
            raise ValueError(f"Unknown user flags: {unknown!r}")
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(updated_at=_now_iso(), **flags)
            )
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user, its role links, and every refresh token it owns.

        Returns True if the user existed.
        """
        with self.engine.connect() as conn:
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.insert().values(
                    code=role.code,
                    name=role.name or role.code,
                    description=role.description,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def create_permission(self, permission: Permission) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _permissions.insert().values(
                    code=permission.code,
                    name=permission.name or permission.code,
                    description=permission.description,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def grant_permission(self, role_code: str, permission_code: str) -> None:
        """Attach a permission to a role. Idempotent."""
        with self.engine.connect() as conn:
            role_id = self._role_id(conn, role_code)
            perm_id = self._permission_id(conn, permission_code)
            exists = conn.execute(
                select(_role_permissions.c.role_id).where(
                    (_role_permissions.c.role_id == role_id) & (_role_permissions.c.permission_id == perm_id)
                )
            ).fetchone()
            if exists is None:
                conn.execute(_role_permissions.insert().values(role_id=role_id, permission_id=perm_id))
            conn.commit()

    def revoke_permission(self, role_code: str, permission_code: str) -> bool:
        with self.engine.connect() as conn:
            role_id = self._role_id(conn, role_code)
            perm_id = self._permission_id(conn, permission_code)
            result = conn.execute(
                _role_permissions.delete().where(
                    (_role_permissions.c.role_id == role_id) & (_role_permissions.c.permission_id == perm_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def assign_role(self, username: str, role_code: str) -> None:
        """Give a user a role. Idempotent."""
        with self.engine.connect() as conn:
            user_id = self._user_id(conn, username)
            role_id = self._role_id(conn, role_code)
            exists = conn.execute(
                select(_user_roles.c.user_id).where(
                    (_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id)
                )
            ).fetchone()
            if exists is None:
                conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))
            conn.commit()

    def unassign_role(self, username: str, role_code: str) -> bool:
        with self.engine.connect() as conn:
            user_id = self._user_id(conn, username)
            role_id = self._role_id(conn, role_code)
            result = conn.execute(
                _user_roles.delete().where((_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id))
            )
            conn.commit()
        return result.rowcount > 0

    def _user_id(self, conn, username: str) -> int:
        user_id = conn.execute(
            select(_users.c.id).where(func.lower(_users.c.username) == username.lower())
        ).scalar()
        if user_id is None:
            raise NotFound("user", username)
        return user_id

    def _role_id(self, conn, code: str) -> int:
        role_id = conn.execute(select(_roles.c.id).where(_roles.c.code == code)).scalar()
        if role_id is None:
            raise NotFound("role", code)
        return role_id

    def _permission_id(self, conn, code: str) -> int:
        perm_id = conn.execute(select(_permissions.c.id).where(_permissions.c.code == code)).scalar()
        if perm_id is None:
            raise NotFound("permission", code)
        return perm_id

    # ------------------------------------------------------------------
    # API clients
    # ------------------------------------------------------------------

    def create_api_client(self, client: ApiClient) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_clients.insert().values(
                    client_id=client.client_id,
                    client_secret_hash=client.client_secret_hash,
                    name=client.name,
                    scopes=client.scopes,
                    allowed_ips=client.allowed_ips,
                    enabled=client.enabled,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_api_client(self, client_id: str) -> ApiClient | None:
        with self.engine.connect() as conn:
            row = conn.execute(_api_clients.select().where(_api_clients.c.client_id == client_id)).fetchone()
        return _row_to_api_client(row) if row is not None else None

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def insert_refresh_token(self, token: RefreshToken) -> int:
        with self.engine.connect() as conn:
            token_id = self._insert_refresh_token(conn, token)
            conn.commit()
        return token_id

    def get_refresh_token_by_hash(self, token_hash: str) -> RefreshToken | None:
        """Look up a token record by its hash. O(1) via the UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def rotate_refresh_token(self, old_hash: str, replacement: RefreshToken, now: datetime) -> RefreshToken | None:
        """Revoke old_hash and insert its replacement in one transaction.

        The revoke is a compare-and-set: it only matches a row that is still
        unrevoked and unexpired at `now`. If no row matches (unknown, already
        revoked, expired, or another caller won the race) nothing is written
        and None is returned.

        replacement.user_id is ignored -- the owner is always taken from the
        revoked row so a rotated token can never change hands.
        """
        now_iso = to_iso(now)
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token_hash == old_hash)
                    & (_refresh_tokens.c.revoked == False)  # noqa: E712 -- SQL expression, not a Python comparison
                    & (_refresh_tokens.c.expires_at > now_iso)
                )
                .values(revoked=True, revoked_at=now_iso)
            )
            if result.rowcount != 1:
                conn.rollback()
                return None
            owner_id = conn.execute(
                select(_refresh_tokens.c.user_id).where(_refresh_tokens.c.token_hash == old_hash)
            ).scalar_one()
            replacement.user_id = owner_id
            replacement.id = self._insert_refresh_token(conn, replacement)
            conn.commit()
        return replacement

    def delete_refresh_tokens_for_user(self, user_id: int) -> int:
        """Hard-delete every refresh token owned by user_id. Returns rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        """Hard-delete every token whose expires_at is before `now`, revoked or not."""
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < to_iso(now)))
            conn.commit()
        return result.rowcount

    def _insert_refresh_token(self, conn, token: RefreshToken) -> int:
        result = conn.execute(
            _refresh_tokens.insert().values(
                user_id=token.user_id,
                token_hash=token.token_hash,
                issued_at=to_iso(token.issued_at),
                expires_at=to_iso(token.expires_at),
                revoked=token.revoked,
                revoked_at=to_iso(token.revoked_at) if token.revoked_at else None,
                ip_address=_truncate(token.ip_address, 64),
                user_agent=_truncate(token.user_agent, 255),
            )
        )
        return result.inserted_primary_key[0]

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by the health check."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _truncate(value: str | None, limit: int) -> str | None:
    return value[:limit] if value else value


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        enabled=bool(row.enabled),
        account_non_locked=bool(row.account_non_locked),
        account_non_expired=bool(row.account_non_expired),
        credentials_non_expired=bool(row.credentials_non_expired),
        first_name=row.first_name,
        last_name=row.last_name,
        phone=row.phone,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_api_client(row) -> ApiClient:
    return ApiClient(
        id=row.id,
        client_id=row.client_id,
        client_secret_hash=row.client_secret_hash,
        name=row.name,
        scopes=row.scopes,
        allowed_ips=row.allowed_ips,
        enabled=bool(row.enabled),
        created_at=row.created_at,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        issued_at=from_iso(row.issued_at),
        expires_at=from_iso(row.expires_at),
        revoked=bool(row.revoked),
        revoked_at=from_iso(row.revoked_at),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )
