"""
auth/refresh.py -- Opaque refresh-token lifecycle: issue, validate, rotate, revoke, sweep.

State machine per token:

    ACTIVE --rotate--> REVOKED   (terminal, stored flag)
    ACTIVE --time----> EXPIRED   (terminal, predicate now >= expires_at)

A token is never reactivated. The raw value exists only in the return value
of issue()/rotate(); the store keeps HMAC-SHA256(secret, raw) and nothing else.

Single-use enforcement lives in CredentialStore.rotate_refresh_token(): the
revoke is a conditional UPDATE, so of two concurrent rotations of the same
token exactly one matches the row and the other sees it already revoked.
A replayed token therefore just yields None -- callers treat that as an
authentication failure, not an error.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.errors import NotFound
from auth.models import RefreshToken, RefreshTokenStatus, User
from auth.store import CredentialStore
from auth.tokens import generate_refresh_token, hash_refresh_token
from core.clock import Clock, utc_now

logger = logging.getLogger("aaa.auth.refresh")


class RefreshTokenManager:
    """Issue and consume single-use refresh tokens backed by CredentialStore."""

    def __init__(
        self,
        store: CredentialStore,
        hash_key: str,
        ttl: timedelta = timedelta(days=7),
        clock: Clock = utc_now,
    ) -> None:
        if ttl <= timedelta(0):
            raise ValueError("Refresh token TTL must be positive.")
        self.store = store
        self.ttl = ttl
        self._hash_key = hash_key
        self._clock = clock

    def _hash(self, raw_token: str) -> str:
        return hash_refresh_token(raw_token, self._hash_key)

    def _new_record(self, user_id: int, ip: str | None, user_agent: str | None) -> tuple[str, RefreshToken]:
        now = self._clock()
        raw = generate_refresh_token()
        record = RefreshToken(
            user_id=user_id,
            token_hash=self._hash(raw),
            issued_at=now,
            expires_at=now + self.ttl,
            ip_address=ip,
            user_agent=user_agent,
        )
        return raw, record

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def issue(self, user: User, ip: str | None = None, user_agent: str | None = None) -> str:
        """Persist a new token for user and return its raw value. The only time it is visible."""
        if user.id is None:
            raise ValueError("Cannot issue a refresh token for an unsaved user.")
        raw, record = self._new_record(user.id, ip, user_agent)
        self.store.insert_refresh_token(record)
        return raw

    def validate(self, raw_token: str) -> User | None:
        """Return the owning user if the token is known, unrevoked, and unexpired.

        Read-only. A concurrent rotate() may revoke the token right after this
        returns, so never treat a successful validate() as permission to skip rotate().
        """
        record = self._lookup(raw_token)
        if record is None or not record.is_active(self._clock()):
            return None
        return self.store.get_by_id(record.user_id)

    def status(self, raw_token: str) -> RefreshTokenStatus:
        """Classify a presented token without changing it. Used for audit detail."""
        record = self._lookup(raw_token)
        if record is None:
            return RefreshTokenStatus.UNKNOWN
        if record.revoked:
            return RefreshTokenStatus.REVOKED
        if record.is_expired(self._clock()):
            return RefreshTokenStatus.EXPIRED
        return RefreshTokenStatus.ACTIVE

    def rotate(self, raw_token: str, ip: str | None = None, user_agent: str | None = None) -> str | None:
        """Atomically revoke raw_token and issue its replacement for the same user.

        Returns the new raw token, or None if raw_token is unknown, already
        revoked, expired, or lost a concurrent rotation race.
        """
        if not raw_token:
            return None
        now = self._clock()
        # Owner is taken from the revoked row inside the transaction.
        raw, replacement = self._new_record(0, ip, user_agent)
        rotated = self.store.rotate_refresh_token(self._hash(raw_token), replacement, now)
        if rotated is None:
            return None
        return raw

    def revoke_all_for_user(self, username: str) -> int:
        """Hard-delete every refresh token of username. Returns the number removed.

        Raises NotFound if the user does not exist.
        """
        user = self.store.get_by_username(username)
        if user is None:
            raise NotFound("user", username)
        removed = self.store.delete_refresh_tokens_for_user(user.id)
        logger.info("Revoked %d refresh token(s) for user_id=%s", removed, user.id)
        return removed

    def cleanup_expired(self) -> int:
        """Hard-delete every token past its expiry, revoked or not. Idempotent."""
        return self.store.delete_expired_refresh_tokens(self._clock())

    def _lookup(self, raw_token: str) -> RefreshToken | None:
        if not raw_token:
            return None
        return self.store.get_refresh_token_by_hash(self._hash(raw_token))
