"""
auth/service.py -- Login, refresh, and logout-all orchestration.

Each flow reads and writes through CredentialStore, and emits exactly one
audit event for its outcome.

Failure policy:
  login       -> raises BadCredentials. Unknown identity, wrong password and an
                 unusable account all look the same to the caller; only the
                 audit detail ("reason") tells them apart.
  refresh     -> returns None. Unknown, revoked (replayed), and expired tokens
                 all collapse to None; the audit detail carries the reason so a
                 replay ("reuse_detected") is visible to monitoring.
  logout_all  -> raises NotFound if the user vanished between authentication
                 and the call.

Audit writes are queued, never awaited, so a broken audit sink cannot turn
a successful login into a failed one.
"""

from __future__ import annotations

import logging

from audit.models import (
    AUTH_LOGIN,
    AUTH_LOGIN_FAIL,
    AUTH_LOGOUT_ALL,
    AUTH_REFRESH,
    AUTH_REFRESH_FAIL,
    RequestContext,
)
from audit.recorder import AuditRecorder
from auth.authorities import expand_authorities
from auth.errors import BadCredentials, NotFound
from auth.models import AccessGrant, User
from auth.passwords import PasswordHasher
from auth.refresh import RefreshTokenManager
from auth.store import CredentialStore
from auth.tokens import AccessTokenCodec

logger = logging.getLogger("aaa.auth.service")


class AuthService:
    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        codec: AccessTokenCodec,
        manager: RefreshTokenManager,
        recorder: AuditRecorder,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.codec = codec
        self.manager = manager
        self.recorder = recorder

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, username_or_email: str, password: str, context: RequestContext | None = None) -> AccessGrant:
        context = context or RequestContext()
        user = self._resolve(username_or_email)

        if user is None:
            self.hasher.dummy_verify(password)
            self._login_failed(context, "unknown_user")
            raise BadCredentials()

        if not self.hasher.matches(password, user.password_hash):
            self._login_failed(context, "bad_password", user=user)
            raise BadCredentials()

        if not user.is_usable:
            self._login_failed(context, "account_disabled", user=user)
            raise BadCredentials()

        grant = self._grant(user, refresh_token=self.manager.issue(user, context.ip_address, context.user_agent))
        self.recorder.record(AUTH_LOGIN, actor_user=user, context=context, details={"username": user.username})
        logger.info("Login succeeded for user_id=%s", user.id)
        return grant

    def _resolve(self, username_or_email: str) -> User | None:
        """Username first, then email. Both lookups ignore case."""
        if not username_or_email:
            return None
        user = self.store.get_with_roles(username_or_email)
        if user is not None:
            return user
        by_email = self.store.get_by_email(username_or_email)
        if by_email is None:
            return None
        return self.store.get_with_roles(by_email.username)

    def _login_failed(self, context: RequestContext, reason: str, user: User | None = None) -> None:
        self.recorder.record(AUTH_LOGIN_FAIL, actor_user=user, context=context, details={"reason": reason})
        logger.info("Login failed: reason=%s", reason)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, raw_refresh_token: str, context: RequestContext | None = None) -> AccessGrant | None:
        """Rotate raw_refresh_token and mint a fresh access token. None on any failure.

        Authorities are rebuilt from current role state, so a role removed since
        login is gone from the new access token.
        """
        context = context or RequestContext()
        owner = self.manager.validate(raw_refresh_token)
        if owner is None:
            self._refresh_failed(context, self.manager.status(raw_refresh_token).failure_reason)
            return None
        if not owner.is_usable:
            self._refresh_failed(context, "account_disabled", user=owner)
            return None

        new_refresh = self.manager.rotate(raw_refresh_token, context.ip_address, context.user_agent)
        if new_refresh is None:
            # Lost a race with another rotation, or expired between validate and rotate.
            self._refresh_failed(context, self.manager.status(raw_refresh_token).failure_reason, user=owner)
            return None

        user = self.store.get_with_roles(owner.username)
        if user is None:
            self._refresh_failed(context, "unknown_user")
            return None
        grant = self._grant(user, refresh_token=new_refresh)
        self.recorder.record(AUTH_REFRESH, actor_user=user, context=context, details={"rotated": True})
        return grant

    def _refresh_failed(self, context: RequestContext, reason: str, user: User | None = None) -> None:
        self.recorder.record(AUTH_REFRESH_FAIL, actor_user=user, context=context, details={"reason": reason})
        logger.info("Refresh failed: reason=%s", reason)

    # ------------------------------------------------------------------
    # Logout everywhere
    # ------------------------------------------------------------------

    def logout_all(self, username: str, context: RequestContext | None = None) -> int:
        """Delete every refresh token of username and return how many were removed.

        Access tokens already issued stay valid until they expire.
        """
        context = context or RequestContext()
        user = self.store.get_by_username(username)
        if user is None:
            raise NotFound("user", username)
        removed = self.manager.revoke_all_for_user(user.username)
        self.recorder.record(
            AUTH_LOGOUT_ALL, actor_user=user, context=context, details={"revoked_count": removed}
        )
        return removed

    # ------------------------------------------------------------------

    def _grant(self, user: User, refresh_token: str) -> AccessGrant:
        access_token, expires_at = self.codec.issue(user.username, expand_authorities(user))
        return AccessGrant(access_token=access_token, refresh_token=refresh_token, access_token_expires_at=expires_at)
