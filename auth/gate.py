"""
auth/gate.py -- Per-request bearer-token authentication.

The gate never rejects a request itself. It turns an Authorization header
into a SecurityContext and returns it; the route dependencies in
auth/dependencies.py then decide 401/403 from that context. An invalid or
orphaned token is audited and the request carries on anonymous.

Authorities are re-resolved from the credential store on every request rather
than trusted from the token's scope claim, so a disabled or deleted user is
locked out on their next request instead of at token expiry.

Layer rule: no imports from api/ or jobs/. The HTTP wiring lives in api/main.py
and stores the returned context on request.state.security.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from audit.models import AUTH_TOKEN_INVALID, AUTH_TOKEN_USERLOAD_FAIL, RequestContext
from audit.recorder import AuditRecorder
from auth.authorities import expand_authorities
from auth.models import ClaimSet, User
from auth.store import CredentialStore
from auth.tokens import AccessTokenCodec
from core.clock import Clock, utc_now

# Paths that never need an identity. Everything under /api/v1/auth that is
# reachable without a token is listed explicitly; logout-all and me are not.
PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/docs",
        "/docs/oauth2-redirect",
        "/redoc",
        "/openapi.json",
        "/api/v1/auth/login",
        "/api/v1/auth/refresh",
    }
)

_BEARER_PREFIX = "bearer "


@dataclass(frozen=True)
class SecurityContext:
    """Who is making this request. principal is None for anonymous requests."""

    principal: User | None = None
    authorities: frozenset[str] = field(default_factory=frozenset)
    claims: ClaimSet | None = None

    @classmethod
    def anonymous(cls) -> SecurityContext:
        return cls()

    @property
    def is_authenticated(self) -> bool:
        return self.principal is not None


def extract_bearer(authorization: str | None) -> str | None:
    """Return the token from an "Authorization: Bearer <token>" header, or None."""
    if not authorization or not authorization.lower().startswith(_BEARER_PREFIX):
        return None
    token = authorization[len(_BEARER_PREFIX) :].strip()
    return token or None


class AuthenticationGate:
    def __init__(
        self,
        codec: AccessTokenCodec,
        store: CredentialStore,
        recorder: AuditRecorder,
        clock: Clock = utc_now,
    ) -> None:
        self.codec = codec
        self.store = store
        self.recorder = recorder
        self._clock = clock

    def is_public(self, method: str, path: str) -> bool:
        """CORS preflight and the fixed allow-list bypass the gate entirely."""
        if method.upper() == "OPTIONS":
            return True
        return (path.rstrip("/") or "/") in PUBLIC_PATHS

    def authenticate(
        self,
        method: str,
        path: str,
        authorization: str | None,
        context: RequestContext | None = None,
        security: SecurityContext | None = None,
    ) -> SecurityContext:
        """Resolve the caller for one request.

        `security` is whatever identity the request already carries; if it is
        authenticated it is returned untouched, so running the gate twice for
        one request is harmless.
        """
        security = security or SecurityContext.anonymous()
        if self.is_public(method, path):
            return security

        token = extract_bearer(authorization)
        if token is None:
            return security

        claims = self.codec.verify(token, now=self._clock())
        if claims is None:
            self.recorder.record(
                AUTH_TOKEN_INVALID,
                context=context,
                details={"reason": "invalid_or_expired", "path": path},
            )
            return security

        if security.is_authenticated:
            return security

        user = self.store.get_with_roles(claims.subject)
        if user is None or not user.is_usable:
            self.recorder.record(
                AUTH_TOKEN_USERLOAD_FAIL,
                actor_user=user,
                context=context,
                details={"path": path, "username": claims.subject},
            )
            return SecurityContext.anonymous()

        return SecurityContext(principal=user, authorities=expand_authorities(user), claims=claims)
