"""
auth/tokens.py -- Signed access tokens and opaque refresh-token primitives.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens are self-contained and carry
       sub, iss, iat, exp, jti, and a space-delimited "scope" claim holding the
       sorted authority set. No server-side record is kept, so an access token
       cannot be revoked before it expires -- the short TTL (15 minutes by
       default) bounds the exposure. verify() returns None on any failure;
       the route layer turns that into a 401.

       Expiry is checked against the injected clock rather than the library's
       wall clock so behaviour is deterministic under test.

  Refresh tokens: secrets.token_bytes(32) gives 256 bits of entropy, rendered
       as URL-safe base64 behind an "rt_" prefix so leaked tokens are easy to
       recognise in logs and secret scanners. We store
       HMAC-SHA256(SECRET_KEY, raw_token) so lookup is O(1) and a database dump
       alone is not enough to forge a lookup key. bcrypt's intentional slowness
       is unnecessary for a 256-bit random value.

Layer rule: no imports from api/, audit/, or jobs/.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import ClaimSet
from core.clock import Clock, utc_now


ALGORITHM = "HS256"
REFRESH_TOKEN_PREFIX = "rt_"
_MIN_SECRET_LENGTH = 32


# ---------------------------------------------------------------------------
# Access tokens (JWT)
# ---------------------------------------------------------------------------


class AccessTokenCodec:
    """Issue and verify HS256-signed access tokens.

    Construction fails fast on a short secret or a non-positive TTL so a
    misconfigured key never reaches the request path.
    """

    def __init__(
        self,
        secret_key: str,
        issuer: str,
        ttl: timedelta = timedelta(minutes=15),
        leeway: timedelta = timedelta(0),
        clock: Clock = utc_now,
    ) -> None:
        if len(secret_key) < _MIN_SECRET_LENGTH:
            raise ValueError(f"JWT secret must be at least {_MIN_SECRET_LENGTH} characters.")
        if ttl <= timedelta(0):
            raise ValueError("Access token TTL must be positive.")
        if not issuer:
            raise ValueError("JWT issuer must not be empty.")
        self._secret_key = secret_key
        self.issuer = issuer
        self.ttl = ttl
        self.leeway = leeway
        self._clock = clock

    def issue(self, subject: str, authorities: Iterable[str], now: datetime | None = None) -> tuple[str, datetime]:
        """Encode a signed token for subject. Returns (token, expiry).

        The expiry is returned exactly as encoded (whole seconds), so callers
        can echo it to clients without drifting from the exp claim.
        """
        now = now or self._clock()
        issued_at = int(now.timestamp())
        expires_at = int((now + self.ttl).timestamp())
        claims = {
            "sub": subject,
            "iss": self.issuer,
            "iat": issued_at,
            "exp": expires_at,
            "jti": str(uuid.uuid4()),
            "scope": encode_scope(authorities),
        }
        token = jwt.encode(claims, self._secret_key, algorithm=ALGORITHM, headers={"typ": "JWT"})
        return token, datetime.fromtimestamp(expires_at, tz=timezone.utc)

    def verify(self, token: str | None, now: datetime | None = None) -> ClaimSet | None:
        """Verify signature, issuer, and expiry. Returns the claims or None on any failure.

        Malformed input is just "invalid": nothing here raises for a bad token.
        """
        if not token or not isinstance(token, str):
            return None
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                # Expiry is checked below against the injected clock; python-jose would use
                # the wall clock, and any require_exp option turns that check back on.
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTError:
            return None

        exp = payload.get("exp")
        iat = payload.get("iat")
        if not isinstance(exp, int) or not isinstance(iat, int):
            return None
        now = now or self._clock()
        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        if now >= expires_at + self.leeway:
            return None

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            return None
        return ClaimSet(
            subject=subject,
            issuer=payload["iss"],
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=expires_at,
            token_id=str(payload.get("jti", "")),
            authorities=decode_scope(payload.get("scope")),
        )


def encode_scope(authorities: Iterable[str]) -> str:
    """Deterministic space-delimited encoding: sorted, deduplicated."""
    return " ".join(sorted({a for a in authorities if a}))


def decode_scope(raw: object) -> frozenset[str]:
    if not isinstance(raw, str):
        return frozenset()
    return frozenset(part for part in raw.split() if part)


# ---------------------------------------------------------------------------
# Refresh tokens (opaque)
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    """Return a new opaque token: "rt_" + 43 URL-safe base64 chars (256 random bits)."""
    body = base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")
    return f"{REFRESH_TOKEN_PREFIX}{body}"


def hash_refresh_token(raw_token: str, key: str) -> str:
    """Return HMAC-SHA256(key, raw_token) as a 64-char hex string.

    Deterministic so the store can look a token up by hash.
    """
    return hmac.new(key.encode("utf-8"), raw_token.encode("utf-8"), hashlib.sha256).hexdigest()
