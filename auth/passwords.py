"""
auth/passwords.py -- bcrypt password hashing.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

Passwords longer than 72 bytes are silently truncated by bcrypt. The API layer
caps password length at 255 characters; bytes past 72 add no entropy.

The plaintext is never logged or stored.
"""

from __future__ import annotations

import bcrypt

_DUMMY_PASSWORD = "aaa_timing_dummy"


class PasswordHasher:
    """Slow, salted, adaptive hashing for low-entropy secrets.

    rounds is the bcrypt cost factor (2**rounds iterations). Tests use 4;
    production defaults to 12 via Settings.bcrypt_rounds.
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Computed once so the first login attempt is not measurably slower
        # than later ones.
        self._dummy_hash = self.hash(_DUMMY_PASSWORD)

    def hash(self, plain: str) -> str:
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def matches(self, plain: str, digest: str | None) -> bool:
        """Return True if plain matches digest. A malformed digest is a non-match."""
        if not digest:
            return False
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), digest.encode("utf-8"))
        except (TypeError, ValueError):
            return False

    def dummy_verify(self, plain: str) -> None:
        """Burn one bcrypt comparison so an unknown identity costs the same as a wrong password."""
        self.matches(plain, self._dummy_hash)
