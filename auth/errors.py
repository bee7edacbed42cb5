"""
auth/errors.py -- Domain exceptions raised by the authentication orchestrator.

Only outcomes the caller must map to a distinct client-facing status are
exceptions. Invalid or reused tokens are not: the codec and the refresh-token
manager return None for those and the route layer turns None into a 401.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for authentication-domain errors."""


class BadCredentials(AuthError):
    """Unknown identity, wrong password, or unusable account.

    The message is deliberately identical for every cause so callers cannot
    tell an unknown username from a wrong password.
    """

    def __init__(self) -> None:
        super().__init__("Invalid username or password.")


class NotFound(AuthError):
    """A referenced user, role, or permission does not exist."""

    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")
