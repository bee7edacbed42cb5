"""
auth/authorities.py -- Flatten a user's roles into its authority set.

An authority is either a role code ("ROLE_ADMIN") or a permission code
("user.read"). The same set goes into the access token's scope claim and is
what require_authority() checks against, so there is exactly one definition
of "what may this user do".
"""

from __future__ import annotations

from auth.models import User


def expand_authorities(user: User) -> frozenset[str]:
    """Return every role code plus every permission code of every role, deduplicated.

    The user must have been loaded with CredentialStore.get_with_roles();
    a user without loaded roles expands to the empty set.
    """
    authorities: set[str] = set()
    for role in user.roles:
        authorities.add(role.code)
        authorities.update(role.permissions)
    return frozenset(authorities)
