"""
core/clock.py -- Single source of "now" for the service.

Every time-dependent component (token codec, refresh-token manager, audit
recorder, gate) takes a `clock` callable defaulting to utc_now so tests can
pin time without patching datetime.

Timestamps are persisted as fixed-width ISO-8601 UTC strings (to_iso) so that
string comparison in SQL orders them correctly.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Render an aware datetime as UTC ISO-8601 with microseconds always present."""
    if value.tzinfo is None:
        raise ValueError("naive datetimes are not accepted; pass an aware UTC datetime")
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)
