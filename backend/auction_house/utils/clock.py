"""Single source of "now" for triggers, client actions and defaults.

Everything time-dependent calls ``clock.now_utc()`` through the module so
tests can freeze or advance time with ``monkeypatch.setattr``.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC.

    Naive values (e.g. read back from SQLite, which drops tzinfo) are taken
    to already be UTC.
    """

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
