"""
Clock helpers.

Every time-dependent service takes a ``clock`` callable so tests can move time
forward without sleeping. Datetimes are naive UTC, matching what SQLite stores.

``utcnow`` reads from a replaceable source so the API process can run against
a controlled clock too (``set_clock`` / ``reset_clock``).
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def system_utcnow() -> datetime:
    """Current UTC time without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


_source: Clock = system_utcnow


def utcnow() -> datetime:
    return _source()


def set_clock(source: Clock) -> None:
    global _source
    _source = source


def reset_clock() -> None:
    global _source
    _source = system_utcnow
