"""
Injectable time source.
"""

import typing as t
from datetime import datetime


class Clock(t.Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock returning naive local datetimes, as stored in the database."""

    def now(self) -> datetime:
        return datetime.now()
