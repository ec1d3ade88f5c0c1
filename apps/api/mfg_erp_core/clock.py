from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite returns DateTime(timezone=True) columns naive.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def minutes_between(start: datetime, end: datetime) -> Decimal:
    seconds = (as_utc(end) - as_utc(start)).total_seconds()
    return Decimal(str(round(max(seconds, 0.0) / 60, 2)))
