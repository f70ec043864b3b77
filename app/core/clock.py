from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """UTC wall clock truncated to milliseconds, the precision Mongo stores."""

    def now(self) -> datetime:
        ts = datetime.now(timezone.utc)
        return ts.replace(microsecond=(ts.microsecond // 1000) * 1000)


def as_utc(value: datetime) -> datetime:
    # motor returns naive datetimes unless tz_aware is set
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
