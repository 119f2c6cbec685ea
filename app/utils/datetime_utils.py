"""
Instant helpers shared by the scheduler, the stores and the API schemas.

Every instant inside the service is a timezone-aware UTC ``datetime``. The
database columns hold naive UTC values, and the wire format is an ISO-8601
string with millisecond precision and a ``Z`` suffix.
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current instant, aware, in UTC. Default clock for the services."""
    return datetime.now(timezone.utc)


def naive_utc_now() -> datetime:
    """Current instant as naive UTC, for column defaults."""
    return utc_now().replace(tzinfo=None)


def to_utc(dt: datetime) -> datetime:
    """
    Normalize any datetime to aware UTC.

    Naive values are read back from the database as naive UTC, so they are
    tagged rather than shifted.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_naive_utc(dt: datetime) -> datetime:
    """Inverse of ``to_utc`` for writes: shift to UTC, then drop tzinfo."""
    return to_utc(dt).replace(tzinfo=None)


def isoformat_utc(dt: datetime) -> str:
    """
    Format an instant as an ISO-8601 UTC string with millisecond precision,
    e.g. ``2024-06-10T13:00:00.000Z``.
    """
    utc_dt = to_utc(dt)
    return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond // 1000:03d}Z"


def epoch_millis(dt: datetime) -> int:
    """Milliseconds since the Unix epoch for an instant (naive values are UTC)."""
    return int(to_utc(dt).timestamp() * 1000)
