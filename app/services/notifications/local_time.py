"""
Wall-clock <-> UTC conversion for user-local notification preferences.

Timezones are resolved through the IANA database that ``zoneinfo`` finds on the
platform (or the ``tzdata`` package when the platform has none).
"""

from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import NamedTuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.utils.datetime_utils import to_utc
from app.utils.errors import InvalidTimezoneError


class LocalFields(NamedTuple):
    year: int
    month: int
    day: int
    hour: int
    minute: int
    second: int
    weekday: int  # 0=Sunday ... 6=Saturday


@lru_cache(maxsize=512)
def _load_zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def resolve_timezone(name: str) -> ZoneInfo:
    """Return the IANA zone for ``name`` or raise InvalidTimezoneError."""
    if not isinstance(name, str) or not name.strip():
        raise InvalidTimezoneError(name)
    try:
        return _load_zone(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        raise InvalidTimezoneError(name)


def is_valid_timezone(name: str) -> bool:
    try:
        resolve_timezone(name)
    except InvalidTimezoneError:
        return False
    return True


def utc_to_local_fields(instant: datetime, timezone_name: str) -> LocalFields:
    """Wall-clock fields of ``instant`` as observed in ``timezone_name``."""
    local = to_utc(instant).astimezone(resolve_timezone(timezone_name))
    return LocalFields(
        year=local.year,
        month=local.month,
        day=local.day,
        hour=local.hour,
        minute=local.minute,
        second=local.second,
        weekday=(local.weekday() + 1) % 7,
    )


def utc_offset(instant: datetime, timezone_name: str) -> timedelta:
    """Offset of ``timezone_name`` from UTC at ``instant``."""
    zone = resolve_timezone(timezone_name)
    return to_utc(instant).astimezone(zone).utcoffset() or timedelta(0)


def local_fields_to_utc(
    year: int, month: int, day: int, hour: int, minute: int, timezone_name: str
) -> datetime:
    """
    UTC instant for a local wall-clock time.

    Two passes: read the fields as if they were UTC, look up the zone's real
    offset at that guessed instant, then subtract it from the intended local
    time. Within an hour or so of a DST transition the offset at the guess can
    differ from the offset at the answer, which places skipped or repeated
    local hours on either side of the transition. Callers that need a strict
    ordering guarantee should check the result and use refine_local_to_utc.
    """
    intended = datetime(year, month, day, hour, minute, tzinfo=timezone.utc)
    offset = utc_offset(intended, timezone_name)
    return intended - offset


def refine_local_to_utc(
    year: int,
    month: int,
    day: int,
    hour: int,
    minute: int,
    timezone_name: str,
    candidate: datetime,
) -> datetime:
    """Re-derive the UTC instant using the offset observed at ``candidate``."""
    intended = datetime(year, month, day, hour, minute, tzinfo=timezone.utc)
    return intended - utc_offset(candidate, timezone_name)
