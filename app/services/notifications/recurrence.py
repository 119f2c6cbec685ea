from datetime import date, datetime, timedelta

from app.services.notifications.local_time import (
    LocalFields,
    local_fields_to_utc,
    refine_local_to_utc,
    utc_to_local_fields,
)
from app.utils.datetime_utils import to_utc
from app.utils.logging import get_logger

logger = get_logger()


def _local_date_after(local_now: LocalFields, days: int) -> date:
    # Calendar arithmetic; a DST day is 23 or 25 hours long in UTC.
    return date(local_now.year, local_now.month, local_now.day) + timedelta(days=days)


def _future_local_time_to_utc(
    now_utc: datetime,
    timezone_name: str,
    local_date: date,
    hour_local: int,
) -> datetime:
    year, month, day = local_date.year, local_date.month, local_date.day
    at = local_fields_to_utc(year, month, day, hour_local, 0, timezone_name)
    if at > now_utc:
        return at

    # Two-pass conversion picked the early side of a DST gap.
    refined = refine_local_to_utc(
        year, month, day, hour_local, 0, timezone_name, candidate=at
    )
    logger.warning(
        f"DST boundary: {year:04d}-{month:02d}-{day:02d} {hour_local:02d}:00 "
        f"{timezone_name} resolved to {at.isoformat()} (not after now), "
        f"refined to {refined.isoformat()}"
    )
    return refined


def next_daily_utc(now_utc: datetime, timezone_name: str, hour_local: int) -> datetime:
    """
    Next instant at which ``hour_local``:00 occurs in ``timezone_name``,
    strictly after ``now_utc``. Reaching the target hour counts as past, so a
    call at 09:30 local for hour 9 returns tomorrow's 09:00. "Tomorrow" is the
    next local calendar date, not ``now_utc`` plus 24 hours.
    """
    now_utc = to_utc(now_utc)
    local_now = utc_to_local_fields(now_utc, timezone_name)

    day_delta = 1 if local_now.hour >= hour_local else 0
    return _future_local_time_to_utc(
        now_utc, timezone_name, _local_date_after(local_now, day_delta), hour_local
    )


def next_weekly_utc(
    now_utc: datetime, timezone_name: str, weekday_local: int, hour_local: int
) -> datetime:
    """
    Next instant at which weekday ``weekday_local`` (0=Sunday) at
    ``hour_local``:00 occurs in ``timezone_name``, strictly after ``now_utc``
    and at most seven local days later.
    """
    now_utc = to_utc(now_utc)
    local_now = utc_to_local_fields(now_utc, timezone_name)

    day_delta = (weekday_local - local_now.weekday) % 7
    if day_delta == 0 and local_now.hour >= hour_local:
        day_delta = 7

    return _future_local_time_to_utc(
        now_utc, timezone_name, _local_date_after(local_now, day_delta), hour_local
    )
