import asyncio
import re
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from app.config.settings import settings
from app.db.models import NotificationType
from app.schemas.notification_schemas import (
    CommunityRepliesPayload,
    CommunityReplySignal,
    DailyCheckInPayload,
    NotificationDispatchResult,
    NotificationJob,
    UserNotificationProfile,
    WeeklyReflectionPayload,
)
from app.services.notifications.dispatchers import (
    NotificationDispatcher,
    SupportiveMessageDispatcher,
)
from app.services.notifications.local_time import is_valid_timezone, resolve_timezone
from app.services.notifications.recurrence import next_daily_utc, next_weekly_utc
from app.utils.datetime_utils import isoformat_utc, to_utc, utc_now
from app.utils.errors import InvalidHourError, InvalidWeekdayError
from app.utils.logging import get_logger

logger = get_logger()

def make_job_id(
    user_id: str, notification_type: NotificationType, scheduled_at_utc: datetime
) -> str:
    """``TYPE:userId:yyyymmddHHMMSS`` - the same due instant always yields the same id."""
    compact = re.sub(r"[^0-9]", "", isoformat_utc(scheduled_at_utc))[:14]
    return f"{notification_type.value}:{user_id}:{compact}"


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def assert_hour(value, field_name: str) -> None:
    if not _is_int(value) or not 0 <= value <= 23:
        raise InvalidHourError(field_name, value)


def assert_weekday(value, field_name: str) -> None:
    if not _is_int(value) or not 0 <= value <= 6:
        raise InvalidWeekdayError(field_name, value)


def validate_profile(profile: UserNotificationProfile) -> None:
    """Fail fast on preferences that can never be scheduled."""
    resolve_timezone(profile.schedule.timezone)
    assert_hour(profile.schedule.daily_reminder_hour_local, "dailyReminderHourLocal")
    assert_hour(
        profile.schedule.weekly_reflection_hour_local, "weeklyReflectionHourLocal"
    )
    assert_weekday(
        profile.schedule.weekly_reflection_day_local, "weeklyReflectionDayLocal"
    )


class NotificationSchedulerService:
    """
    Builds notification jobs from user preferences and reply signals and hands
    them to a dispatcher in due order.

    Holds no state besides its collaborators and knobs: the dispatcher, the
    clock used when no explicit ``now`` is given, the per-dispatch timeout and
    the timezone assumed for reply targets without a usable one
    (DEFAULT_TIMEZONE unless overridden).
    """

    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utc_now,
        dispatch_timeout_seconds: Optional[float] = None,
        reply_debounce: Optional[timedelta] = None,
        timezone_fallback: Optional[str] = None,
    ):
        self.dispatcher = dispatcher or SupportiveMessageDispatcher(clock=clock)
        self.clock = clock
        self.dispatch_timeout_seconds = (
            dispatch_timeout_seconds
            if dispatch_timeout_seconds is not None
            else settings.NOTIFICATION_DISPATCH_TIMEOUT_SECONDS
        )
        self.reply_debounce = reply_debounce or timedelta(
            seconds=settings.COMMUNITY_REPLY_DEBOUNCE_SECONDS
        )
        self.timezone_fallback = timezone_fallback or settings.DEFAULT_TIMEZONE

    def _now(self, now_utc: Optional[datetime]) -> datetime:
        return to_utc(now_utc) if now_utc is not None else self.clock()

    def _daily_job(
        self, profile: UserNotificationProfile, now_utc: datetime
    ) -> NotificationJob:
        schedule = profile.schedule
        at = next_daily_utc(now_utc, schedule.timezone, schedule.daily_reminder_hour_local)
        return NotificationJob(
            job_id=make_job_id(
                profile.user_id, NotificationType.DAILY_CHECK_IN_REMINDER, at
            ),
            user_id=profile.user_id,
            type=NotificationType.DAILY_CHECK_IN_REMINDER,
            scheduled_at_utc=at,
            timezone=schedule.timezone,
            payload=DailyCheckInPayload(hour_local=schedule.daily_reminder_hour_local),
        )

    def _weekly_job(
        self, profile: UserNotificationProfile, now_utc: datetime
    ) -> NotificationJob:
        schedule = profile.schedule
        at = next_weekly_utc(
            now_utc,
            schedule.timezone,
            schedule.weekly_reflection_day_local,
            schedule.weekly_reflection_hour_local,
        )
        return NotificationJob(
            job_id=make_job_id(profile.user_id, NotificationType.WEEKLY_REFLECTION, at),
            user_id=profile.user_id,
            type=NotificationType.WEEKLY_REFLECTION,
            scheduled_at_utc=at,
            timezone=schedule.timezone,
            payload=WeeklyReflectionPayload(
                weekday_local=schedule.weekly_reflection_day_local,
                hour_local=schedule.weekly_reflection_hour_local,
            ),
        )

    def build_daily_check_in_reminder_job(
        self, profile: UserNotificationProfile, now_utc: Optional[datetime] = None
    ) -> Optional[NotificationJob]:
        validate_profile(profile)
        if not profile.opt_in.daily_check_in_reminder:
            return None
        return self._daily_job(profile, self._now(now_utc))

    def build_weekly_reflection_job(
        self, profile: UserNotificationProfile, now_utc: Optional[datetime] = None
    ) -> Optional[NotificationJob]:
        validate_profile(profile)
        if not profile.opt_in.weekly_reflection:
            return None
        return self._weekly_job(profile, self._now(now_utc))

    def build_scheduled_jobs(
        self, profile: UserNotificationProfile, now_utc: Optional[datetime] = None
    ) -> List[NotificationJob]:
        """Next occurrence of every recurring notification the user opted into, earliest first."""
        validate_profile(profile)
        now_utc = self._now(now_utc)

        jobs: List[NotificationJob] = []
        if profile.opt_in.daily_check_in_reminder:
            jobs.append(self._daily_job(profile, now_utc))
        if profile.opt_in.weekly_reflection:
            jobs.append(self._weekly_job(profile, now_utc))

        return sorted(jobs, key=lambda job: job.scheduled_at_utc)

    def build_community_reply_jobs(
        self,
        signals: Iterable[CommunityReplySignal],
        timezone_by_user_id: Dict[str, str],
        now_utc: Optional[datetime] = None,
    ) -> List[NotificationJob]:
        """
        One reply job per signal with replies, due after a short debounce so
        bursts of replies can be batched upstream. Signals whose user has an
        unresolvable timezone are skipped.
        """
        scheduled_at_utc = self._now(now_utc) + self.reply_debounce
        jobs: List[NotificationJob] = []

        for signal in signals:
            if signal.reply_count <= 0:
                continue

            timezone_name = timezone_by_user_id.get(signal.user_id) or self.timezone_fallback
            if not is_valid_timezone(timezone_name):
                logger.warning(
                    f"Skipping reply notification for {signal.user_id}: invalid timezone {timezone_name!r}"
                )
                continue

            jobs.append(
                NotificationJob(
                    job_id=make_job_id(
                        signal.user_id, NotificationType.COMMUNITY_REPLIES, scheduled_at_utc
                    ),
                    user_id=signal.user_id,
                    type=NotificationType.COMMUNITY_REPLIES,
                    scheduled_at_utc=scheduled_at_utc,
                    timezone=timezone_name,
                    payload=CommunityRepliesPayload(
                        reply_count=signal.reply_count,
                        latest_reply_at_utc=signal.latest_reply_at_utc,
                    ),
                )
            )

        return jobs

    async def dispatch_jobs(
        self, jobs: Iterable[NotificationJob]
    ) -> List[NotificationDispatchResult]:
        """Dispatch one at a time, earliest ``scheduled_at_utc`` first; results keep that order."""
        ordered = sorted(jobs, key=lambda job: job.scheduled_at_utc)
        results: List[NotificationDispatchResult] = []

        for job in ordered:
            results.append(await self._dispatch_one(job))

        return results

    async def _dispatch_one(self, job: NotificationJob) -> NotificationDispatchResult:
        try:
            return await asyncio.wait_for(
                self.dispatcher.dispatch(job), timeout=self.dispatch_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Dispatch of {job.job_id} timed out after {self.dispatch_timeout_seconds}s"
            )
            return self.dispatcher.failed_result(
                job, f"Dispatch timed out after {self.dispatch_timeout_seconds}s"
            )
        except Exception as e:
            logger.error(f"Dispatcher raised for {job.job_id}: {str(e)}")
            return self.dispatcher.failed_result(job, f"Dispatch failed: {str(e)}")
