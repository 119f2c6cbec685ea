import pytest
from datetime import datetime, timedelta, timezone
from pydantic import ValidationError
from unittest.mock import patch

from app.config.settings import settings
from app.db.models import NotificationType
from app.schemas.notification_schemas import (
    CommunityReplySignal,
    DailyCheckInPayload,
    NotificationJob,
    NotificationSchedulePreferences,
    UserNotificationProfile,
    WeeklyReflectionPayload,
)
from app.services.notifications.scheduler import NotificationSchedulerService, make_job_id
from app.utils.errors import InvalidHourError, InvalidTimezoneError, InvalidWeekdayError

pytestmark = pytest.mark.unit

MONDAY_NOON_UTC = datetime(2024, 6, 10, 12, 0, tzinfo=timezone.utc)  # scheduler fixture clock


def _with_schedule(profile: UserNotificationProfile, **overrides) -> UserNotificationProfile:
    """Bypass model validation so out-of-range preferences reach the job builder."""
    schedule = NotificationSchedulePreferences.model_construct(
        **{**profile.schedule.model_dump(), **overrides}
    )
    return UserNotificationProfile.model_construct(
        user_id=profile.user_id, opt_in=profile.opt_in, schedule=schedule
    )


class TestJobIds:
    """Test deterministic job ids."""

    def test_format(self):
        assert (
            make_job_id(
                "user-1",
                NotificationType.DAILY_CHECK_IN_REMINDER,
                datetime(2024, 6, 10, 13, 0, tzinfo=timezone.utc),
            )
            == "DAILY_CHECK_IN_REMINDER:user-1:20240610130000"
        )

    def test_sub_second_precision_is_dropped(self):
        assert (
            make_job_id(
                "u",
                NotificationType.COMMUNITY_REPLIES,
                datetime(2024, 6, 10, 13, 0, 5, 987000, tzinfo=timezone.utc),
            )
            == "COMMUNITY_REPLIES:u:20240610130005"
        )

    def test_offset_instants_use_utc_digits(self):
        new_york = datetime(2024, 6, 10, 9, 0, tzinfo=timezone(timedelta(hours=-4)))
        assert make_job_id("u", NotificationType.WEEKLY_REFLECTION, new_york).endswith(
            ":20240610130000"
        )


class TestBuildScheduledJobs:
    """Test recurring job construction."""

    def test_daily_and_weekly(self, scheduler, make_profile):
        profile = make_profile(daily=True, weekly=True, daily_hour=9, weekly_day=1, weekly_hour=18)

        jobs = scheduler.build_scheduled_jobs(profile, MONDAY_NOON_UTC)

        assert [job.job_id for job in jobs] == [
            "DAILY_CHECK_IN_REMINDER:user-1:20240610130000",
            "WEEKLY_REFLECTION:user-1:20240610220000",
        ]
        daily, weekly = jobs
        assert daily.scheduled_at_utc == datetime(2024, 6, 10, 13, 0, tzinfo=timezone.utc)
        assert daily.timezone == "America/New_York"
        assert daily.payload == DailyCheckInPayload(hour_local=9)
        assert weekly.payload == WeeklyReflectionPayload(weekday_local=1, hour_local=18)
        assert weekly.payload.supportive_tone is True

    def test_sorted_by_due_time(self, scheduler, make_profile):
        # Daily rolls to tomorrow, weekly is due later today
        profile = make_profile(daily=True, weekly=True, daily_hour=7, weekly_day=1, weekly_hour=10)

        jobs = scheduler.build_scheduled_jobs(profile, MONDAY_NOON_UTC)

        assert [job.type for job in jobs] == [
            NotificationType.WEEKLY_REFLECTION,
            NotificationType.DAILY_CHECK_IN_REMINDER,
        ]
        assert jobs[0].scheduled_at_utc < jobs[1].scheduled_at_utc

    def test_no_opt_ins(self, scheduler, make_profile):
        assert scheduler.build_scheduled_jobs(
            make_profile(daily=False, weekly=False, replies=True), MONDAY_NOON_UTC
        ) == []

    def test_uses_injected_clock(self, scheduler, make_profile):
        profile = make_profile(daily=True, weekly=True)
        assert scheduler.build_scheduled_jobs(profile) == scheduler.build_scheduled_jobs(
            profile, MONDAY_NOON_UTC
        )

    def test_deterministic(self, scheduler, make_profile):
        profile = make_profile(daily=True, weekly=True, timezone_name="Asia/Kolkata")

        first = scheduler.build_scheduled_jobs(profile, MONDAY_NOON_UTC)
        second = scheduler.build_scheduled_jobs(profile, MONDAY_NOON_UTC)

        assert [(j.job_id, j.scheduled_at_utc) for j in first] == [
            (j.job_id, j.scheduled_at_utc) for j in second
        ]

    def test_single_type_builders(self, scheduler, make_profile):
        profile = make_profile(daily=True, weekly=False)

        daily = scheduler.build_daily_check_in_reminder_job(profile, MONDAY_NOON_UTC)

        assert daily is not None
        assert daily.type == NotificationType.DAILY_CHECK_IN_REMINDER
        assert scheduler.build_weekly_reflection_job(profile, MONDAY_NOON_UTC) is None


class TestProfileValidation:
    """Test fail-fast validation of preferences."""

    def test_invalid_timezone(self, scheduler, make_profile):
        with pytest.raises(InvalidTimezoneError):
            scheduler.build_scheduled_jobs(
                make_profile(timezone_name="Mars/Olympus_Mons"), MONDAY_NOON_UTC
            )

    def test_invalid_timezone_without_any_opt_in(self, scheduler, make_profile):
        with pytest.raises(InvalidTimezoneError):
            scheduler.build_scheduled_jobs(
                make_profile(timezone_name="", daily=False), MONDAY_NOON_UTC
            )

    @pytest.mark.parametrize("hour", [-1, 24, 9.5, "9", True, None])
    def test_invalid_daily_hour(self, scheduler, make_profile, hour):
        profile = _with_schedule(make_profile(), daily_reminder_hour_local=hour)

        with pytest.raises(InvalidHourError) as exc_info:
            scheduler.build_scheduled_jobs(profile, MONDAY_NOON_UTC)

        assert "dailyReminderHourLocal" in exc_info.value.message

    def test_invalid_weekly_hour(self, scheduler, make_profile):
        profile = _with_schedule(make_profile(weekly=True), weekly_reflection_hour_local=30)

        with pytest.raises(InvalidHourError) as exc_info:
            scheduler.build_scheduled_jobs(profile, MONDAY_NOON_UTC)

        assert exc_info.value.field_name == "weeklyReflectionHourLocal"

    @pytest.mark.parametrize("weekday", [7, -1, 1.5])
    def test_invalid_weekday(self, scheduler, make_profile, weekday):
        profile = _with_schedule(make_profile(weekly=True), weekly_reflection_day_local=weekday)

        with pytest.raises(InvalidWeekdayError):
            scheduler.build_scheduled_jobs(profile, MONDAY_NOON_UTC)

    def test_boundary_hours_are_valid(self, scheduler, make_profile):
        for hour in (0, 23):
            jobs = scheduler.build_scheduled_jobs(
                make_profile(daily_hour=hour), MONDAY_NOON_UTC
            )
            assert len(jobs) == 1


class TestBuildCommunityReplyJobs:
    """Test reply job construction."""

    def test_builds_one_job_per_signal_with_replies(self, scheduler):
        jobs = scheduler.build_community_reply_jobs(
            [
                CommunityReplySignal(user_id="u1", reply_count=2),
                CommunityReplySignal(user_id="u2", reply_count=0),
                CommunityReplySignal(user_id="u3", reply_count=1),
                CommunityReplySignal(user_id="u4", reply_count=1),
            ],
            {"u1": "Europe/Berlin", "u3": "Mars/Olympus_Mons", "u4": ""},
            now_utc=MONDAY_NOON_UTC,
        )

        assert [job.user_id for job in jobs] == ["u1", "u4"]
        assert jobs[0].job_id == "COMMUNITY_REPLIES:u1:20240610120200"
        assert jobs[0].timezone == "Europe/Berlin"
        assert jobs[0].payload.reply_count == 2
        assert jobs[1].timezone == "UTC"

    def test_scheduled_after_debounce(self, scheduler):
        latest = datetime(2024, 6, 10, 11, 59, tzinfo=timezone.utc)

        [job] = scheduler.build_community_reply_jobs(
            [CommunityReplySignal(user_id="u1", reply_count=3, latest_reply_at_utc=latest)],
            {},
            now_utc=MONDAY_NOON_UTC,
        )

        assert job.scheduled_at_utc == MONDAY_NOON_UTC + timedelta(minutes=2)
        assert job.payload.latest_reply_at_utc == latest
        assert job.payload.kind == "community-replies"

    def test_empty_signals(self, scheduler):
        assert scheduler.build_community_reply_jobs([], {}) == []

    def test_missing_timezone_uses_configured_default(self, clock):
        with patch.object(settings, "DEFAULT_TIMEZONE", "Europe/London"):
            scheduler = NotificationSchedulerService(clock=clock)

        [job] = scheduler.build_community_reply_jobs(
            [CommunityReplySignal(user_id="u1", reply_count=1)], {}
        )

        assert scheduler.timezone_fallback == "Europe/London"
        assert job.timezone == "Europe/London"

    def test_explicit_timezone_fallback(self, clock):
        scheduler = NotificationSchedulerService(clock=clock, timezone_fallback="Asia/Tokyo")

        [job] = scheduler.build_community_reply_jobs(
            [CommunityReplySignal(user_id="u1", reply_count=1)], {"u1": ""}
        )

        assert job.timezone == "Asia/Tokyo"


class TestNotificationJobModel:
    """Test the job model invariants."""

    def test_payload_must_match_type(self):
        with pytest.raises(ValidationError):
            NotificationJob(
                job_id="DAILY_CHECK_IN_REMINDER:u:20240610130000",
                user_id="u",
                type=NotificationType.DAILY_CHECK_IN_REMINDER,
                scheduled_at_utc=datetime(2024, 6, 10, 13, 0, tzinfo=timezone.utc),
                timezone="UTC",
                payload=WeeklyReflectionPayload(weekday_local=1, hour_local=9),
            )

    def test_jobs_are_immutable(self, scheduler, make_profile):
        [job] = scheduler.build_scheduled_jobs(make_profile(), MONDAY_NOON_UTC)

        with pytest.raises(ValidationError):
            job.user_id = "someone-else"

    def test_survives_json_round_trip_for_task_queues(self, scheduler, make_profile):
        [job] = scheduler.build_scheduled_jobs(make_profile(), MONDAY_NOON_UTC)

        dumped = job.model_dump(by_alias=True)

        assert dumped["scheduledAtUtc"] == "2024-06-10T13:00:00.000Z"
        assert dumped["payload"]["kind"] == "daily-check-in"
        assert NotificationJob.model_validate(dumped) == job
