from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional, Union
from pydantic import AfterValidator, ConfigDict, Field, model_validator

from app.db.models import (
    NotificationChannel,
    NotificationDeliveryStatus,
    NotificationType,
)
from app.schemas.camel_base_model import CamelCaseBaseModel as BaseModel
from app.utils.datetime_utils import to_utc


# Aware UTC on the way in; naive values are taken to be UTC already.
UtcDatetime = Annotated[datetime, AfterValidator(to_utc)]


# User preferences


class NotificationOptInSettings(BaseModel):
    daily_check_in_reminder: bool = Field(
        False, description="Receive the daily check-in reminder"
    )
    weekly_reflection: bool = Field(
        False, description="Receive the weekly reflection prompt"
    )
    community_replies: bool = Field(
        False, description="Receive notifications for replies to own posts"
    )


class NotificationSchedulePreferences(BaseModel):
    """Wall-clock preferences; ranges are checked by the job builder, not here."""

    timezone: str = Field(..., description="IANA timezone name, e.g. Europe/Berlin")
    daily_reminder_hour_local: int = Field(9, description="Local hour 0-23")
    weekly_reflection_day_local: int = Field(
        1, description="Local weekday 0-6, 0=Sunday"
    )
    weekly_reflection_hour_local: int = Field(18, description="Local hour 0-23")


class UserNotificationProfile(BaseModel):
    user_id: str = Field(..., description="User the notifications belong to")
    opt_in: NotificationOptInSettings
    schedule: NotificationSchedulePreferences


class NotificationSettings(BaseModel):
    """Settings store row as seen by the scheduler and the reply listener."""

    user_id: str
    opt_in: NotificationOptInSettings
    schedule: NotificationSchedulePreferences
    community_reply_cooldown_minutes: Optional[int] = Field(
        None, description="Per-user cooldown override; None uses the configured default"
    )

    def to_profile(self) -> UserNotificationProfile:
        return UserNotificationProfile(
            user_id=self.user_id, opt_in=self.opt_in, schedule=self.schedule
        )


# Job payloads, one shape per notification type


class DailyCheckInPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["daily-check-in"] = "daily-check-in"
    supportive_tone: bool = True
    hour_local: int


class WeeklyReflectionPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["weekly-reflection"] = "weekly-reflection"
    supportive_tone: bool = True
    weekday_local: int
    hour_local: int


class CommunityRepliesPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["community-replies"] = "community-replies"
    supportive_tone: bool = True
    reply_count: int = Field(..., ge=1)
    latest_reply_at_utc: Optional[UtcDatetime] = None


NotificationPayload = Annotated[
    Union[DailyCheckInPayload, WeeklyReflectionPayload, CommunityRepliesPayload],
    Field(discriminator="kind"),
]

PAYLOAD_KIND_BY_TYPE: Dict[NotificationType, str] = {
    NotificationType.DAILY_CHECK_IN_REMINDER: "daily-check-in",
    NotificationType.WEEKLY_REFLECTION: "weekly-reflection",
    NotificationType.COMMUNITY_REPLIES: "community-replies",
}


class NotificationJob(BaseModel):
    """A single, uniquely identified, time-stamped unit of notification work."""

    model_config = ConfigDict(frozen=True)

    job_id: str = Field(..., description="Deterministic id: TYPE:userId:yyyymmddHHMMSS")
    user_id: str
    type: NotificationType
    scheduled_at_utc: UtcDatetime
    timezone: str
    payload: NotificationPayload

    @model_validator(mode="after")
    def payload_matches_type(self):
        expected = PAYLOAD_KIND_BY_TYPE[self.type]
        if self.payload.kind != expected:
            raise ValueError(
                f"{self.type.value} jobs require a '{expected}' payload, got '{self.payload.kind}'"
            )
        return self


class NotificationDispatchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    user_id: str
    type: NotificationType
    dispatched_at_utc: UtcDatetime
    delivered: bool
    message: str


# Event inputs


class CommunityReplySignal(BaseModel):
    user_id: str
    reply_count: int
    latest_reply_at_utc: Optional[UtcDatetime] = None


class ReplyCreatedEvent(BaseModel):
    actor_user_id: str = Field("", description="User who wrote the reply")
    target_user_id: str = Field("", description="Author of the post being replied to")
    reply_count: Optional[float] = Field(
        None, description="Replies in this burst; floored, minimum 1"
    )
    occurred_at_utc: Optional[UtcDatetime] = None


class ReplyNotificationHandleResult(BaseModel):
    notified: bool
    reason: Optional[str] = None
    job: Optional[NotificationJob] = None
    dispatch: Optional[NotificationDispatchResult] = None


# Dispatch log


class DispatchLogEntry(BaseModel):
    id: Optional[str] = None
    user_id: str
    type: NotificationType
    status: NotificationDeliveryStatus
    channel: NotificationChannel = NotificationChannel.IN_APP
    scheduled_at_utc: UtcDatetime
    dispatched_at_utc: UtcDatetime
    dedupe_key: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    reason: Optional[str] = None
    created_at: Optional[UtcDatetime] = None


# HTTP bodies


class DailyCheckInScheduleRequest(BaseModel):
    user_id: Optional[str] = None
    opt_in: NotificationOptInSettings
    schedule: NotificationSchedulePreferences
    dispatch_now: bool = False


class DailyCheckInScheduleResponse(BaseModel):
    scheduled: bool
    reason: Optional[str] = None
    job: Optional[NotificationJob] = None
    dispatched: Optional[NotificationDispatchResult] = None


class ReplyEventRequest(BaseModel):
    actor_user_id: Optional[str] = None
    target_user_id: str = Field(..., min_length=1)
    reply_count: Optional[float] = None
    occurred_at_utc: Optional[UtcDatetime] = None
