import math
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from app.config.settings import settings
from app.db.models import NotificationDeliveryStatus, NotificationType
from app.schemas.notification_schemas import (
    CommunityReplySignal,
    DispatchLogEntry,
    ReplyCreatedEvent,
    ReplyNotificationHandleResult,
)
from app.services.notifications.local_time import is_valid_timezone
from app.services.notifications.scheduler import NotificationSchedulerService
from app.services.notifications.stores import DispatchLogStore, SettingsStore
from app.utils.datetime_utils import epoch_millis, utc_now
from app.utils.logging import get_logger

logger = get_logger()

REASON_MISSING_USERS = "actorUserId and targetUserId are required"
REASON_SELF_REPLY = "Self-replies do not trigger notifications"
REASON_NOT_OPTED_IN = "Target user is not opted in for reply notifications"
REASON_COOLDOWN = "Cooldown active to prevent spam"
REASON_HOURLY_LIMIT = "Hourly notification limit reached for target user"
REASON_NO_JOB = "Unable to build notification job (invalid timezone or empty signal)"


def normalize_reply_count(reply_count: Optional[float]) -> int:
    """Floor to a whole count, never below one."""
    if reply_count is None or not math.isfinite(reply_count):
        return 1
    return max(1, math.floor(reply_count))


class ReplyNotificationListenerService:
    """
    Decides whether a newly created reply should notify the post author.

    Guards run in a fixed order (malformed, self-reply, opt-in, cooldown,
    hourly cap) and every decision past the first two is written to the
    dispatch log, which is also where the cooldown and the cap are read from.
    """

    def __init__(
        self,
        scheduler: NotificationSchedulerService,
        settings_store: SettingsStore,
        log_store: DispatchLogStore,
        clock: Callable[[], datetime] = utc_now,
        cooldown_minutes: Optional[int] = None,
        hourly_limit: Optional[int] = None,
        window_minutes: Optional[int] = None,
    ):
        self.scheduler = scheduler
        self.settings_store = settings_store
        self.log_store = log_store
        self.clock = clock
        self.default_cooldown_minutes = (
            cooldown_minutes
            if cooldown_minutes is not None
            else settings.COMMUNITY_REPLY_COOLDOWN_MINUTES
        )
        self.hourly_limit = (
            hourly_limit if hourly_limit is not None else settings.COMMUNITY_REPLY_HOURLY_LIMIT
        )
        self.window = timedelta(
            minutes=(
                window_minutes
                if window_minutes is not None
                else settings.COMMUNITY_REPLY_WINDOW_MINUTES
            )
        )

    async def on_reply_created(
        self, event: ReplyCreatedEvent
    ) -> ReplyNotificationHandleResult:
        actor_user_id = (event.actor_user_id or "").strip()
        target_user_id = (event.target_user_id or "").strip()

        if not actor_user_id or not target_user_id:
            return ReplyNotificationHandleResult(notified=False, reason=REASON_MISSING_USERS)

        if actor_user_id == target_user_id:
            return ReplyNotificationHandleResult(notified=False, reason=REASON_SELF_REPLY)

        reply_count = normalize_reply_count(event.reply_count)

        with self.log_store.hold_recipient_lock(target_user_id):
            now = self.clock()
            target_settings = self.settings_store.get_settings(target_user_id)

            if target_settings is None or not target_settings.opt_in.community_replies:
                return self._skip(target_user_id, actor_user_id, reply_count, now, REASON_NOT_OPTED_IN)

            cooldown_minutes = target_settings.community_reply_cooldown_minutes
            if cooldown_minutes is None:
                cooldown_minutes = self.default_cooldown_minutes

            last_sent = self.log_store.find_most_recent_sent(
                target_user_id, NotificationType.COMMUNITY_REPLIES
            )
            if last_sent and now - last_sent.dispatched_at_utc < timedelta(
                minutes=cooldown_minutes
            ):
                return self._skip(target_user_id, actor_user_id, reply_count, now, REASON_COOLDOWN)

            sent_in_window = self.log_store.count_sent_since(
                target_user_id, NotificationType.COMMUNITY_REPLIES, now - self.window
            )
            if sent_in_window >= self.hourly_limit:
                return self._skip(
                    target_user_id, actor_user_id, reply_count, now, REASON_HOURLY_LIMIT
                )

            timezone_name = target_settings.schedule.timezone
            if not is_valid_timezone(timezone_name):
                logger.warning(
                    f"Stored timezone {timezone_name!r} for {target_user_id} is invalid, using {self.scheduler.timezone_fallback}"
                )
                timezone_name = self.scheduler.timezone_fallback

            jobs = self.scheduler.build_community_reply_jobs(
                [
                    CommunityReplySignal(
                        user_id=target_user_id,
                        reply_count=reply_count,
                        latest_reply_at_utc=event.occurred_at_utc,
                    )
                ],
                {target_user_id: timezone_name},
                now_utc=now,
            )
            if not jobs:
                return ReplyNotificationHandleResult(notified=False, reason=REASON_NO_JOB)

            job = jobs[0]
            dispatch = (await self.scheduler.dispatch_jobs([job]))[0]

            status = (
                NotificationDeliveryStatus.SENT
                if dispatch.delivered
                else NotificationDeliveryStatus.FAILED
            )
            self.log_store.create(
                DispatchLogEntry(
                    user_id=target_user_id,
                    type=job.type,
                    status=status,
                    scheduled_at_utc=job.scheduled_at_utc,
                    dispatched_at_utc=dispatch.dispatched_at_utc,
                    dedupe_key=f"{job.job_id}:{actor_user_id}:{epoch_millis(now)}",
                    payload={
                        **job.payload.model_dump(by_alias=True),
                        "actorUserId": actor_user_id,
                    },
                    reason=None if dispatch.delivered else dispatch.message,
                )
            )

        if not dispatch.delivered:
            logger.warning(f"Reply notification {job.job_id} failed: {dispatch.message}")

        return ReplyNotificationHandleResult(
            notified=dispatch.delivered,
            reason=None if dispatch.delivered else dispatch.message,
            job=job,
            dispatch=dispatch,
        )

    def _skip(
        self,
        target_user_id: str,
        actor_user_id: str,
        reply_count: int,
        now: datetime,
        reason: str,
    ) -> ReplyNotificationHandleResult:
        self.log_store.create(
            DispatchLogEntry(
                user_id=target_user_id,
                type=NotificationType.COMMUNITY_REPLIES,
                status=NotificationDeliveryStatus.SKIPPED,
                scheduled_at_utc=now,
                dispatched_at_utc=now,
                dedupe_key=(
                    f"{NotificationType.COMMUNITY_REPLIES.value}:{target_user_id}:"
                    f"skipped:{uuid.uuid4().hex}"
                ),
                payload={"actorUserId": actor_user_id, "replyCount": reply_count},
                reason=reason,
            )
        )
        logger.info(f"Reply notification for {target_user_id} skipped: {reason}")
        return ReplyNotificationHandleResult(notified=False, reason=reason)
