from abc import ABC, abstractmethod
from typing import Callable, Dict
from datetime import datetime

from app.db.models import NotificationChannel, NotificationType
from app.schemas.notification_schemas import NotificationDispatchResult, NotificationJob
from app.utils.datetime_utils import utc_now
from app.utils.logging import get_logger

logger = get_logger()


SUPPORTIVE_MESSAGES: Dict[NotificationType, str] = {
    NotificationType.DAILY_CHECK_IN_REMINDER: (
        "Small progress counts. When you are ready, take a minute for today's check-in."
    ),
    NotificationType.WEEKLY_REFLECTION: (
        "Your weekly reflection is ready. Use it as a light guide for your next steps."
    ),
    NotificationType.COMMUNITY_REPLIES: (
        "You have new community replies. Check in when it fits your schedule."
    ),
}


def build_supportive_message(job: NotificationJob) -> str:
    return SUPPORTIVE_MESSAGES[job.type]


class NotificationDispatcher(ABC):
    """
    Delivery seam for notification jobs.

    Implementations report transport problems as ``delivered=False`` with an
    explanatory ``message`` instead of raising, so one failed delivery never
    aborts a batch.
    """

    channel: NotificationChannel = NotificationChannel.IN_APP

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock

    @abstractmethod
    async def dispatch(self, job: NotificationJob) -> NotificationDispatchResult:
        """Deliver one job and describe the outcome"""
        pass

    def failed_result(self, job: NotificationJob, message: str) -> NotificationDispatchResult:
        return NotificationDispatchResult(
            job_id=job.job_id,
            user_id=job.user_id,
            type=job.type,
            dispatched_at_utc=self.clock(),
            delivered=False,
            message=message,
        )


class SupportiveMessageDispatcher(NotificationDispatcher):
    """Reference dispatcher: renders the supportive message and logs it as delivered."""

    async def dispatch(self, job: NotificationJob) -> NotificationDispatchResult:
        message = build_supportive_message(job)
        logger.info(
            f"[{self.channel.value}] {job.type.value} -> {job.user_id} ({job.job_id}): {message}"
        )
        return NotificationDispatchResult(
            job_id=job.job_id,
            user_id=job.user_id,
            type=job.type,
            dispatched_at_utc=self.clock(),
            delivered=True,
            message=message,
        )
