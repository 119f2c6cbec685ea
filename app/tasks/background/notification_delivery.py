import asyncio
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.celery import celery
from app.db.models import NotificationDeliveryStatus, NotificationType
from app.db.session import get_sync_session
from app.schemas.notification_schemas import (
    DispatchLogEntry,
    NotificationJob,
    NotificationSettings,
)
from app.services.notifications import (
    NotificationSchedulerService,
    SqlDispatchLogStore,
    SqlSettingsStore,
)
from app.utils.context import request_id_scope
from app.utils.errors import DuplicateDispatchError
from app.utils.logging import get_logger

REASON_OPTED_OUT = "User is no longer opted in to this notification"


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def deliver_notification_job_task(self, request_id: str, job: Dict[str, Any]):
    """
    Deliver one scheduled notification job at its due instant.

    Enqueued by the scheduler tick with ``eta=scheduledAtUtc`` and the job id as
    task id. Celery does not deduplicate task ids, so two copies of the same job
    can run. The job id is also the dispatch log dedupe key, and the check,
    dispatch and log write run under the recipient lock, so the second copy
    finds the first one's log row and does not deliver again.

    Args:
        request_id: The request ID of the tick that enqueued the job
        job: The serialized NotificationJob
    """
    return asyncio.run(_async_deliver_notification_job(request_id, job))


async def _async_deliver_notification_job(request_id: str, job: Dict[str, Any]):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            with request_id_scope(request_id):
                return await _deliver_job(
                    db_session,
                    NotificationSchedulerService(),
                    NotificationJob.model_validate(job),
                    request_id,
                )

        except Exception as e:
            logger.error(f"Notification delivery task failed: {str(e)}")

            return {
                "success": False,
                "error": str(e),
                "request_id": request_id,
            }


def _is_opted_in(
    user_settings: Optional[NotificationSettings], notification_type: NotificationType
) -> bool:
    if user_settings is None:
        return False
    return {
        NotificationType.DAILY_CHECK_IN_REMINDER: user_settings.opt_in.daily_check_in_reminder,
        NotificationType.WEEKLY_REFLECTION: user_settings.opt_in.weekly_reflection,
        NotificationType.COMMUNITY_REPLIES: user_settings.opt_in.community_replies,
    }[notification_type]


async def _deliver_job(
    db_session: Session,
    scheduler: NotificationSchedulerService,
    job: NotificationJob,
    request_id: str,
) -> Dict[str, Any]:
    logger = get_logger().bind(request_id=request_id)
    log_store = SqlDispatchLogStore(db_session)

    with log_store.hold_recipient_lock(job.user_id):
        if log_store.exists_dedupe_key(job.job_id):
            logger.info(f"Notification job {job.job_id} already logged, skipping")
            return {
                "success": True,
                "job_id": job.job_id,
                "status": None,
                "duplicate": True,
                "request_id": request_id,
            }

        # Preferences may have changed between the tick and the due instant
        user_settings = SqlSettingsStore(db_session).get_settings(job.user_id)
        if not _is_opted_in(user_settings, job.type):
            entry = DispatchLogEntry(
                user_id=job.user_id,
                type=job.type,
                status=NotificationDeliveryStatus.SKIPPED,
                scheduled_at_utc=job.scheduled_at_utc,
                dispatched_at_utc=scheduler.clock(),
                dedupe_key=job.job_id,
                payload=job.payload.model_dump(by_alias=True),
                reason=REASON_OPTED_OUT,
            )
        else:
            result = (await scheduler.dispatch_jobs([job]))[0]
            entry = DispatchLogEntry(
                user_id=job.user_id,
                type=job.type,
                status=(
                    NotificationDeliveryStatus.SENT
                    if result.delivered
                    else NotificationDeliveryStatus.FAILED
                ),
                scheduled_at_utc=job.scheduled_at_utc,
                dispatched_at_utc=result.dispatched_at_utc,
                dedupe_key=job.job_id,
                payload=job.payload.model_dump(by_alias=True),
                reason=None if result.delivered else result.message,
            )

        try:
            log_store.create(entry)
        except DuplicateDispatchError:
            logger.warning(f"Notification job {job.job_id} was logged concurrently")
            return {
                "success": True,
                "job_id": job.job_id,
                "status": entry.status.value,
                "duplicate": True,
                "request_id": request_id,
            }

    return {
        "success": True,
        "job_id": job.job_id,
        "status": entry.status.value,
        "duplicate": False,
        "request_id": request_id,
    }
