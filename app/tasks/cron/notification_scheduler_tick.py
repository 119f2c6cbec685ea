import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.celery import celery
from app.config.settings import settings
from app.db.session import get_sync_session
from app.tasks.background.notification_delivery import deliver_notification_job_task
from app.services.notifications import (
    NotificationSchedulerService,
    SqlDispatchLogStore,
    SqlSettingsStore,
)
from app.utils.context import request_id_scope
from app.utils.datetime_utils import isoformat_utc
from app.utils.errors import NotificationValidationError
from app.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def notification_scheduler_tick_task(self, request_id: str):
    """
    Periodic task that turns stored preferences into delivery tasks.

    Runs every NOTIFICATION_SCHEDULER_TICK_MINUTES. For every user opted into a
    recurring notification it builds the next occurrence of each one and, when
    that occurrence falls inside the lookahead window and has not been logged
    yet, enqueues a delivery task with ``eta`` at the due instant. Overlapping
    ticks can enqueue the same job twice, since Celery does not deduplicate
    task ids; the delivery task drops the extra copy using the dispatch log.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    return asyncio.run(_async_notification_scheduler_tick(request_id))


async def _async_notification_scheduler_tick(request_id: str):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            with request_id_scope(request_id):
                return await _enqueue_due_jobs(
                    db_session, NotificationSchedulerService(), request_id
                )

        except Exception as e:
            logger.error(f"Notification scheduler tick failed: {str(e)}")

            return {
                "success": False,
                "error": str(e),
                "request_id": request_id,
            }


async def _enqueue_due_jobs(
    db_session: Session,
    scheduler: NotificationSchedulerService,
    request_id: str,
    now_utc: Optional[datetime] = None,
) -> Dict[str, Any]:
    logger = get_logger().bind(request_id=request_id)

    now_utc = now_utc or scheduler.clock()
    horizon = now_utc + timedelta(minutes=settings.NOTIFICATION_SCHEDULER_LOOKAHEAD_MINUTES)

    settings_store = SqlSettingsStore(db_session)
    log_store = SqlDispatchLogStore(db_session)

    profiles = settings_store.list_recurring_profiles()
    enqueued_count = 0
    already_logged_count = 0
    invalid_profile_count = 0

    for profile in profiles:
        try:
            jobs = scheduler.build_scheduled_jobs(profile, now_utc)
        except NotificationValidationError as e:
            logger.warning(
                f"Skipping notification profile for user {profile.user_id}: {e.message}"
            )
            invalid_profile_count += 1
            continue

        for job in jobs:
            if job.scheduled_at_utc > horizon:
                continue

            if log_store.exists_dedupe_key(job.job_id):
                already_logged_count += 1
                continue

            deliver_notification_job_task.apply_async(  # type: ignore
                kwargs={
                    "request_id": request_id,
                    "job": job.model_dump(by_alias=True),
                },
                eta=job.scheduled_at_utc,
                task_id=job.job_id,
            )
            enqueued_count += 1

    logger.info(
        f"Notification scheduler tick: {enqueued_count} enqueued, "
        f"{already_logged_count} already logged, {invalid_profile_count} invalid profiles "
        f"out of {len(profiles)} profiles"
    )

    return {
        "success": True,
        "profile_count": len(profiles),
        "enqueued_count": enqueued_count,
        "already_logged_count": already_logged_count,
        "invalid_profile_count": invalid_profile_count,
        "window_end_utc": isoformat_utc(horizon),
        "request_id": request_id,
    }
