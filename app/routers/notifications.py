from typing import Annotated
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.db.models import NotificationDeliveryStatus
from app.db.session import get_sync_session
from app.middlewares.auth_middleware import AuthState, ensure_same_user, get_current_user
from app.schemas.notification_schemas import (
    DailyCheckInScheduleRequest,
    DailyCheckInScheduleResponse,
    DispatchLogEntry,
    ReplyCreatedEvent,
    ReplyEventRequest,
    UserNotificationProfile,
)
from app.services.notifications import (
    NotificationSchedulerService,
    ReplyNotificationListenerService,
    SqlDispatchLogStore,
    SqlSettingsStore,
)
from app.utils.datetime_utils import epoch_millis
from app.utils.errors import NotFoundError
from app.utils.logging import get_logger
from app.utils.responses import ResponseBuilder

notifications_router = APIRouter()
logger = get_logger()

NOT_OPTED_IN_DAILY = "User is not opted in to daily check-in reminders."


def get_notification_scheduler() -> NotificationSchedulerService:
    return NotificationSchedulerService()


def get_settings_store(
    db: Annotated[Session, Depends(get_sync_session)],
) -> SqlSettingsStore:
    return SqlSettingsStore(db)


def get_dispatch_log_store(
    db: Annotated[Session, Depends(get_sync_session)],
) -> SqlDispatchLogStore:
    return SqlDispatchLogStore(db)


def get_reply_listener(
    scheduler: Annotated[NotificationSchedulerService, Depends(get_notification_scheduler)],
    settings_store: Annotated[SqlSettingsStore, Depends(get_settings_store)],
    log_store: Annotated[SqlDispatchLogStore, Depends(get_dispatch_log_store)],
) -> ReplyNotificationListenerService:
    return ReplyNotificationListenerService(
        scheduler, settings_store, log_store, clock=scheduler.clock
    )


@notifications_router.post("/daily-check-in/schedule")
async def schedule_daily_check_in(
    request: Request,
    body: DailyCheckInScheduleRequest,
    current_user: Annotated[AuthState, Depends(get_current_user)],
    scheduler: Annotated[NotificationSchedulerService, Depends(get_notification_scheduler)],
    settings_store: Annotated[SqlSettingsStore, Depends(get_settings_store)],
    log_store: Annotated[SqlDispatchLogStore, Depends(get_dispatch_log_store)],
):
    """
    Save the caller's notification preferences and return the next daily
    check-in reminder. With ``dispatchNow`` the reminder is also sent right
    away; the scheduled occurrence is still delivered by the scheduler tick.
    """
    user_id = ensure_same_user(current_user, body.user_id, "userId")
    profile = UserNotificationProfile(
        user_id=user_id, opt_in=body.opt_in, schedule=body.schedule
    )

    # Validates the profile before anything is persisted
    job = scheduler.build_daily_check_in_reminder_job(profile)
    settings_store.upsert_settings(user_id, body.opt_in, body.schedule)

    if job is None:
        return ResponseBuilder.success(
            request=request,
            data=DailyCheckInScheduleResponse(scheduled=False, reason=NOT_OPTED_IN_DAILY),
            message=NOT_OPTED_IN_DAILY,
        )

    dispatched = None
    if body.dispatch_now:
        dispatched = (await scheduler.dispatch_jobs([job]))[0]
        log_store.create(
            DispatchLogEntry(
                user_id=user_id,
                type=job.type,
                status=(
                    NotificationDeliveryStatus.SENT
                    if dispatched.delivered
                    else NotificationDeliveryStatus.FAILED
                ),
                scheduled_at_utc=job.scheduled_at_utc,
                dispatched_at_utc=dispatched.dispatched_at_utc,
                dedupe_key=f"{job.job_id}:immediate:{epoch_millis(dispatched.dispatched_at_utc)}",
                payload=job.payload.model_dump(by_alias=True),
                reason=None if dispatched.delivered else dispatched.message,
            )
        )

    return ResponseBuilder.success(
        request=request,
        data=DailyCheckInScheduleResponse(scheduled=True, job=job, dispatched=dispatched),
        message="Daily check-in reminder scheduled",
    )


@notifications_router.get("/upcoming")
async def get_upcoming_notifications(
    request: Request,
    current_user: Annotated[AuthState, Depends(get_current_user)],
    scheduler: Annotated[NotificationSchedulerService, Depends(get_notification_scheduler)],
    settings_store: Annotated[SqlSettingsStore, Depends(get_settings_store)],
):
    """Next occurrence of each recurring notification the caller opted into."""
    user_settings = settings_store.get_settings(current_user.user_id)
    if user_settings is None:
        raise NotFoundError(
            "Notification settings not found", "NOTIFICATION_SETTINGS_NOT_FOUND"
        )

    jobs = scheduler.build_scheduled_jobs(user_settings.to_profile())

    return ResponseBuilder.success(
        request=request,
        data={"jobs": jobs},
        message=f"Retrieved {len(jobs)} upcoming notifications",
    )


@notifications_router.post("/replies/event")
async def handle_reply_event(
    request: Request,
    body: ReplyEventRequest,
    current_user: Annotated[AuthState, Depends(get_current_user)],
    listener: Annotated[ReplyNotificationListenerService, Depends(get_reply_listener)],
):
    """Run a freshly persisted reply through the reply notification guards."""
    actor_user_id = ensure_same_user(current_user, body.actor_user_id, "actorUserId")

    result = await listener.on_reply_created(
        ReplyCreatedEvent(
            actor_user_id=actor_user_id,
            target_user_id=body.target_user_id,
            reply_count=body.reply_count,
            occurred_at_utc=body.occurred_at_utc,
        )
    )

    return ResponseBuilder.success(
        request=request,
        data=result,
        message="Reply notification sent" if result.notified else "Reply notification not sent",
    )
