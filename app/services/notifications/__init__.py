from .dispatchers import NotificationDispatcher, SupportiveMessageDispatcher
from .scheduler import NotificationSchedulerService, make_job_id
from .reply_listener import ReplyNotificationListenerService
from .stores import (
    DispatchLogStore,
    SettingsStore,
    SqlDispatchLogStore,
    SqlSettingsStore,
)

__all__ = [
    "NotificationDispatcher",
    "SupportiveMessageDispatcher",
    "NotificationSchedulerService",
    "make_job_id",
    "ReplyNotificationListenerService",
    "DispatchLogStore",
    "SettingsStore",
    "SqlDispatchLogStore",
    "SqlSettingsStore",
]
