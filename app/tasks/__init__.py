from .background import *
from .cron import *

__all__ = [
    # Background Tasks
    "deliver_notification_job_task",
    # Scheduled/Cron Tasks
    "notification_scheduler_tick_task",
]
