from celery.schedules import crontab
from .settings import settings

# Basic Celery Configuration
_redis_url = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"
broker_url = _redis_url
result_backend = _redis_url

# Delivery tasks are enqueued with an ETA up to one lookahead window ahead;
# the broker must not redeliver them before they run.
broker_transport_options = {
    "visibility_timeout": max(3600, settings.NOTIFICATION_SCHEDULER_LOOKAHEAD_MINUTES * 60 * 4)
}

# Task Discovery
include = ["app.tasks"]

# Timezone Configuration
# Every instant handled by the notification tasks is UTC; user zones are resolved per job.
timezone = "UTC"
enable_utc = True

# Task Result Configuration
result_expires = 3600

# Task Serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

# Task Execution Configuration
task_track_started = True
task_time_limit = 10 * 60  # 10 minutes
task_soft_time_limit = 8 * 60  # 8 minutes

# Worker Configuration
worker_prefetch_multiplier = 1
worker_max_tasks_per_child = 1000

# Task Retry Configuration
task_acks_late = True
task_reject_on_worker_lost = True
task_default_retry_delay = 60  # 60 seconds
task_max_retries = 3

# Exponential Backoff Settings
task_retry_backoff = True
task_retry_backoff_max = 700  # Max 700 seconds
task_retry_jitter = False

beat_schedule = {
    # Recurring reminders - build upcoming jobs and enqueue the ones due before the next tick
    "notification-scheduler-tick": {
        "task": "app.tasks.cron.notification_scheduler_tick.notification_scheduler_tick_task",
        "schedule": crontab(minute=f"*/{settings.NOTIFICATION_SCHEDULER_TICK_MINUTES}"),
        "args": ("notification_scheduler_tick_cron",),
    },
}

# Queues
task_default_queue = "notifications"
task_routes = {
    "app.tasks.cron.*": {"queue": "notifications"},
    "app.tasks.background.notification_delivery.*": {"queue": "notification-delivery"},
}

# Beat Scheduler Configuration
beat_schedule_filename = "tmp/celerybeat-schedule"
