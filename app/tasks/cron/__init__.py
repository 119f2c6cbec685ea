from .notification_scheduler_tick import notification_scheduler_tick_task

__all__ = ["notification_scheduler_tick_task"]
