from .notification_delivery import deliver_notification_job_task

__all__ = ["deliver_notification_job_task"]
