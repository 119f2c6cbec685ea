from celery import Celery

# Shared by celery beat (scheduler tick) and the notification workers
celery = Celery("steady_notifications")

# Load configuration from app.config.celeryconfig module
celery.config_from_object("app.config.celeryconfig")
