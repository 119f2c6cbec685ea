from typing import Optional
from datetime import datetime
import uuid
from sqlalchemy import (
    String,
    Boolean,
    Integer,
    Text,
    Enum,
    Index,
    CheckConstraint,
    DateTime,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
import enum

from app.utils.datetime_utils import naive_utc_now


class Base(DeclarativeBase):
    pass


# Enums
class NotificationType(enum.Enum):
    DAILY_CHECK_IN_REMINDER = "DAILY_CHECK_IN_REMINDER"
    WEEKLY_REFLECTION = "WEEKLY_REFLECTION"
    COMMUNITY_REPLIES = "COMMUNITY_REPLIES"


class NotificationDeliveryStatus(enum.Enum):
    SENT = "SENT"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class NotificationChannel(enum.Enum):
    IN_APP = "IN_APP"
    PUSH = "PUSH"
    EMAIL = "EMAIL"


def _new_id() -> str:
    return str(uuid.uuid4())


# Base model with common audit fields
class AuditMixin:
    """Mixin for common audit fields"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, onupdate=naive_utc_now
    )


# Models
class UserNotificationSettings(Base, AuditMixin):
    """Per-user opt-in flags and local schedule preferences.

    All timestamps in this module are naive UTC.
    """

    __tablename__ = "user_notification_settings"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    daily_check_in_reminder: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    weekly_reflection: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    community_replies: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    timezone: Mapped[str] = mapped_column(String(64), default="UTC", nullable=False)
    daily_reminder_hour_local: Mapped[int] = mapped_column(
        Integer, default=9, nullable=False
    )
    weekly_reflection_day_local: Mapped[int] = mapped_column(
        Integer, default=1, nullable=False
    )  # 0=Sunday
    weekly_reflection_hour_local: Mapped[int] = mapped_column(
        Integer, default=18, nullable=False
    )
    # NULL falls back to COMMUNITY_REPLY_COOLDOWN_MINUTES
    community_reply_cooldown_minutes: Mapped[Optional[int]] = mapped_column(Integer)

    # Constraints
    __table_args__ = (
        CheckConstraint(
            "daily_reminder_hour_local BETWEEN 0 AND 23",
            name="ck_notif_settings_daily_hour",
        ),
        CheckConstraint(
            "weekly_reflection_day_local BETWEEN 0 AND 6",
            name="ck_notif_settings_weekly_day",
        ),
        CheckConstraint(
            "weekly_reflection_hour_local BETWEEN 0 AND 23",
            name="ck_notif_settings_weekly_hour",
        ),
        CheckConstraint(
            "community_reply_cooldown_minutes IS NULL OR community_reply_cooldown_minutes >= 0",
            name="ck_notif_settings_cooldown_non_negative",
        ),
        Index(
            "idx_notif_settings_recurring",
            "daily_check_in_reminder",
            "weekly_reflection",
        ),
    )


class NotificationDispatchLog(Base):
    """Append-only record of every scheduling decision (sent, skipped, failed).

    Rate limiting reads this table, so it is the shared state between
    processes and backend instances.
    """

    __tablename__ = "notification_dispatch_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType), nullable=False
    )
    status: Mapped[NotificationDeliveryStatus] = mapped_column(
        Enum(NotificationDeliveryStatus), nullable=False
    )
    channel: Mapped[NotificationChannel] = mapped_column(
        Enum(NotificationChannel), default=NotificationChannel.IN_APP, nullable=False
    )
    scheduled_at_utc: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    dispatched_at_utc: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False)
    # JSON stored as Text - serialize/deserialize in application
    payload: Mapped[Optional[str]] = mapped_column(Text)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )

    # Constraints
    __table_args__ = (
        Index("uq_notif_dispatch_dedupe_key", "dedupe_key", unique=True),
        Index(
            "idx_notif_dispatch_rate_limit",
            "user_id",
            "type",
            "status",
            "dispatched_at_utc",
        ),
        Index("idx_notif_dispatch_created_at", "created_at"),
    )
