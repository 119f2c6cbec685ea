import json
from abc import ABC, abstractmethod
from contextlib import contextmanager, nullcontext
from datetime import datetime
from typing import ContextManager, Iterator, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db.models import (
    NotificationDeliveryStatus,
    NotificationDispatchLog,
    NotificationType,
    UserNotificationSettings,
)
from app.schemas.notification_schemas import (
    DispatchLogEntry,
    NotificationOptInSettings,
    NotificationSchedulePreferences,
    NotificationSettings,
    UserNotificationProfile,
)
from app.utils.datetime_utils import to_naive_utc, to_utc
from app.utils.errors import DuplicateDispatchError
from app.utils.logging import get_logger

logger = get_logger()


class SettingsStore(ABC):
    """Per-user opt-in flags and schedule preferences."""

    @abstractmethod
    def get_settings(self, user_id: str) -> Optional[NotificationSettings]:
        pass

    @abstractmethod
    def upsert_settings(
        self,
        user_id: str,
        opt_in: NotificationOptInSettings,
        schedule: NotificationSchedulePreferences,
        cooldown_minutes: Optional[int] = None,
    ) -> NotificationSettings:
        pass

    @abstractmethod
    def list_recurring_profiles(self) -> List[UserNotificationProfile]:
        """Profiles opted into at least one recurring notification"""
        pass


class DispatchLogStore(ABC):
    """Append-only dispatch log; the rate limiter reads its SENT rows."""

    @abstractmethod
    def create(self, entry: DispatchLogEntry) -> DispatchLogEntry:
        pass

    @abstractmethod
    def find_most_recent_sent(
        self, user_id: str, notification_type: NotificationType
    ) -> Optional[DispatchLogEntry]:
        pass

    @abstractmethod
    def count_sent_since(
        self, user_id: str, notification_type: NotificationType, since: datetime
    ) -> int:
        """SENT rows dispatched strictly after ``since``"""
        pass

    @abstractmethod
    def exists_dedupe_key(self, dedupe_key: str) -> bool:
        pass

    def hold_recipient_lock(self, user_id: str) -> ContextManager:
        """
        Serialize read-decide-write sequences for one recipient. Stores that
        are only ever used by a single worker can keep the no-op default.
        """
        return nullcontext()


class SqlSettingsStore(SettingsStore):
    def __init__(self, db_session: Session):
        self.db = db_session

    @staticmethod
    def _to_settings(row: UserNotificationSettings) -> NotificationSettings:
        return NotificationSettings(
            user_id=row.user_id,
            opt_in=NotificationOptInSettings(
                daily_check_in_reminder=row.daily_check_in_reminder,
                weekly_reflection=row.weekly_reflection,
                community_replies=row.community_replies,
            ),
            schedule=NotificationSchedulePreferences(
                timezone=row.timezone,
                daily_reminder_hour_local=row.daily_reminder_hour_local,
                weekly_reflection_day_local=row.weekly_reflection_day_local,
                weekly_reflection_hour_local=row.weekly_reflection_hour_local,
            ),
            community_reply_cooldown_minutes=row.community_reply_cooldown_minutes,
        )

    def get_settings(self, user_id: str) -> Optional[NotificationSettings]:
        row = self.db.get(UserNotificationSettings, user_id)
        return self._to_settings(row) if row else None

    def upsert_settings(
        self,
        user_id: str,
        opt_in: NotificationOptInSettings,
        schedule: NotificationSchedulePreferences,
        cooldown_minutes: Optional[int] = None,
    ) -> NotificationSettings:
        """Replace flags and schedule; an omitted cooldown keeps the stored override."""
        row = self.db.get(UserNotificationSettings, user_id)
        if row is None:
            row = UserNotificationSettings(user_id=user_id)
            self.db.add(row)

        row.daily_check_in_reminder = opt_in.daily_check_in_reminder
        row.weekly_reflection = opt_in.weekly_reflection
        row.community_replies = opt_in.community_replies
        row.timezone = schedule.timezone
        row.daily_reminder_hour_local = schedule.daily_reminder_hour_local
        row.weekly_reflection_day_local = schedule.weekly_reflection_day_local
        row.weekly_reflection_hour_local = schedule.weekly_reflection_hour_local
        if cooldown_minutes is not None:
            row.community_reply_cooldown_minutes = cooldown_minutes

        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Saved notification settings for user {user_id}")
        return self._to_settings(row)

    def list_recurring_profiles(self) -> List[UserNotificationProfile]:
        stmt = (
            select(UserNotificationSettings)
            .where(
                or_(
                    UserNotificationSettings.daily_check_in_reminder.is_(True),
                    UserNotificationSettings.weekly_reflection.is_(True),
                )
            )
            .order_by(UserNotificationSettings.user_id)
        )
        return [
            self._to_settings(row).to_profile() for row in self.db.scalars(stmt).all()
        ]


class SqlDispatchLogStore(DispatchLogStore):
    def __init__(self, db_session: Session):
        self.db = db_session

    @staticmethod
    def _to_entry(row: NotificationDispatchLog) -> DispatchLogEntry:
        return DispatchLogEntry(
            id=row.id,
            user_id=row.user_id,
            type=row.type,
            status=row.status,
            channel=row.channel,
            scheduled_at_utc=to_utc(row.scheduled_at_utc),
            dispatched_at_utc=to_utc(row.dispatched_at_utc),
            dedupe_key=row.dedupe_key,
            payload=json.loads(row.payload) if row.payload else {},
            reason=row.reason,
            created_at=to_utc(row.created_at) if row.created_at else None,
        )

    def create(self, entry: DispatchLogEntry) -> DispatchLogEntry:
        row = NotificationDispatchLog(
            user_id=entry.user_id,
            type=entry.type,
            status=entry.status,
            channel=entry.channel,
            scheduled_at_utc=to_naive_utc(entry.scheduled_at_utc),
            dispatched_at_utc=to_naive_utc(entry.dispatched_at_utc),
            dedupe_key=entry.dedupe_key,
            payload=json.dumps(entry.payload, default=str),
            reason=entry.reason,
        )
        if entry.id:
            row.id = entry.id

        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise DuplicateDispatchError(entry.dedupe_key)
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Dispatch log {row.status.value} for {row.user_id} ({row.type.value}): {row.dedupe_key}"
        )
        return self._to_entry(row)

    def find_most_recent_sent(
        self, user_id: str, notification_type: NotificationType
    ) -> Optional[DispatchLogEntry]:
        stmt = (
            select(NotificationDispatchLog)
            .where(
                NotificationDispatchLog.user_id == user_id,
                NotificationDispatchLog.type == notification_type,
                NotificationDispatchLog.status == NotificationDeliveryStatus.SENT,
            )
            .order_by(NotificationDispatchLog.dispatched_at_utc.desc())
            .limit(1)
        )
        row = self.db.scalars(stmt).first()
        return self._to_entry(row) if row else None

    def count_sent_since(
        self, user_id: str, notification_type: NotificationType, since: datetime
    ) -> int:
        stmt = select(func.count(NotificationDispatchLog.id)).where(
            NotificationDispatchLog.user_id == user_id,
            NotificationDispatchLog.type == notification_type,
            NotificationDispatchLog.status == NotificationDeliveryStatus.SENT,
            NotificationDispatchLog.dispatched_at_utc > to_naive_utc(since),
        )
        return self.db.scalar(stmt) or 0

    def exists_dedupe_key(self, dedupe_key: str) -> bool:
        stmt = select(NotificationDispatchLog.id).where(
            NotificationDispatchLog.dedupe_key == dedupe_key
        )
        return self.db.scalars(stmt).first() is not None

    @contextmanager
    def hold_recipient_lock(self, user_id: str) -> Iterator[None]:
        """
        Row-lock the recipient's settings row until the transaction ends.
        ``create`` commits, so writing the decision's log row releases it.
        SQLite has no row locks and compiles FOR UPDATE away.
        """
        self.db.execute(
            select(UserNotificationSettings.user_id)
            .where(UserNotificationSettings.user_id == user_id)
            .with_for_update()
        )
        try:
            yield
        except Exception:
            self.db.rollback()
            raise
        else:
            if self.db.in_transaction():
                self.db.commit()
