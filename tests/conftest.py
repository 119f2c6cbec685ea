import os

# Must be set before anything under app/ is imported (logging and settings read them)
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone
from typing import Callable, Generator, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.db import create_tables
from app.schemas.notification_schemas import (
    NotificationOptInSettings,
    NotificationSchedulePreferences,
    UserNotificationProfile,
)
from app.services.notifications import (
    NotificationSchedulerService,
    ReplyNotificationListenerService,
    SqlDispatchLogStore,
    SqlSettingsStore,
    SupportiveMessageDispatcher,
)
from app.utils.datetime_utils import to_utc


# Test database setup
TEST_DATABASE_URL = "sqlite://"

# A Monday; America/New_York is UTC-4 on this date
MONDAY_NOON_UTC = datetime(2024, 6, 10, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Controllable clock for anything that takes a ``clock`` callable."""

    def __init__(self, now: datetime):
        self.now = to_utc(now)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def test_engine():
    """Create a fresh in-memory database per test."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    create_tables(engine)

    yield engine
    engine.dispose()


@pytest.fixture
def db_session(test_engine) -> Generator[Session, None, None]:
    """Create a database session for each test."""
    session_maker = sessionmaker(
        bind=test_engine, class_=Session, expire_on_commit=False
    )

    with session_maker() as session:
        yield session
        session.rollback()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(MONDAY_NOON_UTC)


@pytest.fixture
def scheduler(clock: FixedClock) -> NotificationSchedulerService:
    return NotificationSchedulerService(
        dispatcher=SupportiveMessageDispatcher(clock=clock), clock=clock
    )


@pytest.fixture
def settings_store(db_session: Session) -> SqlSettingsStore:
    return SqlSettingsStore(db_session)


@pytest.fixture
def log_store(db_session: Session) -> SqlDispatchLogStore:
    return SqlDispatchLogStore(db_session)


@pytest.fixture
def reply_listener(
    scheduler: NotificationSchedulerService,
    settings_store: SqlSettingsStore,
    log_store: SqlDispatchLogStore,
    clock: FixedClock,
) -> ReplyNotificationListenerService:
    return ReplyNotificationListenerService(
        scheduler,
        settings_store,
        log_store,
        clock=clock,
        cooldown_minutes=30,
        hourly_limit=3,
        window_minutes=60,
    )


def build_profile(
    user_id: str = "user-1",
    timezone_name: str = "America/New_York",
    daily: bool = True,
    weekly: bool = False,
    replies: bool = False,
    daily_hour: int = 9,
    weekly_day: int = 1,
    weekly_hour: int = 18,
) -> UserNotificationProfile:
    return UserNotificationProfile(
        user_id=user_id,
        opt_in=NotificationOptInSettings(
            daily_check_in_reminder=daily,
            weekly_reflection=weekly,
            community_replies=replies,
        ),
        schedule=NotificationSchedulePreferences(
            timezone=timezone_name,
            daily_reminder_hour_local=daily_hour,
            weekly_reflection_day_local=weekly_day,
            weekly_reflection_hour_local=weekly_hour,
        ),
    )


@pytest.fixture
def make_profile() -> Callable[..., UserNotificationProfile]:
    return build_profile


@pytest.fixture
def opted_in_target(settings_store: SqlSettingsStore) -> Callable[..., str]:
    """Persist reply settings for a target user and return its id."""

    def _create(
        user_id: str = "author-1",
        timezone_name: str = "Europe/Berlin",
        replies: bool = True,
        cooldown_minutes: Optional[int] = None,
    ) -> str:
        profile = build_profile(
            user_id=user_id, timezone_name=timezone_name, daily=False, replies=replies
        )
        settings_store.upsert_settings(
            user_id, profile.opt_in, profile.schedule, cooldown_minutes=cooldown_minutes
        )
        return user_id

    return _create
