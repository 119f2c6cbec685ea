import pytest
from datetime import timedelta
from unittest.mock import Mock, patch

from sqlalchemy import select

from app.db.models import (
    NotificationDeliveryStatus,
    NotificationDispatchLog,
    NotificationType,
)
from app.schemas.notification_schemas import (
    DispatchLogEntry,
    NotificationDispatchResult,
    NotificationJob,
    ReplyCreatedEvent,
)
from app.services.notifications import (
    DispatchLogStore,
    NotificationSchedulerService,
    ReplyNotificationListenerService,
    SettingsStore,
    SupportiveMessageDispatcher,
)
from app.services.notifications.reply_listener import (
    REASON_COOLDOWN,
    REASON_HOURLY_LIMIT,
    REASON_MISSING_USERS,
    REASON_NOT_OPTED_IN,
    REASON_SELF_REPLY,
    normalize_reply_count,
)
from app.utils.datetime_utils import epoch_millis


def _event(actor="replier-1", target="author-1", **kwargs) -> ReplyCreatedEvent:
    return ReplyCreatedEvent(actor_user_id=actor, target_user_id=target, **kwargs)


def _log_rows(db_session, status=None):
    stmt = select(NotificationDispatchLog).order_by(NotificationDispatchLog.dispatched_at_utc)
    if status is not None:
        stmt = stmt.where(NotificationDispatchLog.status == status)
    return db_session.scalars(stmt).all()


def _seed_sent(log_store, clock, user_id: str, minutes_ago: int):
    at = clock.now - timedelta(minutes=minutes_ago)
    log_store.create(
        DispatchLogEntry(
            user_id=user_id,
            type=NotificationType.COMMUNITY_REPLIES,
            status=NotificationDeliveryStatus.SENT,
            scheduled_at_utc=at,
            dispatched_at_utc=at,
            dedupe_key=f"seed:{user_id}:{minutes_ago}",
        )
    )


class UndeliverableDispatcher(SupportiveMessageDispatcher):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.calls = 0

    async def dispatch(self, job: NotificationJob) -> NotificationDispatchResult:
        self.calls += 1
        return self.failed_result(job, "Push gateway unavailable")


class TestInputGuards:
    """Test guards that run before any store access."""

    @pytest.fixture
    def mocked_listener(self, scheduler, clock):
        settings_store = Mock(spec=SettingsStore)
        log_store = Mock(spec=DispatchLogStore)
        listener = ReplyNotificationListenerService(
            scheduler, settings_store, log_store, clock=clock
        )
        return listener, settings_store, log_store

    @pytest.mark.asyncio
    @pytest.mark.parametrize("actor,target", [("u1", "u1"), (" u1 ", "u1")])
    async def test_self_reply_never_touches_stores(self, mocked_listener, actor, target):
        listener, settings_store, log_store = mocked_listener

        result = await listener.on_reply_created(_event(actor, target))

        assert result.notified is False
        assert result.reason == REASON_SELF_REPLY
        assert log_store.method_calls == []
        assert settings_store.method_calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("actor,target", [("", "author-1"), ("replier-1", "   "), ("", "")])
    async def test_malformed_event(self, mocked_listener, actor, target):
        listener, settings_store, log_store = mocked_listener

        result = await listener.on_reply_created(_event(actor, target))

        assert result.notified is False
        assert result.reason == REASON_MISSING_USERS
        assert log_store.method_calls == []
        assert settings_store.method_calls == []


class TestOptIn:
    """Test the opt-in guard."""

    @pytest.mark.asyncio
    async def test_opted_out_target_is_skipped_and_audited(
        self, reply_listener, opted_in_target, db_session
    ):
        opted_in_target(replies=False)

        result = await reply_listener.on_reply_created(_event())

        assert result.notified is False
        assert result.reason == REASON_NOT_OPTED_IN
        [row] = _log_rows(db_session)
        assert row.status == NotificationDeliveryStatus.SKIPPED
        assert row.reason == REASON_NOT_OPTED_IN
        assert row.user_id == "author-1"

    @pytest.mark.asyncio
    async def test_target_without_settings_is_not_opted_in(self, reply_listener, db_session):
        result = await reply_listener.on_reply_created(_event(target="stranger"))

        assert result.notified is False
        assert result.reason == REASON_NOT_OPTED_IN
        assert len(_log_rows(db_session, NotificationDeliveryStatus.SKIPPED)) == 1


class TestCooldown:
    """Test the per-recipient cooldown."""

    @pytest.mark.asyncio
    async def test_cooldown_then_recovery(self, reply_listener, opted_in_target, clock, db_session):
        opted_in_target()
        t0 = clock.now

        first = await reply_listener.on_reply_created(_event())
        assert first.notified is True
        assert first.job.scheduled_at_utc == t0 + timedelta(minutes=2)
        assert first.job.timezone == "Europe/Berlin"

        clock.advance(minutes=10)
        second = await reply_listener.on_reply_created(_event(actor="replier-2"))
        assert second.notified is False
        assert "cooldown" in second.reason.lower()

        clock.advance(minutes=21)
        third = await reply_listener.on_reply_created(_event())
        assert third.notified is True

        statuses = [row.status for row in _log_rows(db_session)]
        assert statuses == [
            NotificationDeliveryStatus.SENT,
            NotificationDeliveryStatus.SKIPPED,
            NotificationDeliveryStatus.SENT,
        ]

    @pytest.mark.asyncio
    async def test_per_user_cooldown_override(self, reply_listener, opted_in_target, clock):
        opted_in_target(cooldown_minutes=5)

        assert (await reply_listener.on_reply_created(_event())).notified is True
        clock.advance(minutes=4)
        assert (await reply_listener.on_reply_created(_event())).reason == REASON_COOLDOWN
        clock.advance(minutes=2)
        assert (await reply_listener.on_reply_created(_event())).notified is True


class TestHourlyCap:
    """Test the sliding-window cap."""

    @pytest.mark.asyncio
    async def test_three_sends_in_the_last_hour_block_a_fourth(
        self, reply_listener, opted_in_target, log_store, clock, db_session
    ):
        opted_in_target()
        for minutes_ago in (59, 45, 35):
            _seed_sent(log_store, clock, "author-1", minutes_ago)

        result = await reply_listener.on_reply_created(_event())

        assert result.notified is False
        assert result.reason == REASON_HOURLY_LIMIT
        assert "hourly" in result.reason.lower() and "limit" in result.reason.lower()
        [skipped] = _log_rows(db_session, NotificationDeliveryStatus.SKIPPED)
        assert skipped.reason == REASON_HOURLY_LIMIT

    @pytest.mark.asyncio
    async def test_sends_older_than_the_window_do_not_count(
        self, reply_listener, opted_in_target, log_store, clock
    ):
        opted_in_target()
        for minutes_ago in (60, 90, 120):
            _seed_sent(log_store, clock, "author-1", minutes_ago)

        result = await reply_listener.on_reply_created(_event())

        assert result.notified is True

    @pytest.mark.asyncio
    async def test_never_more_than_three_sent_per_hour(
        self, reply_listener, opted_in_target, clock, log_store
    ):
        opted_in_target(cooldown_minutes=0)

        notified = []
        for _ in range(6):
            notified.append((await reply_listener.on_reply_created(_event())).notified)
            clock.advance(minutes=5)

        assert notified == [True, True, True, False, False, False]
        assert (
            log_store.count_sent_since(
                "author-1", NotificationType.COMMUNITY_REPLIES, clock.now - timedelta(minutes=60)
            )
            == 3
        )


class TestAllowedReply:
    """Test the dispatch path."""

    @pytest.mark.asyncio
    async def test_sent_entry_is_logged_with_dedupe_key(
        self, reply_listener, opted_in_target, clock, db_session
    ):
        opted_in_target()

        result = await reply_listener.on_reply_created(_event(reply_count=2.7))

        assert result.notified is True
        assert result.dispatch.delivered is True
        assert result.job.payload.reply_count == 2
        [row] = _log_rows(db_session)
        assert row.status == NotificationDeliveryStatus.SENT
        assert row.dedupe_key == f"{result.job.job_id}:replier-1:{epoch_millis(clock.now)}"
        assert '"actorUserId": "replier-1"' in row.payload

    @pytest.mark.asyncio
    async def test_invalid_stored_timezone_falls_back_to_utc(
        self, reply_listener, opted_in_target
    ):
        opted_in_target(timezone_name="Mars/Olympus_Mons")

        result = await reply_listener.on_reply_created(_event())

        assert result.notified is True
        assert result.job.timezone == "UTC"

    @pytest.mark.asyncio
    async def test_invalid_stored_timezone_uses_configured_fallback(
        self, settings_store, log_store, opted_in_target, clock
    ):
        opted_in_target(timezone_name="Mars/Olympus_Mons")
        listener = ReplyNotificationListenerService(
            NotificationSchedulerService(clock=clock, timezone_fallback="Europe/London"),
            settings_store,
            log_store,
            clock=clock,
        )

        result = await listener.on_reply_created(_event())

        assert result.notified is True
        assert result.job.timezone == "Europe/London"

    @pytest.mark.asyncio
    async def test_failed_delivery_is_logged_and_not_rate_limited(
        self, settings_store, log_store, opted_in_target, clock, db_session
    ):
        opted_in_target()
        dispatcher = UndeliverableDispatcher(clock=clock)
        listener = ReplyNotificationListenerService(
            NotificationSchedulerService(dispatcher=dispatcher, clock=clock),
            settings_store,
            log_store,
            clock=clock,
        )

        first = await listener.on_reply_created(_event())
        clock.advance(minutes=1)
        second = await listener.on_reply_created(_event())

        assert first.notified is False
        assert first.reason == "Push gateway unavailable"
        assert first.dispatch.delivered is False
        assert second.dispatch is not None
        assert dispatcher.calls == 2
        rows = _log_rows(db_session, NotificationDeliveryStatus.FAILED)
        assert [row.reason for row in rows] == ["Push gateway unavailable"] * 2

    @pytest.mark.asyncio
    async def test_decision_runs_under_recipient_lock(
        self, reply_listener, opted_in_target, log_store
    ):
        opted_in_target()

        with patch.object(
            log_store, "hold_recipient_lock", wraps=log_store.hold_recipient_lock
        ) as lock:
            await reply_listener.on_reply_created(_event())

        lock.assert_called_once_with("author-1")


class TestReplyCountNormalization:
    """Test reply count flooring."""

    @pytest.mark.parametrize(
        "raw,expected",
        [(None, 1), (0, 1), (-3, 1), (1, 1), (2.7, 2), (5, 5), (float("nan"), 1)],
    )
    def test_normalize_reply_count(self, raw, expected):
        assert normalize_reply_count(raw) == expected
