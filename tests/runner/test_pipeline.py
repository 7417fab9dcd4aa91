"""Tests for the sync pipeline."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from alphahub.alerts.telegram import NoopNotifier, TelegramNotifier
from alphahub.cache.service import create_alpha_cache
from alphahub.config.settings import AppSettings
from alphahub.core.interfaces import AirdropRepository, AlphaDataSource
from alphahub.core.types import (
    AirdropRecord,
    AirdropStatus,
    AirdropType,
    AlphaToken,
    ScheduleRecord,
    ScheduleSyncResult,
)
from alphahub.runner.pipeline import AlphaHubPipeline, build_airdrop_alert, build_reminder
from alphahub.services.alpha import AlphaService
from alphahub.stability.monitor import StabilityMonitor

NOW = datetime.now(UTC)


def make_token(symbol: str, **overrides) -> AlphaToken:
    fields = {
        "id": f"ALPHA_{symbol}",
        "symbol": symbol,
        "name": f"{symbol} Token",
        "type": AirdropType.AIRDROP,
        "status": AirdropStatus.CLAIMABLE,
        "online_airdrop": True,
        "score": 180,
        "listing_time": NOW - timedelta(hours=1),
        "last_update": NOW,
    }
    fields.update(overrides)
    return AlphaToken(**fields)


class MockDataSource(AlphaDataSource):
    """Mock data source that returns a fixed listing."""

    name = "binance-alpha"
    priority = 1

    def __init__(self, tokens: list[AlphaToken]):
        self.tokens = tokens

    async def is_available(self) -> bool:
        return True

    async def fetch_tokens(self) -> list[AlphaToken]:
        return list(self.tokens)

    async def fetch_token(self, symbol: str) -> AlphaToken | None:
        return None


class MockRepository(AirdropRepository):
    """In-memory airdrop repository."""

    def __init__(self):
        self.records: dict[str, AirdropRecord] = {}

    async def find_airdrop_by_token(self, token: str) -> AirdropRecord | None:
        return self.records.get(token)

    async def create_airdrop(self, record: AirdropRecord) -> AirdropRecord:
        stored = record.model_copy(update={"id": len(self.records) + 1})
        self.records[record.token] = stored
        return stored

    async def update_airdrop(self, airdrop_id: int, record: AirdropRecord) -> None:
        self.records[record.token] = record


def make_schedule_service(due: list[ScheduleRecord] | None = None, sync_ok: bool = True):
    schedule = MagicMock()
    schedule.now = MagicMock(return_value=NOW - timedelta(minutes=5))
    schedule.sync_from_binance_alpha = AsyncMock(
        return_value=ScheduleSyncResult(
            success=sync_ok,
            created=1,
            errors=0 if sync_ok else 1,
            source="binance-alpha",
            timestamp=NOW,
        )
    )
    schedule.update_all_statuses = AsyncMock(return_value={"today": 0, "live": 0, "ended": 0})
    schedule.get_schedules_for_notification = AsyncMock(return_value=due or [])
    schedule.mark_as_notified = AsyncMock()
    schedule.cleanup_old_schedules = AsyncMock(return_value=0)
    return schedule


def make_notifier(delivered: bool = True):
    notifier = MagicMock()
    notifier.send_airdrop_alert = AsyncMock(return_value=delivered)
    notifier.send_reminder = AsyncMock(return_value=delivered)
    notifier.close = AsyncMock()
    return notifier


def make_storage():
    storage = MagicMock()
    storage.initialize = AsyncMock()
    storage.close = AsyncMock()
    return storage


@pytest.fixture
def settings():
    return AppSettings(_env_file=None, sync_interval_seconds=1, schedule_cleanup_days=14)


@pytest.fixture
def due_schedule():
    return ScheduleRecord(
        id=7,
        token="FOO",
        name="Foo Token",
        scheduled_time=NOW + timedelta(minutes=10),
        points=180,
    )


def build_pipeline(settings, alpha=None, schedule=None, notifier=None, **extra):
    components = {
        "storage": make_storage(),
        "alpha": alpha
        or AlphaService(
            [MockDataSource([make_token("FOO")])],
            cache=create_alpha_cache(),
            repository=MockRepository(),
        ),
        "schedule": schedule or make_schedule_service(),
        "notifier": notifier or make_notifier(),
        **extra,
    }
    return AlphaHubPipeline(settings, components=components)


class TestRunOnce:
    """Single sync cycle."""

    @pytest.mark.asyncio
    async def test_cycle_sends_new_airdrop_and_reminders(self, settings, due_schedule):
        """New tokens are alerted once and delivered reminders are marked."""
        schedule = make_schedule_service(due=[due_schedule])
        notifier = make_notifier()
        pipeline = build_pipeline(settings, schedule=schedule, notifier=notifier)

        summary = await pipeline.run_once()

        assert summary["token_sync"].created == 1
        assert summary["new_alerts"] == 1
        assert summary["reminders"] == 1
        assert summary["schedule_sync"].success is True
        assert summary["cleaned_up"] == 0

        alert = notifier.send_airdrop_alert.call_args[0][0]
        assert alert.symbol == "FOO"
        reminder = notifier.send_reminder.call_args[0][0]
        assert reminder.minutes_until == 15
        schedule.mark_as_notified.assert_awaited_once_with(7)
        schedule.update_all_statuses.assert_not_awaited()
        schedule.cleanup_old_schedules.assert_awaited_once_with(14)

    @pytest.mark.asyncio
    async def test_unchanged_tokens_not_alerted_again(self, settings):
        notifier = make_notifier()
        pipeline = build_pipeline(settings, notifier=notifier)

        await pipeline.run_once()
        summary = await pipeline.run_once()

        assert summary["new_alerts"] == 0
        assert summary["token_sync"].unchanged == 1
        assert notifier.send_airdrop_alert.await_count == 1

    @pytest.mark.asyncio
    async def test_undelivered_reminder_stays_pending(self, settings, due_schedule):
        """A failed dispatch does not mark the schedule."""
        schedule = make_schedule_service(due=[due_schedule])
        pipeline = build_pipeline(
            settings, schedule=schedule, notifier=make_notifier(delivered=False)
        )

        summary = await pipeline.run_once()

        assert summary["reminders"] == 0
        schedule.mark_as_notified.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_schedule_sync_still_sweeps(self, settings):
        schedule = make_schedule_service(sync_ok=False)
        pipeline = build_pipeline(settings, schedule=schedule)

        summary = await pipeline.run_once()

        assert summary["schedule_sync"].success is False
        schedule.update_all_statuses.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_token_sync_error_does_not_abort_cycle(self, settings):
        """Storage failures in the token sync leave the rest of the cycle running."""
        alpha = AlphaService([MockDataSource([make_token("FOO")])])
        schedule = make_schedule_service()
        pipeline = build_pipeline(settings, alpha=alpha, schedule=schedule)

        summary = await pipeline.run_once()

        assert summary["token_sync"] is None
        assert summary["new_alerts"] == 0
        schedule.sync_from_binance_alpha.assert_awaited_once()


class TestLifecycle:
    """Initialization and shutdown."""

    @pytest.mark.asyncio
    async def test_initialize_tolerates_monitor_failure(self, settings):
        monitor = MagicMock(spec=StabilityMonitor)
        monitor.start = AsyncMock(side_effect=RuntimeError("token list down"))
        monitor.stop = AsyncMock()
        pipeline = build_pipeline(settings, stability=monitor)

        await pipeline.initialize()

        pipeline.components["storage"].initialize.assert_awaited_once()
        monitor.start.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, settings):
        session = MagicMock()
        session.aclose = AsyncMock()
        monitor = MagicMock(spec=StabilityMonitor)
        monitor.stop = AsyncMock()
        pipeline = build_pipeline(settings, session=session, stability=monitor)

        await pipeline.stop()
        await pipeline.stop()

        assert pipeline.running is False
        monitor.stop.assert_awaited_once()
        pipeline.components["notifier"].close.assert_awaited_once()
        pipeline.components["storage"].close.assert_awaited_once()
        session.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_assemble_from_settings(self, tmp_path):
        """Default assembly picks the notifier from Telegram settings."""
        plain = AlphaHubPipeline(
            AppSettings(_env_file=None, database_path=str(tmp_path / "a.sqlite"))
        )
        telegram = AlphaHubPipeline(
            AppSettings(
                _env_file=None,
                database_path=str(tmp_path / "b.sqlite"),
                telegram_bot_token="token",
                telegram_chat_ids=[1],
            ),
            with_stability=True,
        )

        try:
            assert isinstance(plain.components["notifier"], NoopNotifier)
            assert "stability" not in plain.components
            assert [s.priority for s in plain.components["alpha"].data_sources] == [1, 2]

            assert isinstance(telegram.components["notifier"], TelegramNotifier)
            assert isinstance(telegram.components["stability"], StabilityMonitor)
        finally:
            await plain.stop()
            await telegram.stop()


class TestBuilders:
    """Alert payload builders."""

    def test_build_reminder_rounds_minutes_up(self, due_schedule):
        reminder = build_reminder(due_schedule, NOW - timedelta(seconds=30))

        assert reminder.minutes_until == 11
        assert reminder.symbol == "FOO"
        assert reminder.type == "AIRDROP"
        assert build_reminder(due_schedule, NOW + timedelta(hours=1)).minutes_until == 0

    def test_build_airdrop_alert(self):
        alpha = AlphaService([])
        token = make_token("FOO", chain="BSC", estimated_value=1.23)

        alert = build_airdrop_alert(alpha, token)

        assert alert.symbol == "FOO"
        assert alert.status == "CLAIMABLE"
        assert alert.required_points == 180
        assert alert.deduct_points == 18
        assert alert.airdrop_amount == "Alpha Score: 180"
        assert alert.claim_end_date == token.listing_time + timedelta(days=30)
