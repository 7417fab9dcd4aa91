"""Tests for the airdrop schedule service."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from alphahub.core.types import (
    AirdropStatus,
    AirdropType,
    AlphaToken,
    ScheduleQuery,
    ScheduleRecord,
    ScheduleStatus,
    ServiceResponse,
)
from alphahub.persist.storage import SQLiteStorage
from alphahub.services.schedule import (
    ScheduleService,
    advance_status,
    determine_schedule_status,
)

NOW = datetime(2025, 1, 10, 12, 0, tzinfo=UTC)


class MutableClock:
    """Clock returning a settable aware datetime."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_token(symbol: str, **overrides) -> AlphaToken:
    fields = {
        "id": f"ALPHA_{symbol}",
        "symbol": symbol,
        "name": f"{symbol} Token",
        "type": AirdropType.AIRDROP,
        "status": AirdropStatus.CLAIMABLE,
        "last_update": NOW,
    }
    fields.update(overrides)
    return AlphaToken(**fields)


def make_schedule(token: str, scheduled_time: datetime, **overrides) -> ScheduleRecord:
    return ScheduleRecord(
        token=token, name=f"{token} Token", scheduled_time=scheduled_time, **overrides
    )


def token_response(tokens: list[AlphaToken], success: bool = True) -> ServiceResponse:
    return ServiceResponse(
        success=success,
        data=tokens,
        source="binance-alpha" if success else "none",
        last_update=NOW,
        count=len(tokens),
        error=None if success else "All data sources unavailable",
    )


@pytest_asyncio.fixture
async def storage(tmp_path):
    """Initialized SQLite storage in a temp directory."""
    storage = SQLiteStorage(db_path=str(tmp_path / "schedules.sqlite"))
    await storage.initialize()
    yield storage
    await storage.close()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def alpha():
    alpha = MagicMock()
    alpha.get_tokens = AsyncMock(return_value=token_response([]))
    return alpha


@pytest.fixture
def service(alpha, storage, clock):
    return ScheduleService(
        alpha, repository=storage, sync_log_repository=storage, now_fn=clock
    )


class TestStatusDerivation:
    """Pure status helpers."""

    @pytest.mark.parametrize(
        ("scheduled", "end", "expected"),
        [
            (NOW - timedelta(hours=3), NOW - timedelta(hours=1), ScheduleStatus.ENDED),
            (NOW - timedelta(hours=1), None, ScheduleStatus.LIVE),
            (NOW, NOW + timedelta(hours=1), ScheduleStatus.LIVE),
            (NOW + timedelta(hours=6), None, ScheduleStatus.TODAY),
            (NOW + timedelta(hours=13), None, ScheduleStatus.UPCOMING),
        ],
    )
    def test_determine_schedule_status(self, scheduled, end, expected):
        assert determine_schedule_status(scheduled, end, NOW) == expected

    def test_advance_status_is_forward_only(self):
        assert advance_status(None, ScheduleStatus.TODAY) == ScheduleStatus.TODAY
        assert advance_status(ScheduleStatus.TODAY, ScheduleStatus.LIVE) == ScheduleStatus.LIVE
        assert advance_status(ScheduleStatus.LIVE, ScheduleStatus.TODAY) == ScheduleStatus.LIVE
        assert (
            advance_status(ScheduleStatus.CANCELLED, ScheduleStatus.LIVE)
            == ScheduleStatus.CANCELLED
        )


class TestWrites:
    """Upserts and manual entries."""

    @pytest.mark.asyncio
    async def test_upsert_derives_status(self, service, storage):
        await service.upsert_schedule(
            make_schedule("FOO", NOW - timedelta(hours=1), status=ScheduleStatus.UPCOMING)
        )

        [stored] = await storage.find_schedules(ScheduleQuery(token="FOO"))
        assert stored.status == ScheduleStatus.LIVE
        assert stored.scheduled_time == NOW - timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_upsert_never_regresses_status(self, service, storage):
        """Rewriting a record keeps a later stored status."""
        scheduled = NOW + timedelta(hours=2)
        await service.upsert_schedule(make_schedule("FOO", scheduled))
        await storage.update_schedule_status(
            ScheduleQuery(token="FOO"), ScheduleStatus.ENDED
        )

        await service.upsert_schedule(make_schedule("FOO", scheduled, points=100))

        [stored] = await storage.find_schedules(ScheduleQuery(token="FOO"))
        assert stored.status == ScheduleStatus.ENDED
        assert stored.points == 100

    @pytest.mark.asyncio
    async def test_add_manual_schedule(self, service, storage):
        """Manual entries are unverified and empty values become None."""
        await service.add_manual_schedule(
            "NEW", "New Token", NOW + timedelta(days=3), points=0, amount=""
        )

        [stored] = await storage.find_schedules(ScheduleQuery(token="NEW"))
        assert stored.source == "manual"
        assert stored.is_verified is False
        assert stored.is_active is True
        assert stored.points is None
        assert stored.amount is None
        assert stored.chain == "BSC"
        assert stored.status == ScheduleStatus.UPCOMING

    @pytest.mark.asyncio
    async def test_naive_times_are_read_as_utc(self, service, storage):
        """Manual entries without a timezone are stored as UTC."""
        await service.add_manual_schedule(
            "XYZ",
            "Xyz",
            datetime(2025, 1, 10, 11, 0),
            end_time=datetime(2025, 1, 10, 18, 0),
        )

        [stored] = await storage.find_schedules(
            ScheduleQuery(
                scheduled_from=datetime(2025, 1, 10, 11, 0),
                scheduled_to=datetime(2025, 1, 10, 11, 0),
            )
        )
        assert stored.token == "XYZ"
        assert stored.scheduled_time == datetime(2025, 1, 10, 11, 0, tzinfo=UTC)
        assert stored.end_time == datetime(2025, 1, 10, 18, 0, tzinfo=UTC)
        assert stored.status == ScheduleStatus.LIVE


class TestLifecycle:
    """Status sweep and day views."""

    @pytest_asyncio.fixture
    async def seeded(self, service, storage, clock):
        """Three schedules written the day before NOW."""
        clock.now = NOW - timedelta(days=1)
        today_evening = datetime(2025, 1, 10, 18, 0, tzinfo=UTC)
        today_morning = datetime(2025, 1, 10, 9, 0, tzinfo=UTC)
        tomorrow = datetime(2025, 1, 11, 10, 0, tzinfo=UTC)

        await service.upsert_schedule(make_schedule("EVE", today_evening))
        await service.upsert_schedule(
            make_schedule(
                "MORN", today_morning, end_time=today_morning + timedelta(hours=2)
            )
        )
        await service.upsert_schedule(make_schedule("TMRW", tomorrow, points=200))

        clock.now = NOW
        return service

    async def statuses(self, storage) -> dict[str, ScheduleStatus]:
        records = await storage.find_schedules(ScheduleQuery())
        return {r.token: r.status for r in records}

    @pytest.mark.asyncio
    async def test_sweep_moves_forward(self, seeded, storage):
        """A morning window already closed moves through to ENDED."""
        counts = await seeded.update_all_statuses()

        assert counts == {"today": 2, "live": 1, "ended": 1}
        assert await self.statuses(storage) == {
            "MORN": ScheduleStatus.ENDED,
            "EVE": ScheduleStatus.TODAY,
            "TMRW": ScheduleStatus.UPCOMING,
        }

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, seeded):
        await seeded.update_all_statuses()

        assert await seeded.update_all_statuses() == {"today": 0, "live": 0, "ended": 0}

    @pytest.mark.asyncio
    async def test_today_view(self, seeded):
        await seeded.update_all_statuses()

        today = await seeded.get_today_airdrops()

        assert [(a.token, a.status) for a in today] == [
            ("MORN", "ended"),
            ("EVE", "upcoming"),
        ]
        assert today[1].time == "06:00 PM"

    @pytest.mark.asyncio
    async def test_upcoming_view(self, seeded):
        upcoming = await seeded.get_upcoming_airdrops()

        assert len(upcoming) == 1
        assert upcoming[0].token == "TMRW"
        assert upcoming[0].date == "2025-01-11"
        assert upcoming[0].days_until == 1
        assert upcoming[0].points == 200

    @pytest.mark.asyncio
    async def test_schedule_response_and_stats(self, seeded):
        await seeded.update_all_statuses()

        response = await seeded.get_schedule_response()
        stats = await seeded.get_stats()

        assert response.success is True
        assert response.source == "database"
        assert len(response.today) == 2
        assert len(response.upcoming) == 1
        assert (stats.today, stats.upcoming, stats.ended, stats.total) == (1, 1, 1, 3)


class TestNotifications:
    """Reminder window and notified flag."""

    @pytest.mark.asyncio
    async def test_window_excludes_notified_and_distant(self, service):
        await service.upsert_schedule(make_schedule("SOON", NOW + timedelta(minutes=10)))
        await service.upsert_schedule(make_schedule("LATER", NOW + timedelta(minutes=30)))
        await service.upsert_schedule(make_schedule("DONE", NOW + timedelta(minutes=5)))

        done = [s for s in await service.get_schedules() if s.token == "DONE"][0]
        await service.mark_as_notified(done.id)

        due = await service.get_schedules_for_notification()

        assert [s.token for s in due] == ["SOON"]

    @pytest.mark.asyncio
    async def test_marked_schedule_not_returned_again(self, service):
        await service.upsert_schedule(make_schedule("SOON", NOW + timedelta(minutes=10)))
        [due] = await service.get_schedules_for_notification()

        await service.mark_as_notified(due.id)
        await service.upsert_schedule(make_schedule("SOON", NOW + timedelta(minutes=10)))

        assert await service.get_schedules_for_notification() == []


class TestMaintenance:
    """Cleanup and default queries."""

    @pytest.mark.asyncio
    async def test_cleanup_old_schedules(self, service, storage):
        await service.upsert_schedule(
            make_schedule(
                "OLD", NOW - timedelta(days=40), end_time=NOW - timedelta(days=39)
            )
        )
        await service.upsert_schedule(
            make_schedule(
                "RECENT", NOW - timedelta(days=10), end_time=NOW - timedelta(days=9)
            )
        )

        removed = await service.cleanup_old_schedules(days_old=30)

        assert removed == 1
        remaining = await storage.find_schedules(ScheduleQuery())
        assert [r.token for r in remaining] == ["RECENT"]

    @pytest.mark.asyncio
    async def test_get_schedules_defaults_to_active(self, service):
        await service.upsert_schedule(make_schedule("ON", NOW + timedelta(days=2)))
        await service.upsert_schedule(
            make_schedule("OFF", NOW + timedelta(days=2), is_active=False)
        )

        active = await service.get_schedules()
        everything = await service.get_schedules(ScheduleQuery(is_active=False))

        assert [s.token for s in active] == ["ON"]
        assert [s.token for s in everything] == ["OFF"]


class TestSync:
    """Schedule derivation from the token listing."""

    @pytest.mark.asyncio
    async def test_sync_creates_then_updates(self, service, alpha, storage, clock):
        """Tokens without listing time keep their first derived start."""
        alpha.get_tokens.return_value = token_response(
            [
                make_token(
                    "FOO",
                    online_airdrop=True,
                    listing_time=NOW - timedelta(hours=2),
                    score=180,
                ),
                make_token("BAR", online_tge=True, status=AirdropStatus.UPCOMING),
                make_token("QUX"),
            ]
        )

        first = await service.sync_from_binance_alpha()
        clock.now = NOW + timedelta(minutes=10)
        second = await service.sync_from_binance_alpha()

        assert (first.success, first.created, first.updated) == (True, 2, 0)
        assert (second.success, second.created, second.updated) == (True, 0, 2)
        alpha.get_tokens.assert_awaited_with(force_refresh=True)

        records = {r.token: r for r in await storage.find_schedules(ScheduleQuery())}
        assert set(records) == {"FOO", "BAR"}
        assert records["BAR"].scheduled_time == NOW + timedelta(hours=1)
        assert records["BAR"].type == AirdropType.TGE
        assert records["FOO"].status == ScheduleStatus.LIVE
        assert records["FOO"].end_time == NOW - timedelta(hours=2) + timedelta(days=7)
        assert records["FOO"].amount == "Alpha Score: 180"
        assert records["FOO"].deduct_points == 18
        assert records["FOO"].source == "binance-alpha"
        assert service.last_sync_time == NOW + timedelta(minutes=10)

        logs = await storage.load_sync_logs()
        assert len(logs) == 2
        assert logs[0].updated == 2
        assert all(log.success for log in logs)

    @pytest.mark.asyncio
    async def test_sync_without_data_fails(self, service, alpha, storage):
        alpha.get_tokens.return_value = token_response([], success=False)

        result = await service.sync_from_binance_alpha()

        assert result.success is False
        assert result.errors == 1
        [log] = await storage.load_sync_logs()
        assert log.success is False
        assert log.error_message == "All data sources unavailable"

    @pytest.mark.asyncio
    async def test_sync_never_raises(self, service, alpha):
        alpha.get_tokens.side_effect = RuntimeError("boom")

        result = await service.sync_from_binance_alpha()

        assert result.success is False
        assert result.errors == 1
