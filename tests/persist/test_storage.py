"""Tests for SQLite storage implementation."""

import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio

from alphahub.core.errors import RepositoryError
from alphahub.core.types import (
    AirdropRecord,
    AirdropStatus,
    AirdropType,
    ScheduleQuery,
    ScheduleRecord,
    ScheduleStatus,
    SyncLogRecord,
)
from alphahub.persist.storage import SQLiteStorage

BASE = datetime(2025, 1, 10, 12, 0, tzinfo=UTC)


def make_airdrop(token: str = "FOO", **overrides) -> AirdropRecord:
    fields = {
        "token": token,
        "name": f"{token} Token",
        "chain": "BSC",
        "type": AirdropType.AIRDROP,
        "status": AirdropStatus.CLAIMABLE,
        "claim_start_date": BASE,
        "claim_end_date": BASE + timedelta(days=30),
        "required_points": 180.0,
        "deduct_points": 18,
        "eligibility": ["Binance Alpha User", "Min Score: 180"],
        "requirements": ["Binance Alpha Points Required"],
        "multiplier": 4,
    }
    fields.update(overrides)
    return AirdropRecord(**fields)


def make_schedule(token: str, offset: timedelta = timedelta(0), **overrides) -> ScheduleRecord:
    overrides.setdefault("name", f"{token} Token")
    return ScheduleRecord(
        token=token,
        scheduled_time=BASE + offset,
        **overrides,
    )


class TestSQLiteStorage:
    """Test SQLite storage functionality."""

    @pytest_asyncio.fixture
    async def storage(self):
        """Create a temporary SQLite storage."""
        with tempfile.NamedTemporaryFile(suffix=".sqlite", delete=False) as tmp:
            db_path = tmp.name

        storage = SQLiteStorage(db_path=db_path)
        await storage.initialize()

        yield storage

        await storage.close()
        Path(db_path).unlink(missing_ok=True)

    @pytest.mark.asyncio
    async def test_initialization(self):
        """Test storage initialization."""
        with tempfile.NamedTemporaryFile(suffix=".sqlite", delete=False) as tmp:
            db_path = tmp.name

        storage = SQLiteStorage(db_path=db_path)
        await storage.initialize()
        await storage.initialize()

        assert Path(db_path).exists()

        await storage.close()
        Path(db_path).unlink()

    @pytest.mark.asyncio
    async def test_create_and_find_airdrop(self, storage):
        """Test airdrop insert and lookup by symbol."""
        created = await storage.create_airdrop(make_airdrop())

        found = await storage.find_airdrop_by_token("FOO")

        assert created.id is not None
        assert found.model_dump() == created.model_dump()
        assert found.claim_start_date == BASE
        assert found.eligibility == ["Binance Alpha User", "Min Score: 180"]
        assert found.status == AirdropStatus.CLAIMABLE
        assert await storage.find_airdrop_by_token("MISSING") is None

    @pytest.mark.asyncio
    async def test_duplicate_airdrop_rejected(self, storage):
        """Test symbol uniqueness."""
        await storage.create_airdrop(make_airdrop())

        with pytest.raises(RepositoryError):
            await storage.create_airdrop(make_airdrop(name="Other"))

    @pytest.mark.asyncio
    async def test_update_airdrop(self, storage):
        """Test airdrop overwrite by id."""
        created = await storage.create_airdrop(make_airdrop())

        await storage.update_airdrop(
            created.id, make_airdrop(status=AirdropStatus.ENDED, is_active=False)
        )

        found = await storage.find_airdrop_by_token("FOO")
        assert found.status == AirdropStatus.ENDED
        assert found.is_active is False

        with pytest.raises(RepositoryError):
            await storage.update_airdrop(9999, make_airdrop())

    @pytest.mark.asyncio
    async def test_schedule_upsert_by_composite_key(self, storage):
        """Same token and time updates, a different time inserts."""
        await storage.upsert_schedule(make_schedule("FOO", points=10))
        await storage.upsert_schedule(make_schedule("FOO", points=20))
        await storage.upsert_schedule(make_schedule("FOO", timedelta(days=1)))

        schedules = await storage.find_schedules(ScheduleQuery(token="FOO"))

        assert len(schedules) == 2
        assert schedules[0].points == 20
        assert schedules[0].scheduled_time == BASE
        assert schedules[1].scheduled_time == BASE + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_upsert_keeps_notified_flag(self, storage):
        """Test notified flag survives later upserts."""
        await storage.upsert_schedule(make_schedule("FOO"))
        [schedule] = await storage.find_schedules(ScheduleQuery())

        await storage.mark_schedule_notified(schedule.id)
        await storage.upsert_schedule(make_schedule("FOO", name="Renamed"))

        found = await storage.find_schedule_by_id(schedule.id)
        assert found.notified is True
        assert found.name == "Renamed"
        assert await storage.find_schedule_by_id(9999) is None

    @pytest.mark.asyncio
    async def test_find_schedules_filters(self, storage):
        """Test query filters, ordering and pagination."""
        await storage.upsert_schedule(make_schedule("LATE", timedelta(hours=5)))
        await storage.upsert_schedule(
            make_schedule("EARLY", timedelta(hours=1), chain="Solana")
        )
        await storage.upsert_schedule(
            make_schedule(
                "TGEX", timedelta(hours=3), type=AirdropType.TGE, status=ScheduleStatus.TODAY
            )
        )
        await storage.upsert_schedule(
            make_schedule("GONE", timedelta(hours=2), is_active=False)
        )

        everything = await storage.find_schedules(ScheduleQuery())
        assert [s.token for s in everything] == ["EARLY", "GONE", "TGEX", "LATE"]

        active = await storage.find_schedules(ScheduleQuery(is_active=True))
        assert [s.token for s in active] == ["EARLY", "TGEX", "LATE"]

        window = await storage.find_schedules(
            ScheduleQuery(
                scheduled_from=BASE + timedelta(hours=1),
                scheduled_before=BASE + timedelta(hours=5),
            )
        )
        assert [s.token for s in window] == ["EARLY", "GONE", "TGEX"]

        assert [
            s.token
            for s in await storage.find_schedules(ScheduleQuery(types=[AirdropType.TGE]))
        ] == ["TGEX"]
        assert [
            s.token
            for s in await storage.find_schedules(ScheduleQuery(chains=["Solana"]))
        ] == ["EARLY"]
        assert [
            s.token
            for s in await storage.find_schedules(ScheduleQuery(token_contains="at"))
        ] == ["LATE"]

        page = await storage.find_schedules(ScheduleQuery(limit=2, offset=1))
        assert [s.token for s in page] == ["GONE", "TGEX"]

    @pytest.mark.asyncio
    async def test_update_and_delete_many(self, storage):
        """Test bulk status update and delete with counts."""
        await storage.upsert_schedule(
            make_schedule("A", end_time=BASE + timedelta(hours=1), status=ScheduleStatus.LIVE)
        )
        await storage.upsert_schedule(
            make_schedule("B", end_time=BASE + timedelta(hours=3), status=ScheduleStatus.LIVE)
        )
        await storage.upsert_schedule(make_schedule("C", status=ScheduleStatus.LIVE))

        moved = await storage.update_schedule_status(
            ScheduleQuery(
                statuses=[ScheduleStatus.LIVE], end_before=BASE + timedelta(hours=2)
            ),
            ScheduleStatus.ENDED,
        )
        assert moved == 1

        counts = await storage.count_schedules_by_status()
        assert counts == {"ENDED": 1, "LIVE": 2}

        removed = await storage.delete_schedules(
            ScheduleQuery(statuses=[ScheduleStatus.ENDED])
        )
        assert removed == 1
        assert len(await storage.find_schedules(ScheduleQuery())) == 2

    @pytest.mark.asyncio
    async def test_sync_logs(self, storage):
        """Test sync log append and newest-first load."""
        await storage.record_sync_log(
            SyncLogRecord(source="binance-alpha", action="schedule-sync", success=True, created=2)
        )
        await storage.record_sync_log(
            SyncLogRecord(
                source="binance-alpha",
                action="schedule-sync",
                success=False,
                errors=1,
                error_message="timeout",
            )
        )

        logs = await storage.load_sync_logs()

        assert [log.success for log in logs] == [False, True]
        assert logs[0].error_message == "timeout"
        assert logs[1].created == 2
        assert len(await storage.load_sync_logs(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_context_manager(self):
        """Test async context manager initializes tables."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            db_path = str(Path(tmp_dir) / "ctx.sqlite")

            async with SQLiteStorage(db_path=db_path) as storage:
                await storage.upsert_schedule(make_schedule("FOO"))
                assert len(await storage.find_schedules(ScheduleQuery())) == 1
