"""Persistence storage using SQLite."""

import json
from datetime import UTC, datetime
from typing import Any

import aiosqlite
import structlog

from ..core.errors import RepositoryError
from ..core.interfaces import AirdropRepository, ScheduleRepository, SyncLogRepository
from ..core.types import (
    AirdropRecord,
    ScheduleQuery,
    ScheduleRecord,
    ScheduleStatus,
    SyncLogRecord,
)

logger = structlog.get_logger(__name__)

AIRDROP_COLUMNS = (
    "token",
    "name",
    "chain",
    "contract_address",
    "airdrop_amount",
    "claim_start_ts",
    "claim_end_ts",
    "required_points",
    "deduct_points",
    "type",
    "status",
    "estimated_value",
    "description",
    "website_url",
    "twitter_url",
    "eligibility",
    "requirements",
    "verified",
    "is_active",
    "multiplier",
    "is_baseline",
)

SCHEDULE_COLUMNS = (
    "token",
    "name",
    "scheduled_ts",
    "end_ts",
    "points",
    "deduct_points",
    "amount",
    "chain",
    "contract_address",
    "status",
    "type",
    "estimated_price",
    "estimated_value",
    "source",
    "source_url",
    "logo_url",
    "description",
    "is_active",
    "is_verified",
)


def _to_ts(value: datetime | None) -> float | None:
    return value.timestamp() if value is not None else None


def _from_ts(value: float | None) -> datetime | None:
    return datetime.fromtimestamp(value, tz=UTC) if value is not None else None


def _now_ts() -> float:
    return datetime.now(UTC).timestamp()


def _schedule_where(query: ScheduleQuery) -> tuple[str, list[Any]]:
    """Build a WHERE clause for a schedule query."""
    clauses: list[str] = []
    params: list[Any] = []

    def add_in(column: str, values: list[Any] | None) -> None:
        if values:
            clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
            params.extend(str(v) for v in values)

    add_in("status", query.statuses)
    add_in("type", query.types)
    add_in("chain", query.chains)

    if query.token is not None:
        clauses.append("token = ?")
        params.append(query.token)
    if query.token_contains:
        clauses.append("LOWER(token) LIKE ?")
        params.append(f"%{query.token_contains.lower()}%")
    if query.scheduled_from is not None:
        clauses.append("scheduled_ts >= ?")
        params.append(_to_ts(query.scheduled_from))
    if query.scheduled_before is not None:
        clauses.append("scheduled_ts < ?")
        params.append(_to_ts(query.scheduled_before))
    if query.scheduled_to is not None:
        clauses.append("scheduled_ts <= ?")
        params.append(_to_ts(query.scheduled_to))
    if query.end_before is not None:
        clauses.append("end_ts IS NOT NULL AND end_ts <= ?")
        params.append(_to_ts(query.end_before))
    if query.is_active is not None:
        clauses.append("is_active = ?")
        params.append(int(query.is_active))
    if query.notified is not None:
        clauses.append("notified = ?")
        params.append(int(query.notified))

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


class SQLiteStorage(AirdropRepository, ScheduleRepository, SyncLogRepository):
    """SQLite-based storage for airdrops, schedules and sync logs."""

    def __init__(self, db_path: str = "alphahub.sqlite") -> None:
        """Initialize SQLite storage.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        logger.info("SQLite storage initialized", db_path=db_path)

    async def initialize(self) -> None:
        """Initialize database tables."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS airdrops (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    token TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    chain TEXT NOT NULL,
                    contract_address TEXT,
                    airdrop_amount TEXT,
                    claim_start_ts REAL,
                    claim_end_ts REAL,
                    required_points REAL,
                    deduct_points INTEGER,
                    type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    estimated_value REAL,
                    description TEXT,
                    website_url TEXT,
                    twitter_url TEXT,
                    eligibility TEXT NOT NULL DEFAULT '[]',
                    requirements TEXT NOT NULL DEFAULT '[]',
                    verified INTEGER NOT NULL DEFAULT 1,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    multiplier INTEGER NOT NULL DEFAULT 1,
                    is_baseline INTEGER NOT NULL DEFAULT 0,
                    created_ts REAL NOT NULL,
                    updated_ts REAL NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS airdrop_schedules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    token TEXT NOT NULL,
                    name TEXT NOT NULL,
                    scheduled_ts REAL NOT NULL,
                    end_ts REAL,
                    points REAL,
                    deduct_points INTEGER,
                    amount TEXT,
                    chain TEXT NOT NULL DEFAULT 'BSC',
                    contract_address TEXT,
                    status TEXT NOT NULL,
                    type TEXT NOT NULL,
                    estimated_price REAL,
                    estimated_value REAL,
                    source TEXT NOT NULL,
                    source_url TEXT,
                    logo_url TEXT,
                    description TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    is_verified INTEGER NOT NULL DEFAULT 0,
                    notified INTEGER NOT NULL DEFAULT 0,
                    created_ts REAL NOT NULL,
                    updated_ts REAL NOT NULL,
                    UNIQUE (token, scheduled_ts)
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_schedules_scheduled_ts
                ON airdrop_schedules(scheduled_ts)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_schedules_status
                ON airdrop_schedules(status)
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS sync_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source TEXT NOT NULL,
                    action TEXT NOT NULL,
                    success INTEGER NOT NULL,
                    tokens_count INTEGER NOT NULL DEFAULT 0,
                    created INTEGER NOT NULL DEFAULT 0,
                    updated INTEGER NOT NULL DEFAULT 0,
                    errors INTEGER NOT NULL DEFAULT 0,
                    duration_ms REAL NOT NULL DEFAULT 0,
                    error_message TEXT,
                    created_ts REAL NOT NULL
                )
            """)

            await db.commit()

        logger.info("Database tables initialized")

    # Airdrops

    @staticmethod
    def _airdrop_values(record: AirdropRecord) -> tuple[Any, ...]:
        return (
            record.token,
            record.name,
            record.chain,
            record.contract_address,
            record.airdrop_amount,
            _to_ts(record.claim_start_date),
            _to_ts(record.claim_end_date),
            record.required_points,
            record.deduct_points,
            str(record.type),
            str(record.status),
            record.estimated_value,
            record.description,
            record.website_url,
            record.twitter_url,
            json.dumps(record.eligibility),
            json.dumps(record.requirements),
            int(record.verified),
            int(record.is_active),
            record.multiplier,
            int(record.is_baseline),
        )

    @staticmethod
    def _row_to_airdrop(row: aiosqlite.Row) -> AirdropRecord:
        return AirdropRecord(
            id=row["id"],
            token=row["token"],
            name=row["name"],
            chain=row["chain"],
            contract_address=row["contract_address"],
            airdrop_amount=row["airdrop_amount"],
            claim_start_date=_from_ts(row["claim_start_ts"]),
            claim_end_date=_from_ts(row["claim_end_ts"]),
            required_points=row["required_points"],
            deduct_points=row["deduct_points"],
            type=row["type"],
            status=row["status"],
            estimated_value=row["estimated_value"],
            description=row["description"],
            website_url=row["website_url"],
            twitter_url=row["twitter_url"],
            eligibility=json.loads(row["eligibility"]),
            requirements=json.loads(row["requirements"]),
            verified=bool(row["verified"]),
            is_active=bool(row["is_active"]),
            multiplier=row["multiplier"],
            is_baseline=bool(row["is_baseline"]),
        )

    async def find_airdrop_by_token(self, token: str) -> AirdropRecord | None:
        """Find an airdrop by token symbol.

        Args:
            token: Token symbol

        Returns:
            Record or None if not found
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM airdrops WHERE token = ?", (token,)
            ) as cursor:
                row = await cursor.fetchone()

        return self._row_to_airdrop(row) if row else None

    async def create_airdrop(self, record: AirdropRecord) -> AirdropRecord:
        """Insert a new airdrop.

        Returns:
            The record with its assigned id

        Raises:
            RepositoryError: When the token already exists
        """
        now = _now_ts()
        placeholders = ", ".join("?" for _ in range(len(AIRDROP_COLUMNS) + 2))

        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    f"""
                    INSERT INTO airdrops ({', '.join(AIRDROP_COLUMNS)}, created_ts, updated_ts)
                    VALUES ({placeholders})
                """,
                    (*self._airdrop_values(record), now, now),
                )
                airdrop_id = cursor.lastrowid
                await db.commit()
        except aiosqlite.IntegrityError as e:
            raise RepositoryError(f"Airdrop {record.token} already exists") from e

        logger.debug("Airdrop created", airdrop_id=airdrop_id, token=record.token)
        return record.model_copy(update={"id": airdrop_id})

    async def update_airdrop(self, airdrop_id: int, record: AirdropRecord) -> None:
        """Overwrite an airdrop by id.

        Raises:
            RepositoryError: When no airdrop has that id
        """
        assignments = ", ".join(f"{column} = ?" for column in AIRDROP_COLUMNS)

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"UPDATE airdrops SET {assignments}, updated_ts = ? WHERE id = ?",
                (*self._airdrop_values(record), _now_ts(), airdrop_id),
            )
            count = cursor.rowcount
            await db.commit()

        if count == 0:
            raise RepositoryError(f"Airdrop {airdrop_id} not found")

        logger.debug("Airdrop updated", airdrop_id=airdrop_id, token=record.token)

    # Schedules

    @staticmethod
    def _schedule_values(record: ScheduleRecord) -> tuple[Any, ...]:
        return (
            record.token,
            record.name,
            _to_ts(record.scheduled_time),
            _to_ts(record.end_time),
            record.points,
            record.deduct_points,
            record.amount,
            record.chain,
            record.contract_address,
            str(record.status),
            str(record.type),
            record.estimated_price,
            record.estimated_value,
            record.source,
            record.source_url,
            record.logo_url,
            record.description,
            int(record.is_active),
            int(record.is_verified),
        )

    @staticmethod
    def _row_to_schedule(row: aiosqlite.Row) -> ScheduleRecord:
        return ScheduleRecord(
            id=row["id"],
            token=row["token"],
            name=row["name"],
            scheduled_time=_from_ts(row["scheduled_ts"]),
            end_time=_from_ts(row["end_ts"]),
            points=row["points"],
            deduct_points=row["deduct_points"],
            amount=row["amount"],
            chain=row["chain"],
            contract_address=row["contract_address"],
            status=row["status"],
            type=row["type"],
            estimated_price=row["estimated_price"],
            estimated_value=row["estimated_value"],
            source=row["source"],
            source_url=row["source_url"],
            logo_url=row["logo_url"],
            description=row["description"],
            is_active=bool(row["is_active"]),
            is_verified=bool(row["is_verified"]),
            notified=bool(row["notified"]),
        )

    async def upsert_schedule(self, record: ScheduleRecord) -> None:
        """Insert or update a schedule keyed by (token, scheduled time).

        The notified flag is only ever set by ``mark_schedule_notified``.
        """
        now = _now_ts()
        placeholders = ", ".join("?" for _ in range(len(SCHEDULE_COLUMNS) + 2))
        updates = ",\n".join(
            f"{column} = excluded.{column}"
            for column in SCHEDULE_COLUMNS
            if column not in ("token", "scheduled_ts")
        )

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"""
                INSERT INTO airdrop_schedules
                    ({', '.join(SCHEDULE_COLUMNS)}, created_ts, updated_ts)
                VALUES ({placeholders})
                ON CONFLICT(token, scheduled_ts) DO UPDATE SET
                    {updates},
                    updated_ts = excluded.updated_ts
            """,
                (*self._schedule_values(record), now, now),
            )
            await db.commit()

        logger.debug(
            "Schedule upserted",
            token=record.token,
            scheduled_time=record.scheduled_time.isoformat(),
            status=str(record.status),
        )

    async def find_schedule_by_id(self, schedule_id: int) -> ScheduleRecord | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM airdrop_schedules WHERE id = ?", (schedule_id,)
            ) as cursor:
                row = await cursor.fetchone()

        return self._row_to_schedule(row) if row else None

    async def find_schedules(self, query: ScheduleQuery) -> list[ScheduleRecord]:
        """Find schedules matching a query, earliest first.

        Args:
            query: Filter with optional limit and offset

        Returns:
            Matching records
        """
        where, params = _schedule_where(query)
        limit = query.limit if query.limit is not None else -1

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT * FROM airdrop_schedules
                {where}
                ORDER BY scheduled_ts ASC, id ASC
                LIMIT ? OFFSET ?
            """,
                (*params, limit, query.offset),
            ) as cursor:
                rows = await cursor.fetchall()

        return [self._row_to_schedule(row) for row in rows]

    async def update_schedule_status(
        self, query: ScheduleQuery, status: ScheduleStatus
    ) -> int:
        """Set the status of every matching schedule.

        Returns:
            Number of rows changed
        """
        where, params = _schedule_where(query)

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"UPDATE airdrop_schedules SET status = ?, updated_ts = ? {where}",
                (str(status), _now_ts(), *params),
            )
            count = cursor.rowcount
            await db.commit()

        return count

    async def mark_schedule_notified(self, schedule_id: int) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE airdrop_schedules SET notified = 1, updated_ts = ?
                WHERE id = ?
            """,
                (_now_ts(), schedule_id),
            )
            await db.commit()

        logger.debug("Schedule marked notified", schedule_id=schedule_id)

    async def delete_schedules(self, query: ScheduleQuery) -> int:
        """Delete every matching schedule.

        Returns:
            Number of rows deleted
        """
        where, params = _schedule_where(query)

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"DELETE FROM airdrop_schedules {where}", tuple(params)
            )
            count = cursor.rowcount
            await db.commit()

        logger.debug("Schedules deleted", count=count)
        return count

    async def count_schedules_by_status(
        self, is_active: bool | None = True
    ) -> dict[str, int]:
        where, params = _schedule_where(ScheduleQuery(is_active=is_active))

        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT status, COUNT(*) FROM airdrop_schedules
                {where}
                GROUP BY status
            """,
                tuple(params),
            ) as cursor:
                rows = await cursor.fetchall()

        return {status: count for status, count in rows}

    # Sync logs

    async def record_sync_log(self, entry: SyncLogRecord) -> None:
        """Append a sync log entry."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO sync_logs (
                    source, action, success, tokens_count, created, updated,
                    errors, duration_ms, error_message, created_ts
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    entry.source,
                    entry.action,
                    int(entry.success),
                    entry.tokens_count,
                    entry.created,
                    entry.updated,
                    entry.errors,
                    entry.duration_ms,
                    entry.error_message,
                    _now_ts(),
                ),
            )
            await db.commit()

        logger.debug("Sync logged", source=entry.source, success=entry.success)

    async def load_sync_logs(self, limit: int = 20) -> list[SyncLogRecord]:
        """Most recent sync log entries, newest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT source, action, success, tokens_count, created, updated,
                       errors, duration_ms, error_message
                FROM sync_logs
                ORDER BY id DESC
                LIMIT ?
            """,
                (limit,),
            ) as cursor:
                rows = await cursor.fetchall()

        return [
            SyncLogRecord(**{**dict(row), "success": bool(row["success"])})
            for row in rows
        ]

    async def close(self) -> None:
        """Close storage (cleanup if needed)."""
        logger.info("Storage closed")

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
