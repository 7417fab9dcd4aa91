"""Airdrop schedule service: today/upcoming views and status lifecycle."""

import asyncio
import math
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from ..core.errors import DataSourceError
from ..core.interfaces import ScheduleRepository, SyncLogRepository
from ..core.types import (
    AirdropType,
    AlphaToken,
    DataSourceType,
    ScheduleQuery,
    ScheduleRecord,
    ScheduleResponse,
    ScheduleStats,
    ScheduleStatus,
    ScheduleSyncResult,
    SyncLogRecord,
    TodayAirdrop,
    UpcomingAirdrop,
)
from .alpha import AlphaService, format_score

logger = structlog.get_logger(__name__)

SYNC_ACTION = "schedule-sync"
DEFAULT_SCHEDULE_LIMIT = 50
MATCH_WINDOW = timedelta(hours=24)

# Forward-only lifecycle order
STATUS_RANK = {
    ScheduleStatus.UPCOMING: 0,
    ScheduleStatus.TODAY: 1,
    ScheduleStatus.LIVE: 2,
    ScheduleStatus.ENDED: 3,
}


def start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def format_time(moment: datetime) -> str:
    """Display time, e.g. ``05:00 PM``."""
    return moment.strftime("%I:%M %p")


def determine_schedule_status(
    scheduled_time: datetime, end_time: datetime | None, now: datetime
) -> ScheduleStatus:
    """Derive a schedule status from wall-clock comparisons.

    Args:
        scheduled_time: Scheduled start
        end_time: Optional end
        now: Reference time

    Returns:
        ENDED past the end, LIVE once started, TODAY on the same calendar
        day, otherwise UPCOMING
    """
    if end_time is not None and now > end_time:
        return ScheduleStatus.ENDED
    if now >= scheduled_time:
        return ScheduleStatus.LIVE
    if scheduled_time.date() == now.date():
        return ScheduleStatus.TODAY
    return ScheduleStatus.UPCOMING


def advance_status(
    current: ScheduleStatus | None, derived: ScheduleStatus
) -> ScheduleStatus:
    """Combine a stored status with a newly derived one without regressing."""
    if current is None:
        return derived
    if current not in STATUS_RANK:
        return current
    return derived if STATUS_RANK[derived] > STATUS_RANK[current] else current


class ScheduleService:
    """Persisted airdrop schedules derived from the token listing."""

    def __init__(
        self,
        alpha_service: AlphaService,
        repository: ScheduleRepository,
        sync_log_repository: SyncLogRepository | None = None,
        now_fn: Callable[[], datetime] | None = None,
        notification_window: timedelta = timedelta(minutes=20),
        default_lead: timedelta = timedelta(hours=1),
        claim_window: timedelta = timedelta(days=7),
    ) -> None:
        """Initialize schedule service.

        Args:
            alpha_service: Token listing provider
            repository: Schedule persistence
            sync_log_repository: Optional audit log for sync runs
            now_fn: Optional clock returning aware UTC datetimes (for testing)
            notification_window: Reminder look-ahead
            default_lead: Start offset for tokens without a listing time
            claim_window: End offset after a known listing time
        """
        self.alpha_service = alpha_service
        self.repository = repository
        self.sync_log_repository = sync_log_repository
        self._now_fn = now_fn or (lambda: datetime.now(UTC))
        self.notification_window = notification_window
        self.default_lead = default_lead
        self.claim_window = claim_window
        self.last_sync_time: datetime | None = None

    def now(self) -> datetime:
        """Current time on the service clock."""
        return self._now_fn()

    # Views

    async def get_today_airdrops(self) -> list[TodayAirdrop]:
        """Active schedules on the current UTC day, earliest first."""
        now = self._now_fn()
        today = start_of_day(now)
        schedules = await self.repository.find_schedules(
            ScheduleQuery(
                scheduled_from=today,
                scheduled_before=today + timedelta(days=1),
                is_active=True,
            )
        )

        views = []
        for schedule in schedules:
            if schedule.end_time is not None and now > schedule.end_time:
                view_status = "ended"
            elif now >= schedule.scheduled_time:
                view_status = "live"
            else:
                view_status = "upcoming"

            views.append(
                TodayAirdrop(
                    token=schedule.token,
                    name=schedule.name,
                    points=schedule.points,
                    amount=schedule.amount,
                    time=format_time(schedule.scheduled_time),
                    chain=schedule.chain,
                    contract_address=schedule.contract_address,
                    logo_url=schedule.logo_url,
                    status=view_status,
                    estimated_value=schedule.estimated_value,
                )
            )
        return views

    async def get_upcoming_airdrops(self, limit: int = 20) -> list[UpcomingAirdrop]:
        """Active UPCOMING schedules from tomorrow on."""
        now = self._now_fn()
        tomorrow = start_of_day(now) + timedelta(days=1)
        schedules = await self.repository.find_schedules(
            ScheduleQuery(
                scheduled_from=tomorrow,
                is_active=True,
                statuses=[ScheduleStatus.UPCOMING],
                limit=limit,
            )
        )

        return [
            UpcomingAirdrop(
                token=schedule.token,
                name=schedule.name,
                points=schedule.points,
                amount=schedule.amount,
                date=schedule.scheduled_time.date().isoformat(),
                time=format_time(schedule.scheduled_time),
                chain=schedule.chain,
                contract_address=schedule.contract_address,
                logo_url=schedule.logo_url,
                days_until=(schedule.scheduled_time.date() - now.date()).days,
                estimated_value=schedule.estimated_value,
            )
            for schedule in schedules
        ]

    async def get_schedules(
        self, query: ScheduleQuery | None = None
    ) -> list[ScheduleRecord]:
        """Find schedules. Active only and 50 rows unless the query says otherwise."""
        query = query or ScheduleQuery()
        defaults = {}
        if query.is_active is None:
            defaults["is_active"] = True
        if query.limit is None:
            defaults["limit"] = DEFAULT_SCHEDULE_LIMIT
        if defaults:
            query = query.model_copy(update=defaults)
        return await self.repository.find_schedules(query)

    async def get_schedule_response(self) -> ScheduleResponse:
        today, upcoming = await asyncio.gather(
            self.get_today_airdrops(), self.get_upcoming_airdrops()
        )
        return ScheduleResponse(
            success=True,
            today=today,
            upcoming=upcoming,
            last_update=self.last_sync_time or self._now_fn(),
            source="database",
        )

    # Writes

    async def upsert_schedule(self, record: ScheduleRecord) -> None:
        """Insert or update by (token, scheduled_time).

        Status is derived from the record's times at write time and never
        moves an existing record backwards.
        """
        derived = determine_schedule_status(
            record.scheduled_time, record.end_time, self._now_fn()
        )
        existing = await self._find_exact(record.token, record.scheduled_time)
        status = advance_status(existing.status if existing else None, derived)
        await self.repository.upsert_schedule(record.model_copy(update={"status": status}))

    async def _find_exact(
        self, token: str, scheduled_time: datetime
    ) -> ScheduleRecord | None:
        matches = await self.repository.find_schedules(
            ScheduleQuery(
                token=token,
                scheduled_from=scheduled_time,
                scheduled_to=scheduled_time,
                limit=1,
            )
        )
        return matches[0] if matches else None

    async def add_manual_schedule(
        self,
        token: str,
        name: str,
        scheduled_time: datetime,
        end_time: datetime | None = None,
        points: float | None = None,
        deduct_points: int | None = None,
        amount: str | None = None,
        chain: str | None = None,
        contract_address: str | None = None,
        type: AirdropType | None = None,
        estimated_price: float | None = None,
        estimated_value: float | None = None,
        source_url: str | None = None,
        logo_url: str | None = None,
        description: str | None = None,
    ) -> None:
        """Add a hand-entered, unverified schedule."""
        await self.upsert_schedule(
            ScheduleRecord(
                token=token,
                name=name,
                scheduled_time=scheduled_time,
                end_time=end_time,
                points=points or None,
                deduct_points=deduct_points or None,
                amount=amount or None,
                chain=chain or "BSC",
                contract_address=contract_address or None,
                type=type or AirdropType.AIRDROP,
                estimated_price=estimated_price or None,
                estimated_value=estimated_value or None,
                source="manual",
                source_url=source_url or None,
                logo_url=logo_url or None,
                description=description or None,
                is_active=True,
                is_verified=False,
            )
        )

    async def update_all_statuses(self) -> dict[str, int]:
        """Advance active schedule statuses strictly forward.

        Returns:
            Number of records moved into each target status
        """
        now = self._now_fn()
        today = start_of_day(now)

        moved_today = await self.repository.update_schedule_status(
            ScheduleQuery(
                statuses=[ScheduleStatus.UPCOMING],
                scheduled_from=today,
                scheduled_before=today + timedelta(days=1),
                is_active=True,
            ),
            ScheduleStatus.TODAY,
        )
        moved_live = await self.repository.update_schedule_status(
            ScheduleQuery(
                statuses=[ScheduleStatus.UPCOMING, ScheduleStatus.TODAY],
                scheduled_to=now,
                is_active=True,
            ),
            ScheduleStatus.LIVE,
        )
        moved_ended = await self.repository.update_schedule_status(
            ScheduleQuery(
                statuses=[ScheduleStatus.LIVE],
                end_before=now,
                is_active=True,
            ),
            ScheduleStatus.ENDED,
        )

        counts = {"today": moved_today, "live": moved_live, "ended": moved_ended}
        logger.debug("Schedule statuses updated", **counts)
        return counts

    def to_schedule_record(
        self, token: AlphaToken, scheduled_time: datetime
    ) -> ScheduleRecord:
        score = token.score
        end_time = token.listing_time + self.claim_window if token.listing_time else None

        return ScheduleRecord(
            token=token.symbol,
            name=token.name,
            scheduled_time=scheduled_time,
            end_time=end_time,
            points=score or None,
            deduct_points=math.floor(score * 0.1) if score else None,
            amount=f"Alpha Score: {format_score(score)}" if score else None,
            chain=token.chain,
            contract_address=token.contract_address or None,
            status=ScheduleStatus.UPCOMING,
            type=AirdropType.TGE if token.online_tge else AirdropType.AIRDROP,
            estimated_price=token.price if token.price > 0 else None,
            estimated_value=token.estimated_value,
            source=DataSourceType.BINANCE_ALPHA,
            logo_url=token.icon_url or None,
            description=f"{token.name} ({token.symbol}) - {token.mul_point}x multiplier",
            is_active=not token.is_offline,
            is_verified=True,
        )

    async def sync_from_binance_alpha(self) -> ScheduleSyncResult:
        """Derive schedules from tokens with an active airdrop or TGE flag.

        A token already scheduled within 24 hours of the derived time counts
        as updated, otherwise created. Runs the status sweep afterwards and
        writes a sync log entry. Never raises.
        """
        start = time.monotonic()
        created = updated = errors = 0
        tokens_count = 0

        try:
            response = await self.alpha_service.get_tokens(force_refresh=True)
            if not response.success:
                raise DataSourceError(
                    response.source, response.error or "No token data available"
                )

            tokens = response.data
            tokens_count = len(tokens)
            logger.info("Processing tokens for schedule sync", count=tokens_count)

            for token in tokens:
                if not token.online_airdrop and not token.online_tge:
                    continue

                try:
                    scheduled_time = token.listing_time or (
                        self._now_fn() + self.default_lead
                    )
                    existing = await self.repository.find_schedules(
                        ScheduleQuery(
                            token=token.symbol,
                            scheduled_from=scheduled_time - MATCH_WINDOW,
                            scheduled_to=scheduled_time + MATCH_WINDOW,
                            limit=1,
                        )
                    )
                    # Without a listing time the derived start drifts every run
                    if existing and token.listing_time is None:
                        scheduled_time = existing[0].scheduled_time

                    await self.upsert_schedule(
                        self.to_schedule_record(token, scheduled_time)
                    )
                    if existing:
                        updated += 1
                    else:
                        created += 1
                except Exception as e:
                    logger.error(
                        "Error processing token for schedule",
                        symbol=token.symbol,
                        error=str(e),
                    )
                    errors += 1

            await self.update_all_statuses()
            self.last_sync_time = self._now_fn()

            duration_ms = (time.monotonic() - start) * 1000
            await self._log_sync(
                SyncLogRecord(
                    source=DataSourceType.BINANCE_ALPHA,
                    action=SYNC_ACTION,
                    success=errors == 0,
                    tokens_count=tokens_count,
                    created=created,
                    updated=updated,
                    errors=errors,
                    duration_ms=duration_ms,
                )
            )

            logger.info(
                "Schedule sync completed",
                created=created,
                updated=updated,
                errors=errors,
            )
            return ScheduleSyncResult(
                success=errors == 0,
                created=created,
                updated=updated,
                errors=errors,
                source=DataSourceType.BINANCE_ALPHA,
                duration_ms=duration_ms,
                timestamp=self._now_fn(),
            )

        except Exception as e:
            logger.error("Schedule sync failed", error=str(e))
            duration_ms = (time.monotonic() - start) * 1000
            await self._log_sync(
                SyncLogRecord(
                    source=DataSourceType.BINANCE_ALPHA,
                    action=SYNC_ACTION,
                    success=False,
                    tokens_count=0,
                    created=created,
                    updated=updated,
                    errors=errors + 1,
                    duration_ms=duration_ms,
                    error_message=str(e),
                )
            )
            return ScheduleSyncResult(
                success=False,
                created=created,
                updated=updated,
                errors=errors + 1,
                source=DataSourceType.BINANCE_ALPHA,
                duration_ms=duration_ms,
                timestamp=self._now_fn(),
            )

    async def _log_sync(self, entry: SyncLogRecord) -> None:
        if self.sync_log_repository is None:
            return
        try:
            await self.sync_log_repository.record_sync_log(entry)
        except Exception as e:
            logger.error("Failed to log sync", error=str(e))

    # Notifications

    async def get_schedules_for_notification(self) -> list[ScheduleRecord]:
        """Un-notified active schedules starting within the look-ahead window."""
        now = self._now_fn()
        return await self.repository.find_schedules(
            ScheduleQuery(
                scheduled_from=now,
                scheduled_to=now + self.notification_window,
                notified=False,
                is_active=True,
                statuses=[ScheduleStatus.UPCOMING, ScheduleStatus.TODAY],
            )
        )

    async def mark_as_notified(self, schedule_id: int) -> None:
        await self.repository.mark_schedule_notified(schedule_id)

    # Maintenance

    async def cleanup_old_schedules(self, days_old: int = 30) -> int:
        """Delete ENDED schedules that started more than ``days_old`` days ago."""
        cutoff = self._now_fn() - timedelta(days=days_old)
        removed = await self.repository.delete_schedules(
            ScheduleQuery(statuses=[ScheduleStatus.ENDED], scheduled_before=cutoff)
        )
        if removed:
            logger.info("Old schedules cleaned up", removed=removed, days_old=days_old)
        return removed

    async def get_stats(self) -> ScheduleStats:
        counts = await self.repository.count_schedules_by_status(is_active=True)
        return ScheduleStats(
            today=counts.get(ScheduleStatus.TODAY, 0),
            upcoming=counts.get(ScheduleStatus.UPCOMING, 0),
            live=counts.get(ScheduleStatus.LIVE, 0),
            ended=counts.get(ScheduleStatus.ENDED, 0),
            total=sum(counts.values()),
        )
