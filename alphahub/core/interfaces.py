"""Core interfaces for alphahub components."""

from typing import Protocol, runtime_checkable

from .types import (
    AirdropAlert,
    AirdropRecord,
    AlphaToken,
    ClaimableAlert,
    ReminderAlert,
    ScheduleQuery,
    ScheduleRecord,
    ScheduleStatus,
    SnapshotAlert,
    SyncLogRecord,
)


@runtime_checkable
class AlphaDataSource(Protocol):
    """Token listing source tried in ascending priority order."""

    name: str
    priority: int

    async def is_available(self) -> bool:
        """Cheap health probe. Must not raise."""
        ...

    async def fetch_tokens(self) -> list[AlphaToken]:
        """Fetch and normalize the full listing."""
        ...

    async def fetch_token(self, symbol: str) -> AlphaToken | None:
        """Fetch a single token by symbol."""
        ...


class AirdropRepository(Protocol):
    """Persistence for token projections keyed by symbol."""

    async def find_airdrop_by_token(self, token: str) -> AirdropRecord | None:
        """Find a record by its natural key."""
        ...

    async def create_airdrop(self, record: AirdropRecord) -> AirdropRecord:
        """Insert a new record and return it with its id."""
        ...

    async def update_airdrop(self, airdrop_id: int, record: AirdropRecord) -> None:
        """Overwrite an existing record."""
        ...


class ScheduleRepository(Protocol):
    """Persistence for schedule records keyed by (token, scheduled_time)."""

    async def upsert_schedule(self, record: ScheduleRecord) -> None:
        """Insert or update by composite key. Never touches ``notified``."""
        ...

    async def find_schedule_by_id(self, schedule_id: int) -> ScheduleRecord | None:
        """Find a record by id."""
        ...

    async def find_schedules(self, query: ScheduleQuery) -> list[ScheduleRecord]:
        """Find records ordered by scheduled time ascending."""
        ...

    async def update_schedule_status(
        self, query: ScheduleQuery, status: ScheduleStatus
    ) -> int:
        """Set status on every matching record and return the count."""
        ...

    async def mark_schedule_notified(self, schedule_id: int) -> None:
        """Set the notified flag."""
        ...

    async def delete_schedules(self, query: ScheduleQuery) -> int:
        """Delete matching records and return the count."""
        ...

    async def count_schedules_by_status(
        self, is_active: bool | None = True
    ) -> dict[str, int]:
        """Group-by-count over status."""
        ...


class SyncLogRepository(Protocol):
    """Audit log of sync runs."""

    async def record_sync_log(self, entry: SyncLogRecord) -> None:
        """Append a sync log entry."""
        ...


class NotificationSink(Protocol):
    """Structured alert dispatch. Each call reports delivery as a boolean."""

    async def send_airdrop_alert(self, alert: AirdropAlert) -> bool:
        """New airdrop."""
        ...

    async def send_snapshot_alert(self, alert: SnapshotAlert) -> bool:
        """Snapshot approaching."""
        ...

    async def send_claimable_alert(self, alert: ClaimableAlert) -> bool:
        """Claim window open."""
        ...

    async def send_reminder(self, alert: ReminderAlert) -> bool:
        """Scheduled airdrop starting soon."""
        ...
