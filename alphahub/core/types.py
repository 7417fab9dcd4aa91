"""Core data types for airdrop aggregation and stability monitoring."""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


def as_utc(value: datetime | None) -> datetime | None:
    """Read a naive datetime as UTC; aware values are converted to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class AirdropType(StrEnum):
    """Campaign type derived from source flags."""

    TGE = "TGE"
    PRETGE = "PRETGE"
    AIRDROP = "AIRDROP"


class AirdropStatus(StrEnum):
    """Token campaign status derived at transform time."""

    UPCOMING = "UPCOMING"
    CLAIMABLE = "CLAIMABLE"
    ENDED = "ENDED"
    SNAPSHOT = "SNAPSHOT"
    CANCELLED = "CANCELLED"


class ScheduleStatus(StrEnum):
    """Forward-only lifecycle of a persisted schedule record."""

    UPCOMING = "UPCOMING"
    TODAY = "TODAY"
    LIVE = "LIVE"
    ENDED = "ENDED"
    CANCELLED = "CANCELLED"


class DataSourceType(StrEnum):
    """Identifiers used to tag where a response came from."""

    BINANCE_ALPHA = "binance-alpha"
    ALPHA123 = "alpha123"
    CACHE = "cache"
    NONE = "none"


class StabilityLevel(StrEnum):
    """Market stability classification."""

    STABLE = "STABLE"
    MODERATE = "MODERATE"
    UNSTABLE = "UNSTABLE"
    NO_TRADE = "NO_TRADE"
    CHECKING = "CHECKING"


class Trend(StrEnum):
    """Short-term price direction over the buffer."""

    UP = "UP"
    DOWN = "DOWN"
    FLAT = "FLAT"


class AlphaEventType(StrEnum):
    """Lifecycle events emitted by the aggregation service."""

    SYNC_START = "sync:start"
    SYNC_COMPLETE = "sync:complete"
    SYNC_ERROR = "sync:error"
    TOKEN_NEW = "token:new"
    TOKEN_UPDATED = "token:updated"
    CACHE_HIT = "cache:hit"
    CACHE_MISS = "cache:miss"
    CACHE_EXPIRED = "cache:expired"


# Token listing


class AlphaToken(BaseModel):
    """Canonical token/airdrop record after source normalization."""

    id: str = Field(description="Source-specific identifier")
    symbol: str = Field(description="Token symbol")
    name: str = Field(description="Token display name")
    alpha_id: str = Field(default="", description="Binance Alpha identifier")

    chain: str = Field(default="BSC", description="Normalized chain name")
    chain_id: str = Field(default="56", description="Raw chain identifier")
    contract_address: str = Field(default="", description="Token contract address")

    price: float = Field(default=0.0, description="Price in USD")
    price_change_24h: float = Field(default=0.0, description="24h change percentage")
    price_high_24h: float = Field(default=0.0, description="24h high")
    price_low_24h: float = Field(default=0.0, description="24h low")
    volume_24h: float = Field(default=0.0, description="24h volume in USD")
    market_cap: float = Field(default=0.0, description="Market cap in USD")
    fdv: float = Field(default=0.0, description="Fully diluted valuation")
    liquidity: float = Field(default=0.0, description="Liquidity in USD")
    holders: int = Field(default=0, description="Holder count")

    score: float = Field(default=0.0, description="Alpha points score")
    mul_point: int = Field(default=1, description="Point multiplier (1, 2 or 4)")
    online_tge: bool = Field(default=False, description="TGE campaign active")
    online_airdrop: bool = Field(default=False, description="Airdrop campaign active")
    listing_time: datetime | None = Field(
        default=None, description="Listing or claim timestamp"
    )
    hot_tag: bool = Field(default=False, description="Highlighted by the source")
    is_offline: bool = Field(default=False, description="Delisted or off-sale")

    type: AirdropType = Field(description="Derived campaign type")
    status: AirdropStatus = Field(description="Derived campaign status")
    estimated_value: float | None = Field(
        default=None, description="Price rounded to cents, None when unpriced"
    )

    icon_url: str = Field(default="", description="Icon URL")
    last_update: datetime = Field(description="Normalization timestamp")


class CacheEntry(BaseModel):
    """Cached value with write time, expiry and source tag (epoch seconds)."""

    data: Any = Field(description="Cached value")
    timestamp: float = Field(description="Write time")
    expires_at: float = Field(description="Write time plus TTL")
    source: str = Field(default=DataSourceType.CACHE, description="Source tag")


class CacheConfig(BaseModel):
    """Cache configuration (seconds)."""

    ttl: float = Field(default=300.0, description="Time to live")
    max_size: int | None = Field(default=100, description="Maximum entry count")
    stale_while_revalidate: bool = Field(
        default=True, description="Serve expired entries within stale_time"
    )
    stale_time: float | None = Field(
        default=600.0, description="Grace period after expiry"
    )


class ServiceResponse(BaseModel):
    """Consistent response shape for dashboard consumers."""

    success: bool = Field(description="Whether usable data was produced")
    data: list[AlphaToken] = Field(default_factory=list, description="Tokens")
    source: str = Field(description="Data source or cache that served the result")
    last_update: datetime = Field(description="Response timestamp")
    count: int = Field(default=0, description="Number of tokens in data")
    error: str | None = Field(default=None, description="Degradation reason")
    is_stale: bool = Field(
        default=False, description="Served from an expired cache entry"
    )


class SyncResult(BaseModel):
    """Outcome of a token synchronization into persistent storage."""

    success: bool
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: int = 0
    source: str = DataSourceType.CACHE
    duration_ms: float = 0.0
    timestamp: datetime


class AlphaStats(BaseModel):
    """Aggregate counts over the current token listing."""

    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_type: dict[str, int] = Field(default_factory=dict)
    by_chain: dict[str, int] = Field(default_factory=dict)
    by_multiplier: dict[str, int] = Field(default_factory=dict)
    active_airdrops: int = 0
    active_tge: int = 0
    last_update: datetime


class FilterOptions(BaseModel):
    """In-memory query over the token listing."""

    status: AirdropStatus | list[AirdropStatus] | None = None
    type: AirdropType | list[AirdropType] | None = None
    chain: str | list[str] | None = None
    min_score: float | None = None
    max_score: float | None = None
    mul_point: int | None = None
    online_airdrop: bool | None = None
    online_tge: bool | None = None
    search: str | None = None
    limit: int | None = None
    offset: int | None = None
    sort_by: str | None = None
    sort_order: Literal["asc", "desc"] = "desc"


class AlphaEvent(BaseModel):
    """Event delivered to aggregation service listeners."""

    type: AlphaEventType
    timestamp: datetime
    data: Any = None


# Persistence records


class AirdropRecord(BaseModel):
    """Persisted projection of a token, keyed by symbol."""

    id: int | None = Field(default=None, description="Storage identifier")
    token: str = Field(description="Token symbol (natural key)")
    name: str
    chain: str
    contract_address: str | None = None
    airdrop_amount: str | None = None
    claim_start_date: datetime | None = None
    claim_end_date: datetime | None = None
    required_points: float | None = None
    deduct_points: int | None = None
    type: AirdropType
    status: AirdropStatus
    estimated_value: float | None = None
    description: str | None = None
    website_url: str | None = None
    twitter_url: str | None = None
    eligibility: list[str] = Field(default_factory=list)
    requirements: list[str] = Field(default_factory=list)
    verified: bool = True
    is_active: bool = True
    multiplier: int = 1
    is_baseline: bool = False


class ScheduleRecord(BaseModel):
    """Persisted airdrop schedule, keyed by (token, scheduled_time)."""

    id: int | None = Field(default=None, description="Storage identifier")
    token: str
    name: str
    scheduled_time: datetime
    end_time: datetime | None = None
    points: float | None = None
    deduct_points: int | None = None
    amount: str | None = None
    chain: str = "BSC"
    contract_address: str | None = None
    status: ScheduleStatus = ScheduleStatus.UPCOMING
    type: AirdropType = AirdropType.AIRDROP
    estimated_price: float | None = None
    estimated_value: float | None = None
    source: str = "manual"
    source_url: str | None = None
    logo_url: str | None = None
    description: str | None = None
    is_active: bool = True
    is_verified: bool = False
    notified: bool = False

    @field_validator("scheduled_time", "end_time")
    @classmethod
    def utc_times(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class ScheduleQuery(BaseModel):
    """Filter used for find-many, update-many and delete-many on schedules."""

    statuses: list[ScheduleStatus] | None = None
    types: list[AirdropType] | None = None
    chains: list[str] | None = None
    token: str | None = Field(default=None, description="Exact token match")
    token_contains: str | None = Field(
        default=None, description="Case-insensitive substring match"
    )
    scheduled_from: datetime | None = Field(default=None, description="Inclusive")
    scheduled_before: datetime | None = Field(default=None, description="Exclusive")
    scheduled_to: datetime | None = Field(default=None, description="Inclusive")
    end_before: datetime | None = Field(default=None, description="Inclusive")
    is_active: bool | None = None
    notified: bool | None = None
    limit: int | None = None
    offset: int = 0

    @field_validator("scheduled_from", "scheduled_before", "scheduled_to", "end_before")
    @classmethod
    def utc_bounds(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class SyncLogRecord(BaseModel):
    """Audit entry for a schedule synchronization run."""

    source: str
    action: str
    success: bool
    tokens_count: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0
    duration_ms: float = 0.0
    error_message: str | None = None


class ScheduleSyncResult(BaseModel):
    """Outcome of a schedule synchronization."""

    success: bool
    created: int = 0
    updated: int = 0
    errors: int = 0
    source: str
    duration_ms: float = 0.0
    timestamp: datetime


class TodayAirdrop(BaseModel):
    """Schedule view for the current day."""

    token: str
    name: str
    points: float | None = None
    amount: str | None = None
    time: str = Field(description="Display time, e.g. 05:00 PM")
    chain: str
    contract_address: str | None = None
    logo_url: str | None = None
    status: Literal["upcoming", "live", "ended"]
    estimated_value: float | None = None


class UpcomingAirdrop(BaseModel):
    """Schedule view for future days."""

    token: str
    name: str
    points: float | None = None
    amount: str | None = None
    date: str = Field(description="ISO date")
    time: str = Field(description="Display time")
    chain: str
    contract_address: str | None = None
    logo_url: str | None = None
    days_until: int
    estimated_value: float | None = None


class ScheduleResponse(BaseModel):
    """Combined today/upcoming view."""

    success: bool
    today: list[TodayAirdrop] = Field(default_factory=list)
    upcoming: list[UpcomingAirdrop] = Field(default_factory=list)
    last_update: datetime
    source: str = "database"


class ScheduleStats(BaseModel):
    """Active schedule counts by status."""

    today: int = 0
    upcoming: int = 0
    live: int = 0
    ended: int = 0
    total: int = 0


# Stability monitoring


class StabilityConfig(BaseModel):
    """Thresholds and windows for the stability classifier (milliseconds)."""

    time_window_ms: int = Field(default=60_000, description="Sliding window")
    buffer_size: int = Field(default=500, description="Max buffered trades")
    stable_threshold_pct: float = Field(default=0.01, description="STABLE range")
    moderate_threshold_pct: float = Field(default=0.5, description="MODERATE range")
    spike_threshold_pct: float = Field(
        default=2.0, description="Consecutive-trade jump flagged as spike"
    )
    min_trades_required: int = Field(default=3, description="Trades to classify")
    no_trade_timeout_ms: int = Field(default=30_000, description="NO_TRADE after")


class TradeData(BaseModel):
    """Single aggregated trade from the trade-stream endpoint."""

    price: float
    quantity: float
    timestamp: int = Field(description="Trade time in epoch milliseconds")
    is_buyer_maker: bool = False
    trade_id: int | None = Field(default=None, description="Aggregate trade id")


class TokenStabilityData(BaseModel):
    """Per-symbol stability snapshot, overwritten on every poll."""

    symbol: str
    alpha_id: str = ""
    contract_address: str = ""
    chain: str = "BSC"
    stability: StabilityLevel = StabilityLevel.CHECKING
    spread_bps: float = 0.0
    spread_percent: float = 0.0
    current_price: float = 0.0
    bid_price: float = 0.0
    ask_price: float = 0.0
    price_high: float = 0.0
    price_low: float = 0.0
    price_range: float = 0.0
    price_range_percent: float = 0.0
    volume: float = 0.0
    trade_count: int = 0
    last_trade_time: int = 0
    trend: Trend = Trend.FLAT
    volatility_score: float = 0.0
    has_abnormal_spike: bool = False
    last_update: int = 0


class StabilitySummary(BaseModel):
    """Counts across all tracked symbols."""

    stable_count: int = 0
    moderate_count: int = 0
    unstable_count: int = 0
    no_trade_count: int = 0
    checking_count: int = 0
    total_tokens: int = 0
    avg_spread_bps: float = 0.0
    last_update: int = 0


# Notification payloads


class AirdropAlert(BaseModel):
    """New airdrop discovered."""

    name: str
    symbol: str
    chain: str
    status: str
    claim_start_date: datetime | None = None
    claim_end_date: datetime | None = None
    estimated_value: float | None = None
    airdrop_amount: str | None = None
    required_points: float | None = None
    deduct_points: int | None = None
    contract_address: str | None = None


class SnapshotAlert(BaseModel):
    """Snapshot approaching."""

    name: str
    symbol: str
    snapshot_date: datetime | None = None
    required_points: float | None = None
    requirements: list[str] = Field(default_factory=list)


class ClaimableAlert(BaseModel):
    """Airdrop became claimable."""

    name: str
    symbol: str
    claim_end_date: datetime | None = None
    claim_amount: str | None = None
    required_points: float | None = None


class ReminderAlert(BaseModel):
    """Scheduled airdrop starting soon."""

    name: str
    symbol: str
    scheduled_time: datetime
    minutes_until: int
    chain: str
    points: float | None = None
    amount: str | None = None
    contract_address: str | None = None
    type: str | None = None
    estimated_value: float | None = None
