"""Sliding-window price buffer and stability classifier.

Pure functions over per-symbol trade buffers. All timestamps are epoch
milliseconds, matching the trade feed.
"""

from collections import deque
from collections.abc import Iterable

from ..core.types import (
    StabilityConfig,
    StabilityLevel,
    StabilitySummary,
    TokenStabilityData,
    TradeData,
    Trend,
)

TREND_THRESHOLD_PCT = 0.1
SPREAD_DOWNGRADE_BPS = 500
SPREAD_UNSTABLE_BPS = 1500
SPIKE_VOLATILITY_BONUS = 50


class PriceBuffer:
    """Parallel price, timestamp and notional-volume sequences for one symbol.

    The three deques always have equal length. Old entries leave from the
    front, either by falling out of the time window or by the length cap.
    """

    def __init__(self, max_size: int = 500) -> None:
        self.max_size = max_size
        self.prices: deque[float] = deque()
        self.timestamps: deque[int] = deque()
        self.volumes: deque[float] = deque()
        self.last_trade_id: int | None = None
        self.last_timestamp: int = 0

    def __len__(self) -> int:
        return len(self.prices)

    def is_new(self, trade: TradeData) -> bool:
        """Whether a trade has not been buffered yet."""
        if trade.trade_id is not None and self.last_trade_id is not None:
            return trade.trade_id > self.last_trade_id
        return trade.timestamp > self.last_timestamp

    def append(self, trade: TradeData) -> bool:
        """Append a trade unless already seen.

        Returns:
            True when the trade was added
        """
        if not self.is_new(trade):
            return False

        self.prices.append(trade.price)
        self.timestamps.append(trade.timestamp)
        self.volumes.append(trade.price * trade.quantity)
        self.last_timestamp = max(self.last_timestamp, trade.timestamp)
        if trade.trade_id is not None:
            self.last_trade_id = trade.trade_id
        return True

    def _popleft(self) -> None:
        self.prices.popleft()
        self.timestamps.popleft()
        self.volumes.popleft()

    def trim(self, cutoff_ms: int) -> int:
        """Drop entries older than ``cutoff_ms``. Returns the count removed."""
        removed = 0
        while self.timestamps and self.timestamps[0] < cutoff_ms:
            self._popleft()
            removed += 1
        return removed

    def cap(self) -> int:
        """Drop the oldest entries beyond ``max_size``. Returns the count removed."""
        removed = 0
        while len(self.prices) > self.max_size:
            self._popleft()
            removed += 1
        return removed

    def clear(self) -> None:
        self.prices.clear()
        self.timestamps.clear()
        self.volumes.clear()


def add_trades(
    buffer: PriceBuffer,
    trades: Iterable[TradeData],
    config: StabilityConfig,
    now_ms: int,
) -> int:
    """Append unseen in-window trades oldest first, then trim and cap.

    Returns:
        Number of trades appended
    """
    added = 0
    ordered = sorted(trades, key=lambda t: (t.timestamp, t.trade_id or 0))
    for trade in ordered:
        if now_ms - trade.timestamp <= config.time_window_ms and buffer.append(trade):
            added += 1

    buffer.trim(now_ms - config.time_window_ms)
    buffer.cap()
    return added


def detect_trend(prices: deque[float] | list[float]) -> Trend:
    if len(prices) < 2 or prices[0] <= 0:
        return Trend.FLAT

    change_pct = (prices[-1] - prices[0]) / prices[0] * 100
    if change_pct > TREND_THRESHOLD_PCT:
        return Trend.UP
    if change_pct < -TREND_THRESHOLD_PCT:
        return Trend.DOWN
    return Trend.FLAT


def has_abnormal_spike(
    prices: deque[float] | list[float], threshold_pct: float
) -> bool:
    """Any consecutive-trade move of at least ``threshold_pct`` percent."""
    previous = None
    for price in prices:
        if previous:
            if abs((price - previous) / previous * 100) >= threshold_pct:
                return True
        previous = price
    return False


def classify(
    range_pct: float, spread_bps: float, spike: bool, config: StabilityConfig
) -> StabilityLevel:
    """Range-based level with the spread applied as a downgrade-only override."""
    if spike:
        level = StabilityLevel.UNSTABLE
    elif range_pct <= config.stable_threshold_pct:
        level = StabilityLevel.STABLE
    elif range_pct <= config.moderate_threshold_pct:
        level = StabilityLevel.MODERATE
    else:
        level = StabilityLevel.UNSTABLE

    if spread_bps > SPREAD_DOWNGRADE_BPS and level == StabilityLevel.STABLE:
        level = StabilityLevel.MODERATE
    if spread_bps > SPREAD_UNSTABLE_BPS:
        level = StabilityLevel.UNSTABLE
    return level


def calculate_stability(
    symbol: str,
    buffer: PriceBuffer,
    config: StabilityConfig,
    now_ms: int,
    previous: TokenStabilityData | None = None,
) -> TokenStabilityData:
    """Classify a symbol from its buffered trades.

    Below ``min_trades_required`` the previous snapshot is kept and only
    re-labelled NO_TRADE (last trade older than the no-trade timeout) or
    CHECKING.

    Args:
        symbol: Token symbol
        buffer: Trimmed price buffer
        config: Thresholds
        now_ms: Current time in epoch milliseconds
        previous: Last snapshot for the symbol, carries identity fields

    Returns:
        New snapshot
    """
    previous = previous or TokenStabilityData(symbol=symbol)

    if len(buffer) < config.min_trades_required:
        last_trade = buffer.timestamps[-1] if buffer.timestamps else 0
        stability = (
            StabilityLevel.NO_TRADE
            if now_ms - last_trade > config.no_trade_timeout_ms
            else StabilityLevel.CHECKING
        )
        return previous.model_copy(
            update={"stability": stability, "last_update": now_ms}
        )

    prices = buffer.prices
    high = max(prices)
    low = min(prices)
    price_range = high - low
    mid = (high + low) / 2
    range_pct = price_range / mid * 100 if mid > 0 else 0.0

    # No order book: the window low and high stand in for bid and ask
    bid, ask = low, high
    spread_bps = (ask - bid) / ask * 10_000 if ask > 0 else 0.0

    spike = has_abnormal_spike(prices, config.spike_threshold_pct)
    volatility = min(
        100.0,
        range_pct / config.moderate_threshold_pct * 50
        + (SPIKE_VOLATILITY_BONUS if spike else 0),
    )

    return TokenStabilityData(
        symbol=symbol,
        alpha_id=previous.alpha_id,
        contract_address=previous.contract_address,
        chain=previous.chain,
        stability=classify(range_pct, spread_bps, spike, config),
        spread_bps=round(spread_bps, 2),
        spread_percent=round(spread_bps / 100, 4),
        current_price=prices[-1],
        bid_price=bid,
        ask_price=ask,
        price_high=high,
        price_low=low,
        price_range=price_range,
        price_range_percent=round(range_pct, 4),
        volume=sum(buffer.volumes),
        trade_count=len(buffer),
        last_trade_time=buffer.timestamps[-1],
        trend=detect_trend(prices),
        volatility_score=round(volatility, 2),
        has_abnormal_spike=spike,
        last_update=now_ms,
    )


def summarize(
    snapshots: Iterable[TokenStabilityData], last_poll_time: int = 0
) -> StabilitySummary:
    """Counts per level and the mean spread over symbols with a spread."""
    counts = {level: 0 for level in StabilityLevel}
    spreads = []
    total = 0

    for snapshot in snapshots:
        total += 1
        counts[snapshot.stability] += 1
        if snapshot.spread_bps > 0:
            spreads.append(snapshot.spread_bps)

    return StabilitySummary(
        stable_count=counts[StabilityLevel.STABLE],
        moderate_count=counts[StabilityLevel.MODERATE],
        unstable_count=counts[StabilityLevel.UNSTABLE],
        no_trade_count=counts[StabilityLevel.NO_TRADE],
        checking_count=counts[StabilityLevel.CHECKING],
        total_tokens=total,
        avg_spread_bps=sum(spreads) / len(spreads) if spreads else 0.0,
        last_update=last_poll_time,
    )
