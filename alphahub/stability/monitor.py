"""Polling stability monitor for Binance Alpha trade feeds."""

import asyncio
import contextlib
import time
from collections.abc import Callable, Iterable
from typing import Any

import httpx
import structlog

from ..core.errors import DataSourceError
from ..core.types import (
    DataSourceType,
    StabilityConfig,
    StabilityLevel,
    StabilitySummary,
    TokenStabilityData,
    TradeData,
)
from ..data.binance_alpha import BINANCE_ALPHA_TOKEN_LIST_URL, SUCCESS_CODE
from ..data.normalize import normalize_chain_name, parse_int, parse_number
from .calculator import PriceBuffer, add_trades, calculate_stability, summarize

logger = structlog.get_logger(__name__)

BINANCE_ALPHA_AGG_TRADES_URL = (
    "https://www.binance.com/bapi/defi/v1/public/alpha-trade/agg-trades"
)
TRADE_LIMIT = 100

StabilityUpdateCallback = Callable[[TokenStabilityData], Any]
StatusCallback = Callable[[str, str | None], Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def trade_symbol(alpha_id: str) -> str:
    """Trade-feed pair for an alpha id, e.g. ``ALPHA_175USDT``."""
    prefixed = alpha_id if alpha_id.startswith("ALPHA_") else f"ALPHA_{alpha_id}"
    return f"{prefixed}USDT"


def parse_trade(raw: dict[str, Any]) -> TradeData:
    """Map an aggregated trade (``p``, ``q``, ``T``, ``m``, ``a``)."""
    trade_id = raw.get("a")
    return TradeData(
        price=parse_number(raw.get("p")),
        quantity=parse_number(raw.get("q")),
        timestamp=parse_int(raw.get("T")),
        is_buyer_maker=bool(raw.get("m")),
        trade_id=int(trade_id) if trade_id is not None else None,
    )


class StabilityMonitor:
    """Polls recent trades per symbol and classifies market stability.

    Tracks tokens of one multiplier tier plus a few named symbols. Each
    poll cycle walks the symbols in small concurrent batches; a cycle
    finishes before the next one is scheduled.
    """

    def __init__(
        self,
        config: StabilityConfig | None = None,
        token_list_url: str = BINANCE_ALPHA_TOKEN_LIST_URL,
        agg_trades_url: str = BINANCE_ALPHA_AGG_TRADES_URL,
        poll_interval: float = 3.0,
        multiplier_tier: int = 4,
        extra_symbols: Iterable[str] = ("KOGE",),
        session: httpx.AsyncClient | None = None,
        request_timeout: float = 10.0,
        batch_size: int = 5,
        batch_delay: float = 0.1,
        now_fn: Callable[[], int] | None = None,
    ) -> None:
        """Initialize stability monitor.

        Args:
            config: Classifier thresholds and windows
            token_list_url: Token universe endpoint
            agg_trades_url: Aggregated trades endpoint
            poll_interval: Seconds between the end of one cycle and the next
            multiplier_tier: Point multiplier of tracked tokens
            extra_symbols: Symbols tracked regardless of multiplier
            session: Optional httpx client session
            request_timeout: Per-request timeout in seconds
            batch_size: Symbols polled concurrently
            batch_delay: Seconds between batches
            now_fn: Optional clock returning epoch milliseconds (for testing)
        """
        self.config = config or StabilityConfig()
        self.token_list_url = token_list_url
        self.agg_trades_url = agg_trades_url
        self.poll_interval = poll_interval
        self.multiplier_tier = multiplier_tier
        self.extra_symbols = set(extra_symbols)
        self.request_timeout = request_timeout
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self._now_fn = now_fn or _now_ms

        self._session = session or httpx.AsyncClient(
            headers={"Accept": "application/json", "Cache-Control": "no-cache"}
        )
        self._owns_session = session is None

        self._alpha_ids: dict[str, str] = {}
        self._buffers: dict[str, PriceBuffer] = {}
        self._snapshots: dict[str, TokenStabilityData] = {}
        self._update_callbacks: list[StabilityUpdateCallback] = []
        self._status_callbacks: list[StatusCallback] = []

        self._running = False
        self._task: asyncio.Task | None = None
        self.last_poll_time = 0

    # Subscriptions

    def on_stability_update(self, callback: StabilityUpdateCallback) -> Callable[[], None]:
        """Subscribe to per-symbol snapshots. Returns an unsubscribe function."""
        self._update_callbacks.append(callback)
        return lambda: self._remove(self._update_callbacks, callback)

    def on_status_change(self, callback: StatusCallback) -> Callable[[], None]:
        """Subscribe to connection status changes. Returns an unsubscribe function."""
        self._status_callbacks.append(callback)
        return lambda: self._remove(self._status_callbacks, callback)

    @staticmethod
    def _remove(callbacks: list, callback: Callable) -> None:
        if callback in callbacks:
            callbacks.remove(callback)

    def _notify_update(self, snapshot: TokenStabilityData) -> None:
        for callback in list(self._update_callbacks):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error("Stability update callback failed", error=str(e))

    def _notify_status(self, status: str, message: str | None = None) -> None:
        for callback in list(self._status_callbacks):
            try:
                callback(status, message)
            except Exception as e:
                logger.error("Status callback failed", status=status, error=str(e))

    # Lifecycle

    async def initialize_tokens(self) -> None:
        """Load the tracked token universe and reset buffers and snapshots.

        Raises:
            DataSourceError: When the token list cannot be fetched or parsed
        """
        try:
            response = await self._session.get(
                self.token_list_url, timeout=self.request_timeout
            )
            response.raise_for_status()
            envelope = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DataSourceError(
                DataSourceType.BINANCE_ALPHA, f"Failed to fetch token list: {e}"
            ) from e

        if (
            not isinstance(envelope, dict)
            or envelope.get("code") != SUCCESS_CODE
            or not isinstance(envelope.get("data"), list)
        ):
            raise DataSourceError(
                DataSourceType.BINANCE_ALPHA, "Invalid token list response"
            )

        now_ms = self._now_fn()
        self._alpha_ids.clear()
        self._buffers.clear()
        self._snapshots.clear()

        for raw in envelope["data"]:
            symbol = raw.get("symbol")
            if not symbol:
                continue
            if (
                parse_int(raw.get("mulPoint")) != self.multiplier_tier
                and symbol not in self.extra_symbols
            ):
                continue

            alpha_id = str(raw.get("alphaId") or "")
            self._alpha_ids[symbol] = alpha_id
            self._buffers[symbol] = PriceBuffer(self.config.buffer_size)
            self._snapshots[symbol] = TokenStabilityData(
                symbol=symbol,
                alpha_id=alpha_id,
                contract_address=raw.get("contractAddress") or "",
                chain=normalize_chain_name(
                    str(raw.get("chainId") or ""), raw.get("chainName")
                ),
                stability=StabilityLevel.CHECKING,
                current_price=parse_number(raw.get("price")),
                last_update=now_ms,
            )

        logger.info("Stability tokens initialized", count=len(self._snapshots))

    async def start(self) -> None:
        """Initialize tokens and start the poll loop. No-op when running."""
        if self._running:
            logger.warning("Stability monitor already running")
            return

        self._running = True
        try:
            await self.initialize_tokens()
        except Exception as e:
            self._running = False
            logger.error("Failed to start stability monitor", error=str(e))
            self._notify_status("error", str(e))
            raise

        self._notify_status("connected")
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Stability monitor started", tokens=len(self._snapshots))

    async def stop(self) -> None:
        """Cancel the poll loop and report disconnection. Safe to repeat."""
        was_running = self._running
        self._running = False

        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if was_running:
            self._notify_status("disconnected")
            logger.info("Stability monitor stopped")

    async def close(self) -> None:
        await self.stop()
        if self._owns_session:
            await self._session.aclose()

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_all_tokens()
            except Exception as e:
                logger.error("Stability poll cycle failed", error=str(e))
            await asyncio.sleep(self.poll_interval)

    # Polling

    async def poll_all_tokens(self) -> None:
        """Poll every tracked symbol in batches."""
        self.last_poll_time = self._now_fn()
        symbols = list(self._alpha_ids)

        for i in range(0, len(symbols), self.batch_size):
            batch = symbols[i : i + self.batch_size]
            await asyncio.gather(
                *(self.fetch_and_process_trades(symbol) for symbol in batch),
                return_exceptions=True,
            )
            if i + self.batch_size < len(symbols):
                await asyncio.sleep(self.batch_delay)

    async def fetch_and_process_trades(self, symbol: str) -> None:
        """Fetch recent trades for one symbol and update its snapshot.

        A non-OK response or an empty trade list counts as no new trades.
        Other failures are logged at debug level and leave the snapshot as is.
        """
        alpha_id = self._alpha_ids.get(symbol)
        if not alpha_id:
            return

        try:
            response = await self._session.get(
                self.agg_trades_url,
                params={"symbol": trade_symbol(alpha_id), "limit": TRADE_LIMIT},
                timeout=self.request_timeout,
            )
            if not response.is_success:
                self.update_token_stability(symbol, [])
                return

            raw_trades = response.json()
            if not isinstance(raw_trades, list) or not raw_trades:
                self.update_token_stability(symbol, [])
                return

            self.update_token_stability(symbol, [parse_trade(t) for t in raw_trades])
        except Exception as e:
            logger.debug("Error fetching trades", symbol=symbol, error=str(e))

    def update_token_stability(
        self, symbol: str, trades: list[TradeData], now_ms: int | None = None
    ) -> TokenStabilityData | None:
        """Buffer new trades, reclassify and notify subscribers."""
        buffer = self._buffers.get(symbol)
        previous = self._snapshots.get(symbol)
        if buffer is None or previous is None:
            return None

        now_ms = self._now_fn() if now_ms is None else now_ms
        add_trades(buffer, trades, self.config, now_ms)
        snapshot = calculate_stability(symbol, buffer, self.config, now_ms, previous)

        self._snapshots[symbol] = snapshot
        self._notify_update(snapshot)
        return snapshot

    # Queries

    def get_all_stability_data(self) -> list[TokenStabilityData]:
        return list(self._snapshots.values())

    def get_stability_data(self, symbol: str) -> TokenStabilityData | None:
        return self._snapshots.get(symbol)

    def get_buffer(self, symbol: str) -> PriceBuffer | None:
        return self._buffers.get(symbol)

    def get_summary(self) -> StabilitySummary:
        return summarize(self._snapshots.values(), self.last_poll_time)

    def update_config(self, **changes: Any) -> None:
        """Replace config values. A new buffer size applies to existing buffers."""
        self.config = self.config.model_copy(update=changes)
        if "buffer_size" in changes:
            for buffer in self._buffers.values():
                buffer.max_size = self.config.buffer_size
                buffer.cap()

    def get_config(self) -> StabilityConfig:
        return self.config.model_copy()

    @property
    def is_active(self) -> bool:
        return self._running


_instance: StabilityMonitor | None = None


def get_stability_monitor(config: StabilityConfig | None = None) -> StabilityMonitor:
    """Process-wide monitor for convenience callers.

    A config passed to an existing instance replaces its configuration.
    """
    global _instance
    if _instance is None:
        _instance = StabilityMonitor(config)
    elif config is not None:
        _instance.update_config(**config.model_dump())
    return _instance


async def reset_stability_monitor() -> None:
    """Stop and drop the process-wide monitor."""
    global _instance
    if _instance is not None:
        await _instance.close()
        _instance = None
