"""Binance Alpha token list source (primary)."""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.errors import DataSourceError, DataSourceTimeoutError
from ..core.interfaces import AlphaDataSource
from ..core.types import AirdropStatus, AirdropType, AlphaToken, DataSourceType
from .normalize import (
    estimate_value,
    normalize_chain_name,
    parse_int,
    parse_number,
)

logger = structlog.get_logger(__name__)

BINANCE_ALPHA_TOKEN_LIST_URL = (
    "https://www.binance.com/bapi/defi/v1/public/wallet-direct/buw/wallet/cex/"
    "alpha/all/token/list"
)
SUCCESS_CODE = "000000"

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "Accept-Language": "en-US,en;q=0.9",
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
}


def _listing_time(raw: dict[str, Any]) -> datetime | None:
    listing_ms = parse_number(raw.get("listingTime"))
    if listing_ms <= 0:
        return None
    return datetime.fromtimestamp(listing_ms / 1000, tz=UTC)


def determine_binance_type(raw: dict[str, Any]) -> AirdropType:
    """TGE when the TGE flag is set, otherwise AIRDROP."""
    return AirdropType.TGE if raw.get("onlineTge") else AirdropType.AIRDROP


def determine_binance_status(raw: dict[str, Any], now: datetime) -> AirdropStatus:
    """Derive status from offline flags, listing time and the airdrop flag.

    Offline or off-sale tokens are ENDED. A listing time in the future is
    UPCOMING. An active airdrop is CLAIMABLE whatever the listing time.
    Everything else is UPCOMING.
    """
    if raw.get("offline") or raw.get("offsell"):
        return AirdropStatus.ENDED

    listing_time = _listing_time(raw)
    if listing_time is not None and listing_time > now:
        return AirdropStatus.UPCOMING

    if raw.get("onlineAirdrop"):
        return AirdropStatus.CLAIMABLE

    return AirdropStatus.UPCOMING


def map_binance_alpha_token(
    raw: dict[str, Any], now: datetime | None = None
) -> AlphaToken:
    """Map a Binance Alpha token list entry to ``AlphaToken``.

    Args:
        raw: Raw token entry from the ``data`` array
        now: Reference time for status derivation (defaults to current UTC)

    Returns:
        Normalized token
    """
    now = now or datetime.now(UTC)
    price = parse_number(raw.get("price"))
    alpha_id = str(raw.get("alphaId") or "")
    chain_id = str(raw.get("chainId") or "")

    return AlphaToken(
        id=alpha_id or str(raw.get("tokenId") or raw.get("symbol", "")),
        symbol=raw.get("symbol", ""),
        name=raw.get("name") or raw.get("symbol", ""),
        alpha_id=alpha_id,
        chain=normalize_chain_name(chain_id, raw.get("chainName")),
        chain_id=chain_id,
        contract_address=raw.get("contractAddress") or "",
        price=price,
        price_change_24h=parse_number(raw.get("percentChange24h")),
        price_high_24h=parse_number(raw.get("priceHigh24h")),
        price_low_24h=parse_number(raw.get("priceLow24h")),
        volume_24h=parse_number(raw.get("volume24h")),
        market_cap=parse_number(raw.get("marketCap")),
        fdv=parse_number(raw.get("fdv")),
        liquidity=parse_number(raw.get("liquidity")),
        holders=parse_int(raw.get("holders")),
        score=parse_number(raw.get("score")),
        mul_point=parse_int(raw.get("mulPoint")) or 1,
        online_tge=bool(raw.get("onlineTge")),
        online_airdrop=bool(raw.get("onlineAirdrop")),
        listing_time=_listing_time(raw),
        hot_tag=bool(raw.get("hotTag")),
        is_offline=bool(raw.get("offline") or raw.get("offsell")),
        type=determine_binance_type(raw),
        status=determine_binance_status(raw, now),
        estimated_value=estimate_value(price),
        icon_url=raw.get("iconUrl") or "",
        last_update=now,
    )


class BinanceAlphaSource(AlphaDataSource):
    """Official Binance Alpha token list. Strict envelope validation."""

    name = DataSourceType.BINANCE_ALPHA
    priority = 1

    def __init__(
        self,
        api_url: str = BINANCE_ALPHA_TOKEN_LIST_URL,
        timeout: float = 30.0,
        health_check_timeout: float = 5.0,
        session: httpx.AsyncClient | None = None,
        max_attempts: int = 3,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize Binance Alpha source.

        Args:
            api_url: Token list endpoint
            timeout: Full fetch timeout in seconds
            health_check_timeout: Health probe timeout in seconds
            session: Optional httpx client session
            max_attempts: Attempts on network errors before giving up
            now_fn: Optional clock used for status derivation (for testing)
        """
        self.api_url = api_url
        self.timeout = timeout
        self.health_check_timeout = health_check_timeout
        self._session = session or httpx.AsyncClient(headers=DEFAULT_HEADERS)
        self._owns_session = session is None
        self._now_fn = now_fn or (lambda: datetime.now(UTC))

        # Timeouts are not retried; they go straight to the next source
        self.retry_config = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(httpx.NetworkError),
            reraise=True,
        )

    async def is_available(self) -> bool:
        """Probe the endpoint with the short health-check timeout."""
        try:
            response = await self._session.get(
                self.api_url, timeout=self.health_check_timeout
            )
            return response.is_success
        except Exception as e:
            logger.warning(
                "Binance Alpha API not available", url=self.api_url, error=str(e)
            )
            return False

    async def _get_envelope(self) -> dict[str, Any]:
        async for attempt in self.retry_config:
            with attempt:
                try:
                    response = await self._session.get(
                        self.api_url, timeout=self.timeout
                    )
                    response.raise_for_status()
                    return response.json()
                except httpx.TimeoutException as e:
                    raise DataSourceTimeoutError(
                        self.name, "Binance Alpha API request timeout"
                    ) from e
                except httpx.HTTPStatusError as e:
                    raise DataSourceError(
                        self.name,
                        f"Binance Alpha API error: {e.response.status_code}",
                    ) from e
                except httpx.NetworkError as e:
                    logger.warning(
                        "Network error in Binance Alpha request",
                        error=str(e),
                        attempt=attempt.retry_state.attempt_number,
                    )
                    raise
                except ValueError as e:
                    raise DataSourceError(
                        self.name, "Binance Alpha API returned invalid JSON"
                    ) from e

    async def fetch_tokens(self) -> list[AlphaToken]:
        """Fetch the full token list.

        Raises:
            DataSourceTimeoutError: When the request times out
            DataSourceError: On HTTP errors, a non-success envelope code or
                a malformed ``data`` field
        """
        logger.info("Fetching from Binance Alpha API", url=self.api_url)

        try:
            envelope = await self._get_envelope()
        except httpx.NetworkError as e:
            raise DataSourceError(
                self.name, f"Binance Alpha API network error: {e}"
            ) from e

        if not isinstance(envelope, dict) or envelope.get("code") != SUCCESS_CODE:
            message = envelope.get("message") if isinstance(envelope, dict) else None
            raise DataSourceError(
                self.name, f"Binance Alpha API error: {message or 'Unknown error'}"
            )

        data = envelope.get("data")
        if not isinstance(data, list):
            raise DataSourceError(
                self.name, "Invalid Binance Alpha API response structure"
            )

        now = self._now_fn()
        tokens = []
        for raw in data:
            try:
                tokens.append(map_binance_alpha_token(raw, now))
            except Exception as e:
                logger.warning(
                    "Failed to map Binance Alpha token",
                    symbol=raw.get("symbol") if isinstance(raw, dict) else None,
                    error=str(e),
                )

        logger.info("Fetched Binance Alpha tokens", count=len(tokens))
        return tokens

    async def fetch_token(self, symbol: str) -> AlphaToken | None:
        """Fetch the list and pick one symbol (case-insensitive)."""
        tokens = await self.fetch_tokens()
        wanted = symbol.lower()
        return next((t for t in tokens if t.symbol.lower() == wanted), None)

    async def close(self) -> None:
        """Close the owned HTTP session."""
        if self._owns_session:
            await self._session.aclose()
