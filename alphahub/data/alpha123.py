"""Alpha123 community airdrop feed (fallback source)."""

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
from ..core.types import AirdropType, AlphaToken, DataSourceType
from .normalize import (
    determine_airdrop_status,
    estimate_value,
    map_airdrop_type,
    normalize_chain_name,
    parse_date_time,
    parse_number,
)

logger = structlog.get_logger(__name__)

ALPHA123_BASE_URL = "https://alpha123.uk"


def map_alpha123_project(
    raw: dict[str, Any],
    now: datetime | None = None,
    window_days: int = 7,
) -> AlphaToken:
    """Map an Alpha123 project entry to ``AlphaToken``.

    Claim date comes from separate ``date`` and ``time`` strings and the
    status is bucketed purely from that date.

    Args:
        raw: Raw project entry
        now: Reference time (defaults to current UTC)
        window_days: Day window used for the status buckets

    Returns:
        Normalized token
    """
    now = now or datetime.now(UTC)
    symbol = raw.get("token", "")
    chain_id = str(raw.get("chain_id") or "56")
    price = parse_number(raw.get("price"))
    airdrop_type = map_airdrop_type(raw.get("type"))
    claim_date = parse_date_time(raw.get("date"), raw.get("time"))

    return AlphaToken(
        id=f"alpha123_{symbol}",
        symbol=symbol,
        name=raw.get("name") or symbol,
        chain=normalize_chain_name(chain_id),
        chain_id=chain_id,
        contract_address=raw.get("contract_address") or "",
        price=price,
        score=parse_number(raw.get("points")),
        mul_point=1,
        online_tge=airdrop_type == AirdropType.TGE,
        online_airdrop=True,
        listing_time=claim_date,
        type=airdrop_type,
        status=determine_airdrop_status(claim_date, now, window_days=window_days),
        estimated_value=estimate_value(price),
        last_update=now,
    )


class Alpha123Source(AlphaDataSource):
    """Community-maintained airdrop list with a lenient response shape."""

    name = DataSourceType.ALPHA123
    priority = 2

    def __init__(
        self,
        base_url: str = ALPHA123_BASE_URL,
        timeout: float = 30.0,
        health_check_timeout: float = 5.0,
        session: httpx.AsyncClient | None = None,
        max_attempts: int = 3,
        window_days: int = 7,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.health_check_timeout = health_check_timeout
        self.window_days = window_days
        self._session = session or httpx.AsyncClient(
            headers={"Accept": "application/json"}
        )
        self._owns_session = session is None
        self._now_fn = now_fn or (lambda: datetime.now(UTC))

        self.retry_config = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(httpx.NetworkError),
            reraise=True,
        )

    async def is_available(self) -> bool:
        """Probe ``/api/data`` with the short health-check timeout."""
        try:
            response = await self._session.get(
                f"{self.base_url}/api/data", timeout=self.health_check_timeout
            )
            return response.is_success
        except Exception as e:
            logger.warning("Alpha123 not available", url=self.base_url, error=str(e))
            return False

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        async for attempt in self.retry_config:
            with attempt:
                try:
                    response = await self._session.get(
                        url, params=params, timeout=self.timeout
                    )
                    response.raise_for_status()
                    return response.json()
                except httpx.TimeoutException as e:
                    raise DataSourceTimeoutError(
                        self.name, "Alpha123 request timeout"
                    ) from e
                except httpx.HTTPStatusError as e:
                    raise DataSourceError(
                        self.name, f"Alpha123 API error: {e.response.status_code}"
                    ) from e
                except ValueError as e:
                    raise DataSourceError(
                        self.name, "Alpha123 returned invalid JSON"
                    ) from e

    async def fetch_tokens(self) -> list[AlphaToken]:
        """Fetch all projects.

        A bare list and a ``{"data": [...]}`` wrapper are both accepted. Any
        other shape yields an empty list.
        """
        logger.info("Fetching from Alpha123", url=self.base_url)

        try:
            payload = await self._get_json(
                f"{self.base_url}/api/data", params={"fresh": 1}
            )
        except httpx.NetworkError as e:
            raise DataSourceError(self.name, f"Alpha123 network error: {e}") from e

        if isinstance(payload, list):
            projects = payload
        elif isinstance(payload, dict) and isinstance(payload.get("data"), list):
            projects = payload["data"]
        else:
            logger.warning(
                "Unexpected Alpha123 response shape", type=type(payload).__name__
            )
            return []

        now = self._now_fn()
        tokens = []
        for raw in projects:
            if not isinstance(raw, dict) or not raw.get("token"):
                continue
            tokens.append(map_alpha123_project(raw, now, self.window_days))

        logger.info("Fetched Alpha123 projects", count=len(tokens))
        return tokens

    async def fetch_token(self, symbol: str) -> AlphaToken | None:
        tokens = await self.fetch_tokens()
        wanted = symbol.lower()
        return next((t for t in tokens if t.symbol.lower() == wanted), None)

    async def fetch_token_price(self, token: str) -> float | None:
        """Get the current price for one token, None when unknown."""
        try:
            response = await self._session.get(
                f"{self.base_url}/api/price/{token}", timeout=self.timeout
            )
            if not response.is_success:
                return None
            data = response.json()
        except Exception as e:
            logger.warning("Alpha123 price lookup failed", token=token, error=str(e))
            return None

        price = data.get("price") if isinstance(data, dict) else None
        if price is None:
            return None
        parsed = parse_number(price)
        return parsed if parsed > 0 else None

    async def close(self) -> None:
        if self._owns_session:
            await self._session.aclose()
