"""Aggregation service: source failover, caching, queries and DB sync."""

import math
import time
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import structlog

from ..cache.service import CacheKeys, CacheService, create_alpha_cache
from ..core.errors import DataSourceTimeoutError, RepositoryError
from ..core.interfaces import AirdropRepository, AlphaDataSource
from ..core.types import (
    AirdropRecord,
    AirdropStatus,
    AirdropType,
    AlphaEvent,
    AlphaEventType,
    AlphaStats,
    AlphaToken,
    DataSourceType,
    FilterOptions,
    ServiceResponse,
    SyncResult,
)
from ..data.alpha123 import Alpha123Source
from ..data.binance_alpha import BinanceAlphaSource

logger = structlog.get_logger(__name__)

EventHandler = Callable[[AlphaEvent], Any]

CLAIM_PERIOD = timedelta(days=30)
DEDUCT_RATIO = 0.1

# Fields compared before writing an existing airdrop record
MONITORED_FIELDS = (
    "name",
    "chain",
    "status",
    "type",
    "estimated_value",
    "required_points",
    "deduct_points",
)


def format_score(score: float) -> str:
    return str(int(score)) if float(score).is_integer() else str(score)


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


class AlphaService:
    """Orchestrates data sources behind a single cached token listing.

    Sources are tried in ascending priority order and the first one that is
    available and returns tokens wins. When every source fails, the last
    cached listing is served regardless of age.
    """

    def __init__(
        self,
        data_sources: list[AlphaDataSource],
        cache: CacheService | None = None,
        repository: AirdropRepository | None = None,
        enable_fallback: bool = True,
        enable_events: bool = True,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize service.

        Args:
            data_sources: Token listing sources, any order
            cache: Token cache, defaults to ``create_alpha_cache()``
            repository: Airdrop persistence used by ``sync_to_database``
            enable_fallback: Try the next source after a fetch failure
            enable_events: Deliver lifecycle events to listeners
            now_fn: Optional clock (for testing)
        """
        self.data_sources = sorted(data_sources, key=lambda s: s.priority)
        self.cache = cache if cache is not None else create_alpha_cache()
        self.repository = repository
        self.enable_fallback = enable_fallback
        self.enable_events = enable_events
        self._now_fn = now_fn or (lambda: datetime.now(UTC))
        self._listeners: dict[AlphaEventType, list[EventHandler]] = defaultdict(list)
        self.last_sync_result: SyncResult | None = None

    # Fetching

    async def get_tokens(self, force_refresh: bool = False) -> ServiceResponse:
        """Get all tokens from cache or the first healthy source.

        Args:
            force_refresh: Skip the fresh-cache shortcut

        Returns:
            Response tagged with the serving source. Never raises on source
            failures; ``success`` is False only when nothing at all could be
            served.
        """
        cache_key = CacheKeys.all_tokens()

        if not force_refresh:
            if self.cache.has(cache_key):
                self._emit(AlphaEventType.CACHE_HIT, {"key": cache_key})
                return self._create_response(
                    self.cache.get(cache_key), DataSourceType.CACHE
                )
            self._emit(AlphaEventType.CACHE_MISS, {"key": cache_key})

        error: str | None = None

        for source in self.data_sources:
            if not await source.is_available():
                logger.warning("Data source not available", source=source.name)
                continue

            try:
                tokens = await source.fetch_tokens()
            except DataSourceTimeoutError as e:
                logger.warning("Data source timed out", source=source.name)
                error = str(e)
            except Exception as e:
                logger.error(
                    "Error fetching from data source", source=source.name, error=str(e)
                )
                error = str(e)
            else:
                if tokens:
                    self.cache.set(cache_key, tokens, source=source.name)
                    logger.info("Fetched tokens", source=source.name, count=len(tokens))
                    return self._create_response(tokens, source.name)

                logger.warning("Data source returned no tokens", source=source.name)
                error = f"{source.name} returned no tokens"
                continue

            if not self.enable_fallback:
                break

        entry = self.cache.get_entry(cache_key)
        if entry is not None:
            logger.info("Serving stale cached tokens", error=error)
            self._emit(AlphaEventType.CACHE_EXPIRED, {"key": cache_key})
            return self._create_response(
                entry.data, DataSourceType.CACHE, error=error, is_stale=True
            )

        return self._create_response(
            [], DataSourceType.NONE, error=error or "All data sources unavailable"
        )

    def _create_response(
        self,
        data: list[AlphaToken],
        source: str,
        error: str | None = None,
        is_stale: bool = False,
    ) -> ServiceResponse:
        return ServiceResponse(
            success=error is None or len(data) > 0,
            data=data,
            source=source,
            last_update=self._now_fn(),
            count=len(data),
            error=error,
            is_stale=is_stale,
        )

    # Queries

    async def get_tokens_by_status(
        self, status: AirdropStatus, force_refresh: bool = False
    ) -> ServiceResponse:
        response = await self.get_tokens(force_refresh)
        return self._with_data(response, [t for t in response.data if t.status == status])

    async def get_active_airdrops(self, force_refresh: bool = False) -> ServiceResponse:
        """Tokens with the airdrop flag set that are claimable now."""
        response = await self.get_tokens(force_refresh)
        active = [
            t
            for t in response.data
            if t.online_airdrop and t.status == AirdropStatus.CLAIMABLE
        ]
        return self._with_data(response, active)

    async def get_upcoming_tge(self, force_refresh: bool = False) -> ServiceResponse:
        """Tokens with the TGE flag set that have not listed yet."""
        response = await self.get_tokens(force_refresh)
        upcoming = [
            t
            for t in response.data
            if t.online_tge and t.status == AirdropStatus.UPCOMING
        ]
        return self._with_data(response, upcoming)

    async def get_filtered_tokens(
        self, options: FilterOptions, force_refresh: bool = False
    ) -> ServiceResponse:
        """Filter, sort and paginate the listing in memory.

        Pagination is applied after every filter. Tokens missing the sort
        field always sort last.
        """
        response = await self.get_tokens(force_refresh)
        tokens = list(response.data)

        statuses = _as_list(options.status)
        if statuses:
            tokens = [t for t in tokens if t.status in statuses]

        types = _as_list(options.type)
        if types:
            tokens = [t for t in tokens if t.type in types]

        chains = [c.lower() for c in _as_list(options.chain)]
        if chains:
            tokens = [t for t in tokens if t.chain.lower() in chains]

        if options.min_score is not None:
            tokens = [t for t in tokens if t.score >= options.min_score]
        if options.max_score is not None:
            tokens = [t for t in tokens if t.score <= options.max_score]
        if options.mul_point is not None:
            tokens = [t for t in tokens if t.mul_point == options.mul_point]
        if options.online_airdrop is not None:
            tokens = [t for t in tokens if t.online_airdrop == options.online_airdrop]
        if options.online_tge is not None:
            tokens = [t for t in tokens if t.online_tge == options.online_tge]

        if options.search:
            needle = options.search.lower()
            tokens = [
                t
                for t in tokens
                if needle in t.symbol.lower() or needle in t.name.lower()
            ]

        if options.sort_by:
            tokens = self._sort_tokens(
                tokens, options.sort_by, descending=options.sort_order == "desc"
            )

        offset = options.offset or 0
        if offset:
            tokens = tokens[offset:]
        if options.limit is not None:
            tokens = tokens[: options.limit]

        return self._with_data(response, tokens)

    @staticmethod
    def _sort_tokens(
        tokens: list[AlphaToken], sort_by: str, descending: bool
    ) -> list[AlphaToken]:
        present = [t for t in tokens if getattr(t, sort_by, None) is not None]
        missing = [t for t in tokens if getattr(t, sort_by, None) is None]
        present.sort(key=lambda t: getattr(t, sort_by), reverse=descending)
        return present + missing

    @staticmethod
    def _with_data(
        response: ServiceResponse, data: list[AlphaToken]
    ) -> ServiceResponse:
        return response.model_copy(update={"data": data, "count": len(data)})

    # Persistence

    def to_airdrop_record(self, token: AlphaToken) -> AirdropRecord:
        """Project a token onto the persisted airdrop shape."""
        score = token.score
        claim_start = token.listing_time
        claim_end = claim_start + CLAIM_PERIOD if claim_start else None
        deduct = math.floor(score * DEDUCT_RATIO)

        requirements = [
            "Binance Alpha Points Required",
            f"Point Multiplier: {token.mul_point}x",
        ]
        if token.online_tge:
            requirements.append("TGE Active")
        if token.online_airdrop:
            requirements.append("Airdrop Active")

        return AirdropRecord(
            token=token.symbol,
            name=token.name,
            chain=token.chain,
            contract_address=token.contract_address or None,
            airdrop_amount=f"Alpha Score: {format_score(score)}" if score > 0 else None,
            claim_start_date=claim_start,
            claim_end_date=claim_end,
            required_points=score or None,
            deduct_points=deduct or None,
            type=token.type,
            status=token.status,
            estimated_value=token.estimated_value,
            description=(
                f"{token.name} ({token.symbol}) on {token.chain}. "
                f"Alpha ID: {token.alpha_id or 'N/A'}. "
                f"Point Multiplier: {token.mul_point}x"
            ),
            eligibility=["Binance Alpha User", f"Min Score: {format_score(score)}"],
            requirements=requirements,
            verified=True,
            is_active=token.status != AirdropStatus.ENDED,
            multiplier=token.mul_point,
            is_baseline=token.mul_point == 1,
        )

    @staticmethod
    def has_data_changed(existing: AirdropRecord, incoming: AirdropRecord) -> bool:
        return any(
            getattr(existing, field) != getattr(incoming, field)
            for field in MONITORED_FIELDS
        )

    async def sync_to_database(self) -> SyncResult:
        """Force a refresh and upsert every token by symbol.

        Existing records are written only when a monitored field differs.
        Per-token failures are counted and never abort the batch.

        Raises:
            RepositoryError: When no repository is configured
        """
        if self.repository is None:
            raise RepositoryError("No airdrop repository configured")

        start = time.monotonic()
        self._emit(AlphaEventType.SYNC_START, {})

        created = updated = unchanged = errors = 0
        source: str = DataSourceType.CACHE

        try:
            response = await self.get_tokens(force_refresh=True)
            source = response.source

            if not response.success:
                result = SyncResult(
                    success=False,
                    errors=1,
                    source=source,
                    duration_ms=(time.monotonic() - start) * 1000,
                    timestamp=self._now_fn(),
                )
                self.last_sync_result = result
                logger.error("Sync aborted, no token data", error=response.error)
                self._emit(AlphaEventType.SYNC_ERROR, {"error": response.error})
                return result

            for token in response.data:
                try:
                    record = self.to_airdrop_record(token)
                    existing = await self.repository.find_airdrop_by_token(token.symbol)

                    if existing is None:
                        await self.repository.create_airdrop(record)
                        created += 1
                        self._emit(
                            AlphaEventType.TOKEN_NEW,
                            {"symbol": token.symbol, "token": token},
                        )
                    elif self.has_data_changed(existing, record):
                        await self.repository.update_airdrop(existing.id, record)
                        updated += 1
                        self._emit(
                            AlphaEventType.TOKEN_UPDATED,
                            {"symbol": token.symbol, "token": token},
                        )
                    else:
                        unchanged += 1
                except Exception as e:
                    logger.error("Error syncing token", symbol=token.symbol, error=str(e))
                    errors += 1

        except Exception as e:
            self.last_sync_result = SyncResult(
                success=False,
                created=created,
                updated=updated,
                unchanged=unchanged,
                errors=errors + 1,
                source=source,
                duration_ms=(time.monotonic() - start) * 1000,
                timestamp=self._now_fn(),
            )
            self._emit(AlphaEventType.SYNC_ERROR, {"error": str(e)})
            raise

        result = SyncResult(
            success=errors == 0,
            created=created,
            updated=updated,
            unchanged=unchanged,
            errors=errors,
            source=source,
            duration_ms=(time.monotonic() - start) * 1000,
            timestamp=self._now_fn(),
        )
        self.last_sync_result = result
        self._emit(AlphaEventType.SYNC_COMPLETE, result)

        logger.info(
            "Sync completed",
            created=created,
            updated=updated,
            unchanged=unchanged,
            errors=errors,
            source=source,
        )
        return result

    # Stats and maintenance

    async def get_stats(self, force_refresh: bool = False) -> AlphaStats:
        """Aggregate counts over the current listing."""
        response = await self.get_tokens(force_refresh)
        tokens = response.data

        by_status = {status.value: 0 for status in AirdropStatus}
        by_type = {airdrop_type.value: 0 for airdrop_type in AirdropType}
        by_chain: dict[str, int] = {}
        by_multiplier = {"1x": 0, "2x": 0, "4x": 0}

        for token in tokens:
            by_status[token.status.value] += 1
            by_type[token.type.value] += 1
            by_chain[token.chain] = by_chain.get(token.chain, 0) + 1
            key = f"{token.mul_point}x"
            by_multiplier[key] = by_multiplier.get(key, 0) + 1

        return AlphaStats(
            total=len(tokens),
            by_status=by_status,
            by_type=by_type,
            by_chain=by_chain,
            by_multiplier=by_multiplier,
            active_airdrops=sum(1 for t in tokens if t.online_airdrop),
            active_tge=sum(1 for t in tokens if t.online_tge),
            last_update=self._now_fn(),
        )

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("Alpha cache cleared")

    def get_cache_stats(self) -> dict[str, Any]:
        return self.cache.get_stats()

    # Events

    def on(self, event: AlphaEventType, handler: EventHandler) -> None:
        """Register a synchronous listener for an event type."""
        self._listeners[AlphaEventType(event)].append(handler)

    def off(self, event: AlphaEventType, handler: EventHandler) -> None:
        """Remove a previously registered listener."""
        handlers = self._listeners.get(AlphaEventType(event), [])
        if handler in handlers:
            handlers.remove(handler)

    def _emit(self, event: AlphaEventType, data: Any = None) -> None:
        if not self.enable_events:
            return

        alpha_event = AlphaEvent(type=event, timestamp=self._now_fn(), data=data)
        for handler in list(self._listeners.get(event, [])):
            try:
                handler(alpha_event)
            except Exception as e:
                logger.error("Event handler failed", event=event.value, error=str(e))


def create_default_alpha_service(
    settings: Any,
    repository: AirdropRepository | None = None,
    session: httpx.AsyncClient | None = None,
) -> AlphaService:
    """Build an ``AlphaService`` with both sources from application settings.

    Args:
        settings: ``AppSettings`` instance
        repository: Optional airdrop persistence
        session: Optional shared HTTP client for both sources
    """
    sources: list[AlphaDataSource] = [
        BinanceAlphaSource(
            api_url=settings.binance_alpha_url,
            timeout=settings.fetch_timeout_seconds,
            health_check_timeout=settings.health_check_timeout_seconds,
            session=session,
        ),
        Alpha123Source(
            base_url=settings.alpha123_base_url,
            timeout=settings.fetch_timeout_seconds,
            health_check_timeout=settings.health_check_timeout_seconds,
            session=session,
            window_days=settings.fallback_claim_window_days,
        ),
    ]

    return AlphaService(
        sources,
        cache=CacheService(settings.cache_config()),
        repository=repository,
        enable_fallback=settings.enable_fallback,
    )
