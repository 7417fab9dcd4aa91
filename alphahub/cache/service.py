"""In-memory TTL cache with stale-while-revalidate support."""

import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

import structlog

from ..core.types import CacheConfig, CacheEntry, DataSourceType

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CacheKeys:
    """Key builders for consistent cache key naming."""

    @staticmethod
    def all_tokens() -> str:
        return "alpha:tokens:all"

    @staticmethod
    def tokens_by_status(status: str) -> str:
        return f"alpha:tokens:status:{status}"

    @staticmethod
    def token_by_symbol(symbol: str) -> str:
        return f"alpha:token:{symbol.lower()}"

    @staticmethod
    def stats() -> str:
        return "alpha:stats"

    @staticmethod
    def last_sync() -> str:
        return "alpha:lastSync"


class CacheService(Generic[T]):
    """Key-value cache with lazy expiry.

    Entries are fresh until ``expires_at``. When stale-while-revalidate is
    enabled, ``get`` keeps returning an expired entry for ``stale_time``
    seconds more; after that the entry is evicted on access. Capacity is
    enforced by evicting the oldest entry by write time.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        """Initialize cache.

        Args:
            config: Cache configuration, defaults to ``CacheConfig()``
            now_fn: Optional function returning epoch seconds (for testing)
        """
        self.config = config or CacheConfig()
        self._now_fn = now_fn or time.time
        self._entries: dict[str, CacheEntry] = {}

    def _stale_deadline(self, entry: CacheEntry) -> float:
        if self.config.stale_while_revalidate and self.config.stale_time:
            return entry.expires_at + self.config.stale_time
        return entry.expires_at

    def get(self, key: str) -> T | None:
        """Get a fresh or stale-but-usable value.

        Args:
            key: Cache key

        Returns:
            Cached value, or None when absent or past the stale window
        """
        entry = self._entries.get(key)
        if entry is None:
            return None

        if self._now_fn() <= self._stale_deadline(entry):
            return entry.data

        del self._entries[key]
        logger.debug("Cache entry evicted on access", key=key)
        return None

    def get_entry(self, key: str) -> CacheEntry | None:
        """Get the raw entry with metadata, without expiry checks."""
        return self._entries.get(key)

    def set(
        self,
        key: str,
        value: T,
        source: str = DataSourceType.CACHE,
        ttl: float | None = None,
    ) -> None:
        """Insert or overwrite a value.

        Args:
            key: Cache key
            value: Value to cache
            source: Source tag stored with the entry
            ttl: Optional TTL override in seconds
        """
        if (
            key not in self._entries
            and self.config.max_size
            and len(self._entries) >= self.config.max_size
        ):
            self._evict_oldest()

        now = self._now_fn()
        effective_ttl = self.config.ttl if ttl is None else ttl
        self._entries[key] = CacheEntry(
            data=value,
            timestamp=now,
            expires_at=now + effective_ttl,
            source=source,
        )

    def has(self, key: str) -> bool:
        """Check whether a fresh entry exists."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        return self._now_fn() <= entry.expires_at

    def is_stale(self, key: str) -> bool:
        """Check whether an entry is missing or past its TTL."""
        entry = self._entries.get(key)
        if entry is None:
            return True
        return self._now_fn() > entry.expires_at

    def get_ttl(self, key: str) -> float:
        """Remaining TTL in seconds, or -1 when absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return -1
        remaining = entry.expires_at - self._now_fn()
        return remaining if remaining > 0 else -1

    def touch(self, key: str, ttl: float | None = None) -> None:
        """Extend an entry's expiry in place. Write time is unchanged."""
        entry = self._entries.get(key)
        if entry is None:
            return
        effective_ttl = self.config.ttl if ttl is None else ttl
        entry.expires_at = self._now_fn() + effective_ttl

    def delete(self, key: str) -> None:
        """Remove an entry."""
        self._entries.pop(key, None)

    def clear(self) -> None:
        """Remove all entries."""
        self._entries.clear()

    def cleanup(self) -> int:
        """Remove every entry past its stale (or hard) deadline.

        Returns:
            Number of entries removed
        """
        now = self._now_fn()
        expired = [
            key
            for key, entry in self._entries.items()
            if now > self._stale_deadline(entry)
        ]
        for key in expired:
            del self._entries[key]

        if expired:
            logger.debug("Cache cleanup", removed=len(expired))
        return len(expired)

    def get_stats(self) -> dict[str, Any]:
        """Size, keys and oldest/newest write times."""
        timestamps = [entry.timestamp for entry in self._entries.values()]
        return {
            "size": len(self._entries),
            "max_size": self.config.max_size,
            "ttl": self.config.ttl,
            "keys": list(self._entries.keys()),
            "oldest_entry": (
                datetime.fromtimestamp(min(timestamps), tz=UTC) if timestamps else None
            ),
            "newest_entry": (
                datetime.fromtimestamp(max(timestamps), tz=UTC) if timestamps else None
            ),
        }

    def update_config(self, **changes: Any) -> None:
        """Update configuration fields in place."""
        self.config = self.config.model_copy(update=changes)

    def get_config(self) -> CacheConfig:
        """Return a copy of the configuration."""
        return self.config.model_copy()

    def __len__(self) -> int:
        return len(self._entries)

    def _evict_oldest(self) -> None:
        if not self._entries:
            return
        oldest_key = min(self._entries, key=lambda k: self._entries[k].timestamp)
        del self._entries[oldest_key]
        logger.debug("Cache evicted oldest entry", key=oldest_key)


def create_alpha_cache(now_fn: Callable[[], float] | None = None) -> CacheService:
    """Cache tuned for token listings."""
    return CacheService(
        CacheConfig(
            ttl=5 * 60,
            max_size=500,
            stale_while_revalidate=True,
            stale_time=15 * 60,
        ),
        now_fn=now_fn,
    )


def create_short_lived_cache(
    now_fn: Callable[[], float] | None = None,
) -> CacheService:
    """One-minute cache without a stale window."""
    return CacheService(
        CacheConfig(ttl=60, max_size=100, stale_while_revalidate=False),
        now_fn=now_fn,
    )


def create_long_lived_cache(
    now_fn: Callable[[], float] | None = None,
) -> CacheService:
    """Thirty-minute cache with a one-hour stale window."""
    return CacheService(
        CacheConfig(
            ttl=30 * 60,
            max_size=200,
            stale_while_revalidate=True,
            stale_time=60 * 60,
        ),
        now_fn=now_fn,
    )
