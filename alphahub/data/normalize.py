"""Shared normalization helpers for token listing sources."""

import math
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from ..core.types import AirdropStatus, AirdropType

logger = structlog.get_logger(__name__)

CHAIN_ID_MAP: dict[str, str] = {
    "1": "Ethereum",
    "56": "BSC",
    "137": "Polygon",
    "42161": "Arbitrum",
    "10": "Optimism",
    "43114": "Avalanche",
    "250": "Fantom",
    "8453": "Base",
    "324": "zkSync",
    "534352": "Scroll",
    "59144": "Linea",
}

CHAIN_NAME_ALIASES: dict[str, str] = {
    "bsc": "BSC",
    "bnb": "BSC",
    "binance": "BSC",
    "eth": "Ethereum",
    "ethereum": "Ethereum",
    "polygon": "Polygon",
    "matic": "Polygon",
    "arbitrum": "Arbitrum",
    "arb": "Arbitrum",
    "optimism": "Optimism",
    "op": "Optimism",
    "avalanche": "Avalanche",
    "avax": "Avalanche",
    "solana": "Solana",
    "sol": "Solana",
    "sui": "SUI",
    "base": "Base",
    "zksync": "zkSync",
    "scroll": "Scroll",
    "linea": "Linea",
}

AIRDROP_TYPE_MAP: dict[str, AirdropType] = {
    "tge": AirdropType.TGE,
    "pretge": AirdropType.PRETGE,
    "pre-tge": AirdropType.PRETGE,
    "grab": AirdropType.AIRDROP,
    "airdrop": AirdropType.AIRDROP,
}

DEFAULT_CHAIN = "BSC"

_TIME_FORMATS = ("%H:%M", "%H:%M:%S", "%I:%M %p", "%I:%M%p", "%I:%M:%S %p")


def normalize_chain_name(
    chain_id: str | None = None, chain_name: str | None = None
) -> str:
    """Resolve a chain id or free-text chain name to a canonical name.

    Chain id wins when known. Otherwise the name is matched against the alias
    table, first exactly and then by substring. Unknown names are returned
    unchanged and a missing name defaults to BSC.
    """
    if chain_id and str(chain_id) in CHAIN_ID_MAP:
        return CHAIN_ID_MAP[str(chain_id)]

    # Free-text sources put the name in the id field
    candidate = chain_name or (chain_id if chain_id else None)
    if not candidate:
        return DEFAULT_CHAIN

    normalized = candidate.strip().lower()
    if normalized in CHAIN_NAME_ALIASES:
        return CHAIN_NAME_ALIASES[normalized]

    for alias, name in CHAIN_NAME_ALIASES.items():
        if alias in normalized:
            return name

    return candidate


def map_airdrop_type(value: str | None) -> AirdropType:
    """Map a free-text type label to ``AirdropType``."""
    if not value:
        return AirdropType.AIRDROP
    return AIRDROP_TYPE_MAP.get(value.strip().lower(), AirdropType.AIRDROP)


def parse_number(value: Any) -> float:
    """Parse a numeric string. Non-numeric input yields 0."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    if not value:
        return 0.0
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0.0
    return parsed if math.isfinite(parsed) else 0.0


def parse_int(value: Any) -> int:
    """Parse an integer. Non-numeric input yields 0."""
    return int(parse_number(value))


def round_cents(value: float) -> float:
    """Round half-up to two decimals."""
    return math.floor(value * 100 + 0.5) / 100


def estimate_value(price: float) -> float | None:
    """Estimated value is the price in cents, None when unpriced."""
    return round_cents(price) if price > 0 else None


def parse_date_time(date: str | None, time_str: str | None = None) -> datetime | None:
    """Combine separate date and time strings into a UTC datetime.

    Args:
        date: Date string, e.g. ``2025-01-01``
        time_str: Optional time string, e.g. ``10:00`` or ``05:00 PM``

    Returns:
        Timezone-aware datetime, or None when unparseable
    """
    if not date:
        return None

    try:
        day = datetime.fromisoformat(date.strip())
    except ValueError:
        logger.warning("Failed to parse date", date=date, time=time_str)
        return None

    if time_str:
        parsed_time = None
        for fmt in _TIME_FORMATS:
            try:
                parsed_time = datetime.strptime(time_str.strip().upper(), fmt).time()
                break
            except ValueError:
                continue
        if parsed_time is None:
            logger.warning("Failed to parse time", date=date, time=time_str)
            return None
        day = datetime.combine(day.date(), parsed_time, tzinfo=day.tzinfo)

    if day.tzinfo is None:
        day = day.replace(tzinfo=UTC)
    return day


def determine_airdrop_status(
    claim_date: datetime | None,
    now: datetime,
    *,
    is_offline: bool = False,
    online_airdrop: bool = False,
    window_days: int = 7,
) -> AirdropStatus:
    """Bucket a claim date relative to now.

    Day difference is rounded up. More than ``window_days`` in the past is
    ENDED, any other past day is CLAIMABLE, up to ``window_days`` ahead is the
    snapshot window (CLAIMABLE when the airdrop is already live), further out
    is UPCOMING.
    """
    if is_offline:
        return AirdropStatus.ENDED

    if claim_date is None:
        return AirdropStatus.CLAIMABLE if online_airdrop else AirdropStatus.UPCOMING

    diff_days = math.ceil((claim_date - now) / timedelta(days=1))

    if diff_days < -window_days:
        return AirdropStatus.ENDED
    if diff_days < 0:
        return AirdropStatus.CLAIMABLE
    if diff_days <= window_days:
        return AirdropStatus.CLAIMABLE if online_airdrop else AirdropStatus.SNAPSHOT
    return AirdropStatus.UPCOMING
