"""Application settings and configuration management."""

from pathlib import Path
from typing import Literal

import structlog
import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

from ..core.types import CacheConfig, StabilityConfig

logger = structlog.get_logger(__name__)

PROFILES = ("dev", "prod")


class AppSettings(BaseSettings):
    """Application settings with environment variable support."""

    env: Literal["dev", "prod"] = Field(default="dev", description="Environment")

    # Source endpoints
    binance_alpha_url: str = Field(
        default=(
            "https://www.binance.com/bapi/defi/v1/public/wallet-direct/buw/wallet/"
            "cex/alpha/all/token/list"
        ),
        description="Binance Alpha token list endpoint",
    )
    alpha123_base_url: str = Field(
        default="https://alpha123.uk", description="Alpha123 base URL"
    )
    alpha_token_list_url: str = Field(
        default=(
            "https://www.binance.com/bapi/defi/v1/public/wallet-direct/buw/wallet/"
            "cex/alpha/all/token/list"
        ),
        description="Token universe endpoint for the stability monitor",
    )
    alpha_agg_trades_url: str = Field(
        default="https://www.binance.com/bapi/defi/v1/public/alpha-trade/agg-trades",
        description="Aggregated trades endpoint",
    )

    # Timeouts
    fetch_timeout_seconds: float = Field(default=30.0, description="Full fetch timeout")
    health_check_timeout_seconds: float = Field(
        default=5.0, description="Health probe timeout"
    )

    # Cache
    cache_ttl_seconds: float = Field(default=300.0, description="Token cache TTL")
    cache_stale_seconds: float = Field(
        default=900.0, description="Grace period for expired cache entries"
    )
    cache_max_size: int = Field(default=500, description="Maximum cache entries")
    enable_fallback: bool = Field(
        default=True, description="Try the next source after a fetch failure"
    )

    # Stability monitor
    stability_stable_threshold_pct: float = Field(
        default=0.01, description="Range percent at or below which is STABLE"
    )
    stability_moderate_threshold_pct: float = Field(
        default=0.5, description="Range percent at or below which is MODERATE"
    )
    stability_spike_threshold_pct: float = Field(
        default=2.0, description="Consecutive-trade move flagged as a spike"
    )
    stability_min_trades: int = Field(default=3, description="Trades to classify")
    stability_no_trade_timeout_ms: int = Field(
        default=30_000, description="Silence before NO_TRADE"
    )
    stability_time_window_ms: int = Field(
        default=60_000, description="Sliding window length"
    )
    stability_buffer_size: int = Field(default=500, description="Max buffered trades")
    stability_poll_interval_seconds: float = Field(
        default=3.0, description="Pause between poll cycles"
    )
    stability_multiplier_tier: int = Field(
        default=4, description="Point multiplier of tracked tokens"
    )
    stability_extra_symbols: list[str] = Field(
        default_factory=lambda: ["KOGE"],
        description="Symbols tracked regardless of multiplier",
    )

    # Schedule policy
    notification_window_minutes: int = Field(
        default=20, description="Reminder look-ahead"
    )
    schedule_default_lead_minutes: int = Field(
        default=60, description="Start offset for tokens without a listing time"
    )
    schedule_claim_window_days: int = Field(
        default=7, description="Schedule end offset after listing"
    )
    schedule_cleanup_days: int = Field(
        default=30, description="Age after which ENDED schedules are deleted"
    )
    fallback_claim_window_days: int = Field(
        default=7, description="Day window for fallback source status buckets"
    )

    # Notifications
    telegram_bot_token: str | None = Field(
        default=None, description="Telegram bot token"
    )
    telegram_chat_ids: list[int | str] = Field(
        default_factory=list, description="Telegram chats receiving alerts"
    )

    # Storage and scheduling
    database_path: str = Field(
        default="./alphahub.sqlite", description="SQLite database file"
    )
    sync_interval_seconds: float = Field(
        default=300.0, description="Pause between sync runs"
    )

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }

    def cache_config(self) -> CacheConfig:
        return CacheConfig(
            ttl=self.cache_ttl_seconds,
            max_size=self.cache_max_size,
            stale_while_revalidate=self.cache_stale_seconds > 0,
            stale_time=self.cache_stale_seconds,
        )

    def stability_config(self) -> StabilityConfig:
        return StabilityConfig(
            time_window_ms=self.stability_time_window_ms,
            buffer_size=self.stability_buffer_size,
            stable_threshold_pct=self.stability_stable_threshold_pct,
            moderate_threshold_pct=self.stability_moderate_threshold_pct,
            spike_threshold_pct=self.stability_spike_threshold_pct,
            min_trades_required=self.stability_min_trades,
            no_trade_timeout_ms=self.stability_no_trade_timeout_ms,
        )


def load_settings(profile: str, yaml_path: str) -> AppSettings:
    """Load settings from YAML file and environment variables.

    Args:
        profile: Configuration profile name (dev, prod)
        yaml_path: Path to YAML configuration file

    Returns:
        AppSettings instance with loaded configuration

    Raises:
        FileNotFoundError: If YAML file doesn't exist
        ValidationError: If configuration is invalid
        ValueError: If profile is invalid
    """
    if profile not in PROFILES:
        raise ValueError(f"Invalid profile: {profile}. Must be one of: dev, prod")

    yaml_file = Path(yaml_path)
    if not yaml_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

    try:
        with open(yaml_file, encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}

        yaml_config["env"] = profile

        logger.info("Loading configuration", profile=profile, yaml_path=yaml_path)

        settings = AppSettings(**yaml_config)

        logger.info(
            "Configuration loaded successfully",
            profile=profile,
            database_path=settings.database_path,
            telegram_enabled=bool(settings.telegram_bot_token),
        )

        return settings

    except yaml.YAMLError as e:
        logger.error("Failed to parse YAML configuration", error=str(e))
        raise ValueError(f"Invalid YAML configuration: {e}") from e
    except ValidationError as e:
        logger.error("Configuration validation failed", error=str(e))
        raise
