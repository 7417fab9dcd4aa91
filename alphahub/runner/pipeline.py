"""Sync pipeline runner: token sync, schedules, reminders and monitoring."""

import argparse
import asyncio
import math
import signal
import sys
from datetime import datetime, timedelta
from typing import Any

import httpx
import structlog

from ..alerts.telegram import NoopNotifier, TelegramNotifier
from ..config.settings import PROFILES, AppSettings, load_settings
from ..core.interfaces import NotificationSink
from ..core.types import (
    AirdropAlert,
    AlphaEvent,
    AlphaEventType,
    AlphaToken,
    ReminderAlert,
    ScheduleRecord,
)
from ..persist.storage import SQLiteStorage
from ..services.alpha import AlphaService, create_default_alpha_service
from ..services.schedule import ScheduleService
from ..stability.monitor import StabilityMonitor

logger = structlog.get_logger(__name__)


def build_airdrop_alert(alpha_service: AlphaService, token: AlphaToken) -> AirdropAlert:
    record = alpha_service.to_airdrop_record(token)
    return AirdropAlert(
        name=record.name,
        symbol=record.token,
        chain=record.chain,
        status=str(record.status),
        claim_start_date=record.claim_start_date,
        claim_end_date=record.claim_end_date,
        estimated_value=record.estimated_value,
        airdrop_amount=record.airdrop_amount,
        required_points=record.required_points,
        deduct_points=record.deduct_points,
        contract_address=record.contract_address,
    )


def build_reminder(schedule: ScheduleRecord, now: datetime) -> ReminderAlert:
    seconds_until = (schedule.scheduled_time - now).total_seconds()
    return ReminderAlert(
        name=schedule.name,
        symbol=schedule.token,
        scheduled_time=schedule.scheduled_time,
        minutes_until=max(0, math.ceil(seconds_until / 60)),
        chain=schedule.chain,
        points=schedule.points,
        amount=schedule.amount,
        contract_address=schedule.contract_address,
        type=str(schedule.type),
        estimated_value=schedule.estimated_value,
    )


class AlphaHubPipeline:
    """Periodic sync orchestrator.

    One cycle syncs tokens into storage, derives schedules, sends reminders
    for schedules starting soon and prunes old ones. The stability monitor
    runs alongside on its own poll loop when enabled.
    """

    def __init__(
        self,
        settings: AppSettings,
        with_stability: bool = False,
        components: dict[str, Any] | None = None,
    ) -> None:
        """Initialize pipeline with assembled components.

        Args:
            settings: Application settings
            with_stability: Also run the stability monitor
            components: Pre-built components (for testing)
        """
        self.settings = settings
        self.with_stability = with_stability
        self.running = False
        self._stopped = False
        self.components = components or self._assemble(settings, with_stability)
        self._pending_new_tokens: list[AlphaToken] = []

        self.components["alpha"].on(AlphaEventType.TOKEN_NEW, self._on_token_new)

        logger.info(
            "Pipeline initialized",
            data_sources=len(self.components["alpha"].data_sources),
            stability=with_stability,
        )

    def _assemble(self, settings: AppSettings, with_stability: bool) -> dict[str, Any]:
        """Assemble all components from settings.

        Args:
            settings: Application settings
            with_stability: Whether to build the stability monitor

        Returns:
            Dictionary of assembled components
        """
        components: dict[str, Any] = {}

        session = httpx.AsyncClient(headers={"Accept": "application/json"})
        components["session"] = session

        storage = SQLiteStorage(db_path=settings.database_path)
        components["storage"] = storage
        logger.info("Initialized SQLite storage")

        alpha = create_default_alpha_service(settings, repository=storage, session=session)
        components["alpha"] = alpha

        components["schedule"] = ScheduleService(
            alpha,
            repository=storage,
            sync_log_repository=storage,
            notification_window=timedelta(minutes=settings.notification_window_minutes),
            default_lead=timedelta(minutes=settings.schedule_default_lead_minutes),
            claim_window=timedelta(days=settings.schedule_claim_window_days),
        )

        if settings.telegram_bot_token and settings.telegram_chat_ids:
            components["notifier"] = TelegramNotifier(
                bot_token=settings.telegram_bot_token,
                chat_ids=settings.telegram_chat_ids,
                session=session,
            )
            logger.info("Using Telegram notifier")
        else:
            components["notifier"] = NoopNotifier()
            logger.info("Using noop notifier (no Telegram config)")

        if with_stability:
            components["stability"] = StabilityMonitor(
                settings.stability_config(),
                token_list_url=settings.alpha_token_list_url,
                agg_trades_url=settings.alpha_agg_trades_url,
                poll_interval=settings.stability_poll_interval_seconds,
                multiplier_tier=settings.stability_multiplier_tier,
                extra_symbols=settings.stability_extra_symbols,
                session=session,
            )
            logger.info("Initialized stability monitor")

        return components

    def _on_token_new(self, event: AlphaEvent) -> None:
        token = (event.data or {}).get("token")
        if token is not None:
            self._pending_new_tokens.append(token)

    async def initialize(self) -> None:
        await self.components["storage"].initialize()

        monitor: StabilityMonitor | None = self.components.get("stability")
        if monitor is not None:
            try:
                await monitor.start()
            except Exception as e:
                logger.error("Stability monitor failed to start", error=str(e))

    async def dispatch_new_airdrop_alerts(self) -> int:
        """Send one alert per token created by the last token sync."""
        notifier: NotificationSink = self.components["notifier"]
        alpha: AlphaService = self.components["alpha"]

        pending, self._pending_new_tokens = self._pending_new_tokens, []
        sent = 0
        for token in pending:
            if await notifier.send_airdrop_alert(build_airdrop_alert(alpha, token)):
                sent += 1
        return sent

    async def dispatch_reminders(self) -> int:
        """Send reminders for schedules starting soon.

        A schedule is marked notified only after its reminder was delivered;
        undelivered ones are retried on the next cycle while still in the
        look-ahead window.
        """
        schedule: ScheduleService = self.components["schedule"]
        notifier: NotificationSink = self.components["notifier"]

        now = schedule.now()
        sent = 0
        for record in await schedule.get_schedules_for_notification():
            delivered = await notifier.send_reminder(build_reminder(record, now))
            if not delivered:
                logger.warning("Reminder not delivered", token=record.token)
                continue
            await schedule.mark_as_notified(record.id)
            sent += 1

        return sent

    async def run_once(self) -> dict[str, Any]:
        """Execute one sync cycle.

        Returns:
            Summary of the cycle
        """
        alpha: AlphaService = self.components["alpha"]
        schedule: ScheduleService = self.components["schedule"]
        summary: dict[str, Any] = {}

        try:
            token_sync = await alpha.sync_to_database()
            summary["token_sync"] = token_sync
        except Exception as e:
            logger.error("Token sync failed", error=str(e))
            summary["token_sync"] = None

        summary["new_alerts"] = await self.dispatch_new_airdrop_alerts()

        schedule_sync = await schedule.sync_from_binance_alpha()
        summary["schedule_sync"] = schedule_sync
        if not schedule_sync.success:
            await schedule.update_all_statuses()

        summary["reminders"] = await self.dispatch_reminders()
        summary["cleaned_up"] = await schedule.cleanup_old_schedules(
            self.settings.schedule_cleanup_days
        )

        logger.info(
            "Sync cycle completed",
            new_alerts=summary["new_alerts"],
            reminders=summary["reminders"],
            cleaned_up=summary["cleaned_up"],
        )
        return summary

    async def run_forever(self) -> None:
        """Run sync cycles until stopped."""
        logger.info("Starting pipeline", interval=self.settings.sync_interval_seconds)
        self.running = True
        await self.initialize()

        cycle_count = 0
        try:
            while self.running:
                try:
                    await self.run_once()
                except Exception as e:
                    logger.error("Sync cycle error", error=str(e))

                cycle_count += 1
                if cycle_count % 10 == 0:
                    logger.info(
                        "Pipeline metrics",
                        cycles=cycle_count,
                        cache=self.components["alpha"].get_cache_stats()["size"],
                    )

                await asyncio.sleep(self.settings.sync_interval_seconds)

        except asyncio.CancelledError:
            logger.info("Pipeline cancelled")
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the pipeline and release resources."""
        if self._stopped:
            return

        logger.info("Stopping pipeline")
        self._stopped = True
        self.running = False

        monitor: StabilityMonitor | None = self.components.get("stability")
        if monitor is not None:
            await monitor.stop()

        await self.components["notifier"].close()
        await self.components["storage"].close()

        session = self.components.pop("session", None)
        if session is not None:
            await session.aclose()


async def main() -> None:
    """Main entry point for the sync runner."""
    parser = argparse.ArgumentParser(description="Alpha airdrop aggregation runner")
    parser.add_argument(
        "--config", default="configs/dev.yaml", help="Configuration file path"
    )
    parser.add_argument(
        "--profile",
        default="dev",
        choices=list(PROFILES),
        help="Configuration profile",
    )
    parser.add_argument(
        "--once", action="store_true", help="Run a single sync cycle and exit"
    )
    parser.add_argument(
        "--with-stability",
        action="store_true",
        help="Run the stability monitor alongside the sync loop",
    )

    args = parser.parse_args()

    try:
        settings = load_settings(args.profile, args.config)
        logger.info("Settings loaded", profile=args.profile, config=args.config)

        pipeline = AlphaHubPipeline(settings, with_stability=args.with_stability)

        if args.once:
            await pipeline.initialize()
            try:
                await pipeline.run_once()
            finally:
                await pipeline.stop()
            return

        def signal_handler(signum, frame):
            logger.info("Received shutdown signal")
            pipeline.running = False

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        await pipeline.run_forever()

    except Exception as e:
        logger.error("Fatal error", error=str(e))
        sys.exit(1)


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
