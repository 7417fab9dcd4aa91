"""Telegram notifications for airdrop alerts."""

from datetime import datetime
from html import escape

import httpx
import structlog

from ..core.errors import NotificationError
from ..core.interfaces import NotificationSink
from ..core.types import AirdropAlert, ClaimableAlert, ReminderAlert, SnapshotAlert

logger = structlog.get_logger(__name__)


def _fmt_date(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC") if value else "TBA"


def _fmt_points(value: float | None) -> str:
    if value is None:
        return "N/A"
    return str(int(value)) if float(value).is_integer() else str(value)


def format_airdrop_alert(alert: AirdropAlert) -> str:
    lines = [
        f"<b>New airdrop: {escape(alert.name)} ({escape(alert.symbol)})</b>",
        f"Chain: {escape(alert.chain)}",
        f"Status: {escape(alert.status)}",
        f"Claim start: {_fmt_date(alert.claim_start_date)}",
    ]
    if alert.claim_end_date:
        lines.append(f"Claim end: {_fmt_date(alert.claim_end_date)}")
    if alert.airdrop_amount:
        lines.append(f"Amount: {escape(alert.airdrop_amount)}")
    if alert.required_points is not None:
        lines.append(f"Required points: {_fmt_points(alert.required_points)}")
    if alert.deduct_points is not None:
        lines.append(f"Deduct points: {alert.deduct_points}")
    if alert.estimated_value is not None:
        lines.append(f"Estimated value: ${alert.estimated_value:.2f}")
    if alert.contract_address:
        lines.append(f"Contract: <code>{escape(alert.contract_address)}</code>")
    return "\n".join(lines)


def format_snapshot_alert(alert: SnapshotAlert) -> str:
    lines = [
        f"<b>Snapshot soon: {escape(alert.name)} ({escape(alert.symbol)})</b>",
        f"Snapshot: {_fmt_date(alert.snapshot_date)}",
        f"Required points: {_fmt_points(alert.required_points)}",
    ]
    lines.extend(f"- {escape(item)}" for item in alert.requirements)
    return "\n".join(lines)


def format_claimable_alert(alert: ClaimableAlert) -> str:
    lines = [
        f"<b>Claimable now: {escape(alert.name)} ({escape(alert.symbol)})</b>",
        f"Claim until: {_fmt_date(alert.claim_end_date)}",
    ]
    if alert.claim_amount:
        lines.append(f"Amount: {escape(alert.claim_amount)}")
    if alert.required_points is not None:
        lines.append(f"Required points: {_fmt_points(alert.required_points)}")
    return "\n".join(lines)


def format_reminder(alert: ReminderAlert) -> str:
    lines = [
        f"<b>Starting in {alert.minutes_until} min: "
        f"{escape(alert.name)} ({escape(alert.symbol)})</b>",
        f"Time: {_fmt_date(alert.scheduled_time)}",
        f"Chain: {escape(alert.chain)}",
    ]
    if alert.type:
        lines.append(f"Type: {escape(alert.type)}")
    if alert.points is not None:
        lines.append(f"Points: {_fmt_points(alert.points)}")
    if alert.amount:
        lines.append(f"Amount: {escape(alert.amount)}")
    if alert.estimated_value is not None:
        lines.append(f"Estimated value: ${alert.estimated_value:.2f}")
    if alert.contract_address:
        lines.append(f"Contract: <code>{escape(alert.contract_address)}</code>")
    return "\n".join(lines)


class TelegramNotifier(NotificationSink):
    """Telegram Bot API notifier."""

    def __init__(
        self,
        bot_token: str,
        chat_ids: list[int | str],
        session: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize Telegram notifier.

        Args:
            bot_token: Telegram bot token
            chat_ids: Chats to deliver alerts to
            session: Optional HTTP session for requests
        """
        self.bot_token = bot_token
        self.chat_ids = chat_ids
        self.session = session or httpx.AsyncClient()
        self._owns_session = session is None
        self.base_url = f"https://api.telegram.org/bot{bot_token}"

        logger.info("Telegram notifier initialized", chat_count=len(chat_ids))

    async def send_airdrop_alert(self, alert: AirdropAlert) -> bool:
        return await self.broadcast(format_airdrop_alert(alert))

    async def send_snapshot_alert(self, alert: SnapshotAlert) -> bool:
        return await self.broadcast(format_snapshot_alert(alert))

    async def send_claimable_alert(self, alert: ClaimableAlert) -> bool:
        return await self.broadcast(format_claimable_alert(alert))

    async def send_reminder(self, alert: ReminderAlert) -> bool:
        return await self.broadcast(format_reminder(alert))

    async def broadcast(self, message: str) -> bool:
        """Send a message to every configured chat.

        Returns:
            True when at least one chat received the message
        """
        if not self.chat_ids:
            logger.warning("No Telegram chats configured, skipping alert")
            return False

        success_count = 0
        for chat_id in self.chat_ids:
            try:
                await self._send_message(chat_id, message)
                success_count += 1
                logger.debug("Alert sent to chat", chat_id=chat_id)
            except Exception as e:
                logger.error("Failed to send alert to chat", chat_id=chat_id, error=str(e))

        logger.info(
            "Alert broadcast completed",
            total_chats=len(self.chat_ids),
            success_count=success_count,
        )
        return success_count > 0

    async def _send_message(self, chat_id: int | str, text: str) -> None:
        url = f"{self.base_url}/sendMessage"
        data = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }

        response = await self.session.post(url, json=data)
        response.raise_for_status()

        result = response.json()
        if not result.get("ok"):
            raise NotificationError(
                f"Telegram API error: {result.get('description', 'Unknown error')}"
            )

    async def close(self) -> None:
        """Close the owned HTTP session."""
        if self._owns_session:
            await self.session.aclose()
        logger.info("Telegram notifier closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class NoopNotifier(NotificationSink):
    """Notifier used when Telegram is not configured. Logs and reports failure."""

    async def _skip(self, kind: str, symbol: str) -> bool:
        logger.info("Notification skipped, no notifier configured", kind=kind, symbol=symbol)
        return False

    async def send_airdrop_alert(self, alert: AirdropAlert) -> bool:
        return await self._skip("airdrop", alert.symbol)

    async def send_snapshot_alert(self, alert: SnapshotAlert) -> bool:
        return await self._skip("snapshot", alert.symbol)

    async def send_claimable_alert(self, alert: ClaimableAlert) -> bool:
        return await self._skip("claimable", alert.symbol)

    async def send_reminder(self, alert: ReminderAlert) -> bool:
        return await self._skip("reminder", alert.symbol)

    async def close(self) -> None:
        pass
