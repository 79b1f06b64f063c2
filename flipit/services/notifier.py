"""Fire-and-forget notification fan-out after lifecycle transitions.

Delivery never feeds back into trading state: every channel failure is
logged at WARNING and dropped.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from flipit.config import settings
from flipit.utils.constants import DEXSCREENER_CHART_URL, SOLSCAN_TX_URL

logger = logging.getLogger(__name__)

TRADE_EVENTS = {"target_sell", "emergency_sell", "rebuy", "limit_order_executed", "position_opened"}


@dataclass
class Notification:
    event: str
    title: str
    message: str
    token_mint: str | None = None
    token_symbol: str | None = None
    signature: str | None = None
    email: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def tx_url(self) -> str | None:
        if not self.signature:
            return None
        return SOLSCAN_TX_URL.format(signature=self.signature)

    @property
    def chart_url(self) -> str | None:
        if not self.token_mint:
            return None
        return DEXSCREENER_CHART_URL.format(mint=self.token_mint)

    def text(self) -> str:
        lines = [self.title, self.message]
        if self.tx_url:
            lines.append(f"Tx: {self.tx_url}")
        if self.chart_url:
            lines.append(f"Chart: {self.chart_url}")
        return "\n".join(lines)

    def to_payload(self) -> dict:
        return {
            "event": self.event,
            "title": self.title,
            "message": self.message,
            "token_mint": self.token_mint,
            "token_symbol": self.token_symbol,
            "signature": self.signature,
            "tx_url": self.tx_url,
            "chart_url": self.chart_url,
            "data": self.data,
        }


class Channel:
    name = "channel"

    def accepts(self, notification: Notification) -> bool:
        return True

    async def send(self, notification: Notification):
        raise NotImplementedError


class TelegramChannel(Channel):
    """Forward to the Telegram bot singleton running on its own loop."""

    name = "telegram"

    async def send(self, notification: Notification):
        from flipit.services.telegram_bot import get_bot

        bot = get_bot()
        if not bot or not bot._loop:
            return
        future = asyncio.run_coroutine_threadsafe(bot.send_notification(notification.text()), bot._loop)
        await asyncio.wrap_future(future)


class WebhookChannel(Channel):
    """POST the notification as JSON to a relay (email, social poster, broadcast)."""

    def __init__(
        self,
        name: str,
        url: str,
        events: set[str] | None = None,
        client: httpx.AsyncClient | None = None,
        default_email: str | None = None,
    ):
        self.name = name
        self.url = url
        self.events = events
        self.default_email = default_email
        self._client = client

    def accepts(self, notification: Notification) -> bool:
        return self.events is None or notification.event in self.events

    async def send(self, notification: Notification):
        payload = notification.to_payload()
        email = notification.email or self.default_email
        if email:
            payload["to"] = email
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10)
        res = await self._client.post(self.url, json=payload)
        res.raise_for_status()


def default_channels() -> list[Channel]:
    channels: list[Channel] = [TelegramChannel()]
    if settings.email_webhook_url:
        channels.append(WebhookChannel(
            "email", settings.email_webhook_url, default_email=settings.notification_email or None,
        ))
    if settings.social_webhook_url:
        channels.append(WebhookChannel("social", settings.social_webhook_url, events=TRADE_EVENTS))
    for i, url in enumerate(settings.broadcast_webhook_urls):
        channels.append(WebhookChannel(f"broadcast_{i}", url))
    return channels


class Notifier:
    def __init__(self, channels: list[Channel] | None = None):
        self.channels = channels if channels is not None else default_channels()
        self._pending: set[asyncio.Task] = set()

    def publish(self, notification: Notification):
        """Schedule delivery on every accepting channel and return immediately."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop; dropped notification {notification.event}")
            return
        for channel in self.channels:
            if not channel.accepts(notification):
                continue
            task = loop.create_task(self._deliver(channel, notification))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, channel: Channel, notification: Notification):
        try:
            await channel.send(notification)
        except Exception as e:
            logger.warning(f"Notification via {channel.name} failed ({notification.event}): {e}")

    async def flush(self):
        """Wait for in-flight deliveries (used by the CLI before exiting)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


_notifier: Notifier | None = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = Notifier()
    return _notifier
