"""
Settlement Engine - Alerting.

============================================================
PURPOSE
============================================================
Forwards engine notifications to Telegram.

FORWARDED:
- Trade placed / won / lost
- Insufficient balance rejections
- Stake initiated / completed
- System alerts (persistence failures)

SAFETY REQUIREMENTS:
- Never blocks or fails settlement
- Rate limited to prevent spam
- No-op when credentials are missing

============================================================
"""

import html
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

import aiohttp

from .config import AlertingConfig
from .types import Notification, NotificationKind


logger = logging.getLogger(__name__)


KIND_EMOJI = {
    NotificationKind.TRADE_PLACED: "📝",
    NotificationKind.TRADE_WON: "✅",
    NotificationKind.TRADE_LOST: "❌",
    NotificationKind.INSUFFICIENT_BALANCE: "⚠️",
    NotificationKind.STAKE_INITIATED: "🔒",
    NotificationKind.STAKE_COMPLETED: "🔓",
}


# ============================================================
# TELEGRAM NOTIFIER
# ============================================================

class TelegramNotifier:
    """
    Notification subscriber that sends messages via Telegram.

    Features:
    - Rate limiting
    - Kind filtering
    """

    def __init__(
        self,
        config: AlertingConfig,
        kinds: Optional[Set[NotificationKind]] = None,
    ):
        self._config = config
        self._kinds = kinds

        self._bot_token = os.environ.get(config.telegram_bot_token_env, "")
        self._chat_id = os.environ.get(config.telegram_chat_id_env, "")

        # Rate limiting
        self._last_sent: Optional[datetime] = None
        self._sent_this_minute: List[datetime] = []

        self._session: Optional[aiohttp.ClientSession] = None
        self._stats = {"sent": 0, "rate_limited": 0, "failed": 0}

    @property
    def is_configured(self) -> bool:
        """Check if Telegram is configured."""
        return bool(self._bot_token and self._chat_id)

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)

    async def __call__(self, notification: Notification) -> bool:
        return await self.send_notification(notification)

    async def send_notification(self, notification: Notification) -> bool:
        """
        Forward one notification.

        Returns:
            Whether a message was sent
        """
        if not self._config.enabled:
            return False
        if self._kinds is not None and notification.kind not in self._kinds:
            return False

        return await self._send(self._format_notification(notification))

    async def send_system_alert(self, severity: str, message: str, details: Dict[str, Any]) -> bool:
        if not self._config.enabled:
            return False

        lines = [f"🚨 <b>{html.escape(severity)}</b>", html.escape(message)]
        for key, value in details.items():
            lines.append(f"  • {html.escape(str(key))}: {html.escape(str(value))}")
        return await self._send("\n".join(lines))

    async def _send(self, text: str) -> bool:
        if not self.is_configured:
            logger.debug("Telegram not configured, skipping notification")
            return False

        if not self._can_send():
            self._stats["rate_limited"] += 1
            logger.warning("Telegram notification rate limited")
            return False

        try:
            if self._session is None:
                self._session = aiohttp.ClientSession()

            url = f"https://api.telegram.org/bot{self._bot_token}/sendMessage"
            payload = {
                "chat_id": self._chat_id,
                "text": text,
                "parse_mode": "HTML",
            }

            async with self._session.post(url, json=payload) as response:
                if response.status == 200:
                    self._record_sent()
                    return True
                body = await response.text()
                self._stats["failed"] += 1
                logger.error(f"Telegram API error {response.status}: {body}")
                return False

        except aiohttp.ClientError as e:
            self._stats["failed"] += 1
            logger.error(f"Failed to send Telegram notification: {e}")
            return False

    def _format_notification(self, notification: Notification) -> str:
        emoji = KIND_EMOJI.get(notification.kind, "📢")
        title = html.escape(notification.title)
        lines = [
            f"{emoji} <b>{title}</b>",
            f"<b>Time:</b> {notification.timestamp.strftime('%Y-%m-%d %H:%M:%S')} UTC",
            "",
            html.escape(notification.message),
        ]

        position_id = notification.payload.get("position_id")
        if position_id:
            lines.append(f"\n<b>Position:</b> <code>{html.escape(position_id)}</code>")
        if notification.is_admin_action:
            lines.append("<i>Administrative action</i>")

        return "\n".join(lines)

    def _can_send(self) -> bool:
        """Check if we can send (rate limiting)."""
        now = datetime.now(timezone.utc)

        if self._last_sent:
            elapsed = (now - self._last_sent).total_seconds()
            if elapsed < self._config.min_interval_seconds:
                return False

        minute_ago = now - timedelta(minutes=1)
        self._sent_this_minute = [t for t in self._sent_this_minute if t > minute_ago]
        return len(self._sent_this_minute) < self._config.max_alerts_per_minute

    def _record_sent(self) -> None:
        now = datetime.now(timezone.utc)
        self._last_sent = now
        self._sent_this_minute.append(now)
        self._stats["sent"] += 1

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None
