"""Operator alerts delivered to a Telegram chat."""

from typing import Optional

import httpx

from evogate.config import Settings
from evogate.logging_config import get_logger

logger = get_logger("alert_service")

EMOJI = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}


class AlertService:
    def __init__(self, bot_token: Optional[str], chat_id: Optional[str], timeout: float = 10.0):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "AlertService":
        return cls(settings.alert_bot_token, settings.alert_chat_id)

    @property
    def configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    async def send_alert(self, level: str, message: str, context: Optional[dict] = None) -> bool:
        """Send alert to Telegram.

        Args:
            level: INFO, WARNING, ERROR, CRITICAL
            message: Alert message
            context: Optional context dict

        Returns:
            True if sent successfully
        """
        if not self.configured:
            logger.warning(f"Alert not configured: {level} - {message}", extra={"context": context or {}})
            return False

        text = f"{EMOJI.get(level, '📢')} *{level}*\n\n{message}"
        if context:
            context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
            text += f"\n\n```\n{context_str}\n```"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"https://api.telegram.org/bot{self.bot_token}/sendMessage",
                    json={"chat_id": self.chat_id, "text": text, "parse_mode": "Markdown"},
                )
                return response.status_code == 200
        except Exception as e:
            logger.error(f"Failed to send alert: {e}")
            return False

    async def alert_error(self, message: str, context: Optional[dict] = None) -> bool:
        return await self.send_alert("ERROR", message, context)

    async def alert_critical(self, message: str, context: Optional[dict] = None) -> bool:
        return await self.send_alert("CRITICAL", message, context)

    async def alert_warning(self, message: str, context: Optional[dict] = None) -> bool:
        return await self.send_alert("WARNING", message, context)
