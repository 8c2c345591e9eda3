from typing import Optional

import httpx

from evogate.config import Settings
from evogate.logging_config import get_logger

logger = get_logger("transport_service")


class TransportClient:
    """Outbound calls to the WhatsApp transport."""

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str],
        client: httpx.AsyncClient,
        timeout: float = 30.0,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.client = client
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient) -> "TransportClient":
        return cls(settings.transport_url, settings.transport_api_key, client)

    async def send_text(self, instance: str, remote_jid: str, text: str, *, delay_ms: int = 0) -> bool:
        """Send a text message. Failures are logged and reported as False."""
        if not self.base_url:
            logger.error("Transport URL is missing (TRANSPORT_URL env var not set)")
            return False

        if not instance or not remote_jid or not text:
            logger.warning(f"send_text: missing instance={instance} or remote_jid={remote_jid} or text")
            return False

        payload = {"number": remote_jid, "text": text}
        if delay_ms:
            payload["delay"] = delay_ms
        headers = {"apikey": self.api_key} if self.api_key else None

        try:
            response = await self.client.post(
                f"{self.base_url}/message/sendText/{instance}",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.error(f"Error sending WhatsApp message: {e}", extra={"context": {"instance": instance}})
            return False

        logger.info(
            f"Transport response: status={response.status_code}, jid={remote_jid}, body={response.text[:200]}"
        )
        return 200 <= response.status_code < 300

    async def send_replies(self, instance: str, remote_jid: str, replies) -> int:
        """Send replies in order and return how many were delivered."""
        sent = 0
        for reply in replies:
            if await self.send_text(instance, remote_jid, reply):
                sent += 1
            else:
                logger.warning(f"Failed to deliver reply via transport: jid={remote_jid}, instance={instance}")
        return sent
