import uuid
from typing import Optional

import httpx

from evogate.services.chatbots.base import BotTurn, post_json
from evogate.services.settings_service import ChatbotConfig


def _extract_output(data) -> tuple[str, ...]:
    if isinstance(data, list):
        data = data[0] if data else {}
    if not isinstance(data, dict):
        return ()
    output = data.get("output") or data.get("answer") or data.get("message")
    if isinstance(output, str) and output.strip():
        return (output.strip(),)
    if isinstance(output, list):
        return tuple(str(item).strip() for item in output if str(item).strip())
    return ()


class N8nBackend:
    """Webhook-driven bot: every turn is one POST to the workflow URL."""

    kind = "n8n"

    def __init__(self, config: ChatbotConfig, client: httpx.AsyncClient, timeout: Optional[float] = None):
        self.config = config
        self.client = client
        self.timeout = timeout

    def _headers(self) -> Optional[dict]:
        if self.config.api_key:
            return {"Authorization": f"Bearer {self.config.api_key}"}
        return None

    async def _turn(self, session_ref: str, text: str, extra: Optional[dict] = None) -> BotTurn:
        payload = {"sessionId": session_ref, "chatInput": text}
        if extra:
            payload.update(extra)
        data = await post_json(
            self.client, self.kind, self.config.api_url, payload, headers=self._headers(), timeout=self.timeout
        )
        return BotTurn(session_ref=session_ref, replies=_extract_output(data))

    async def start_conversation(self, instance: str, remote_jid: str, text: str, *, push_name=None) -> BotTurn:
        session_ref = f"{remote_jid}-{uuid.uuid4().hex[:12]}"
        return await self._turn(
            session_ref,
            text,
            {"remoteJid": remote_jid, "instanceName": instance, "pushName": push_name or ""},
        )

    async def continue_conversation(self, session_ref: str, text: str) -> BotTurn:
        return await self._turn(session_ref, text)

    async def close_conversation(self, session_ref: str) -> None:
        return None
