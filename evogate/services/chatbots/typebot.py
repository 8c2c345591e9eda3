from typing import Any, Optional

import httpx

from evogate.errors import ChatbotBackendError
from evogate.logging_config import get_logger
from evogate.services.chatbots.base import BotTurn, post_json
from evogate.services.settings_service import ChatbotConfig

logger = get_logger("chatbots.typebot")

_MARKS = (("bold", "*"), ("italic", "_"), ("strikethrough", "~"))


def _render_node(node: Any) -> str:
    if not isinstance(node, dict):
        return ""
    if "text" in node:
        text = str(node.get("text") or "")
        if text.strip():
            for mark, delimiter in _MARKS:
                if node.get(mark):
                    text = f"{delimiter}{text}{delimiter}"
        return text
    children = "".join(_render_node(child) for child in node.get("children") or [])
    if node.get("type") == "a" and node.get("url"):
        return f"{children} ({node['url']})" if children else node["url"]
    return children


def render_rich_text(blocks: list) -> str:
    """Typebot rich text blocks -> WhatsApp-formatted text, one line per block."""
    return "\n".join(_render_node(block) for block in blocks or []).strip()


def _replies(data: dict) -> tuple[str, ...]:
    replies = []
    for message in data.get("messages") or []:
        if message.get("type") != "text":
            continue
        content = message.get("content") or {}
        text = render_rich_text(content.get("richText") or [])
        if not text and isinstance(content.get("markdown"), str):
            text = content["markdown"].strip()
        if text:
            replies.append(text)
    return tuple(replies)


class TypebotBackend:
    """Typebot chat API (startChat / continueChat)."""

    kind = "typebot"

    def __init__(self, config: ChatbotConfig, client: httpx.AsyncClient, timeout: Optional[float] = None):
        if not config.bot_id:
            raise ValueError("typebot integration requires bot_id (the public typebot id)")
        self.config = config
        self.client = client
        self.timeout = timeout
        self.base_url = config.api_url.rstrip("/")

    def _headers(self) -> Optional[dict]:
        if self.config.api_key:
            return {"Authorization": f"Bearer {self.config.api_key}"}
        return None

    async def start_conversation(self, instance: str, remote_jid: str, text: str, *, push_name=None) -> BotTurn:
        payload = {
            "message": {"type": "text", "text": text},
            "prefilledVariables": {
                "remoteJid": remote_jid,
                "pushName": push_name or "",
                "instanceName": instance,
            },
        }
        data = await post_json(
            self.client,
            self.kind,
            f"{self.base_url}/api/v1/typebots/{self.config.bot_id}/startChat",
            payload,
            headers=self._headers(),
            timeout=self.timeout,
        )
        session_id = data.get("sessionId") if isinstance(data, dict) else None
        if not session_id:
            raise ChatbotBackendError(self.kind, "startChat returned no sessionId")

        logger.info(f"Typebot session started: {session_id}", extra={"context": {"instance": instance}})
        return BotTurn(session_ref=str(session_id), replies=_replies(data), awaiting_user=bool(data.get("input")))

    async def continue_conversation(self, session_ref: str, text: str) -> BotTurn:
        data = await post_json(
            self.client,
            self.kind,
            f"{self.base_url}/api/v1/sessions/{session_ref}/continueChat",
            {"message": {"type": "text", "text": text}},
            headers=self._headers(),
            timeout=self.timeout,
        )
        data = data if isinstance(data, dict) else {}
        return BotTurn(session_ref=session_ref, replies=_replies(data), awaiting_user=bool(data.get("input")))

    async def close_conversation(self, session_ref: str) -> None:
        # Typebot sessions end on their own; nothing to release remotely.
        return None
