from typing import Optional

import httpx

from evogate.services.chatbots.base import BotTurn, ChatbotBackend
from evogate.services.chatbots.chatwoot import ChatwootBackend
from evogate.services.chatbots.n8n import N8nBackend
from evogate.services.chatbots.typebot import TypebotBackend
from evogate.services.settings_service import ChatbotConfig

BACKENDS = {
    TypebotBackend.kind: TypebotBackend,
    N8nBackend.kind: N8nBackend,
    ChatwootBackend.kind: ChatwootBackend,
}


def build_backend(config: ChatbotConfig, client: httpx.AsyncClient, timeout: Optional[float] = None) -> ChatbotBackend:
    """Pick the backend implementation registered for the integration kind."""
    try:
        backend_cls = BACKENDS[config.kind]
    except KeyError:
        raise ValueError(f"Unknown chatbot integration: {config.kind}") from None
    return backend_cls(config, client, timeout=timeout)


__all__ = ["BACKENDS", "BotTurn", "ChatbotBackend", "build_backend"]
