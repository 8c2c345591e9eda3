from dataclasses import dataclass
from typing import Any, Optional

import httpx

from evogate.config import Settings
from evogate.services.settings_service import SinkSettings
from evogate.services.sinks.base import DeliveryResult, Sink
from evogate.services.sinks.chatbot import ChatbotSink
from evogate.services.sinks.queue import QueueSink
from evogate.services.sinks.webhook import WebhookSink
from evogate.services.sinks.websocket import ConnectionManager, WebsocketSink


@dataclass
class SinkDependencies:
    settings: Settings
    http_client: httpx.AsyncClient
    connections: ConnectionManager
    redis: Optional[Any] = None
    chatbot_sink: Optional[ChatbotSink] = None


def build_sink(config: SinkSettings, deps: SinkDependencies) -> Sink:
    """Instantiate the adapter for a sink configuration. Raises ValueError for unknown kinds."""
    if config.kind == WebhookSink.name:
        return WebhookSink(
            config,
            deps.http_client,
            timeout=deps.settings.webhook_timeout_seconds,
            max_retries=deps.settings.default_max_retries,
            backoff_ms=deps.settings.default_backoff_ms,
        )
    if config.kind == WebsocketSink.name:
        return WebsocketSink(deps.connections)
    if config.kind == QueueSink.name:
        return QueueSink(
            config,
            deps.redis,
            prefix=deps.settings.queue_prefix,
            attempt_timeout=deps.settings.webhook_timeout_seconds,
            max_retries=deps.settings.default_max_retries,
            backoff_ms=deps.settings.default_backoff_ms,
        )
    if config.kind == ChatbotSink.name:
        if deps.chatbot_sink is None:
            raise ValueError("Chatbot sink requested but chatbot routing is not configured")
        return deps.chatbot_sink
    raise ValueError(f"Unknown sink kind: {config.kind}")


__all__ = [
    "ChatbotSink",
    "ConnectionManager",
    "DeliveryResult",
    "QueueSink",
    "Sink",
    "SinkDependencies",
    "WebhookSink",
    "WebsocketSink",
    "build_sink",
]
