import asyncio
import time

from sqlalchemy.exc import SQLAlchemyError

from evogate.errors import GatewayError
from evogate.logging_config import get_logger
from evogate.services.coordinator import ChatbotCoordinator, TurnAction, TurnResult
from evogate.services.event_service import EventKind, RoutedEvent
from evogate.services.settings_service import ChatbotConfig
from evogate.services.sinks.base import DeliveryResult
from evogate.services.transport_service import TransportClient

logger = get_logger("chatbot_sink")


class ChatbotSink:
    """Route inbound messages to every enabled chatbot integration of the instance."""

    name = "chatbot"

    def __init__(self, coordinator: ChatbotCoordinator, settings_repo, transport: TransportClient):
        self.coordinator = coordinator
        self.settings_repo = settings_repo
        self.transport = transport

    async def _route(self, event: RoutedEvent, config: ChatbotConfig) -> TurnResult:
        result = await self.coordinator.handle_inbound(event, config)
        if result.replies:
            await self.transport.send_replies(event.instance, event.remote_jid, result.replies)
        return result

    def _as_result(self, config: ChatbotConfig, outcome) -> TurnResult:
        if not isinstance(outcome, BaseException):
            return outcome
        if not isinstance(outcome, Exception):
            raise outcome
        logger.error(
            f"{config.kind} routing failed: {outcome!r}",
            extra={"context": {"kind": config.kind}},
        )
        code = outcome.code if isinstance(outcome, GatewayError) else "internal_error"
        return TurnResult(config.kind, TurnAction.FAILED, ok=False, error=str(outcome), error_code=code)

    async def deliver(self, event: RoutedEvent) -> DeliveryResult:
        if event.kind != EventKind.MESSAGES_UPSERT:
            return DeliveryResult(self.name, True, detail="not an inbound message", attempts=0)
        if not event.routable:
            logger.warning(
                "Unroutable message dropped from chatbot routing",
                extra={"context": {"instance": event.instance, "event_id": event.event_id}},
            )
            return DeliveryResult(self.name, False, detail="unroutable", attempts=0)

        started = time.monotonic()
        try:
            configs = self.settings_repo.chatbots(event.instance)
        except SQLAlchemyError as exc:
            logger.error(f"Chatbot settings unavailable: {exc}", extra={"context": {"instance": event.instance}})
            return DeliveryResult(self.name, False, detail="store_unavailable")

        if not configs:
            return DeliveryResult(self.name, True, detail="no chatbot integrations", attempts=0)

        outcomes = await asyncio.gather(
            *(self._route(event, config) for config in configs), return_exceptions=True
        )
        results = [self._as_result(config, outcome) for config, outcome in zip(configs, outcomes)]
        failures = [result for result in results if not result.ok]
        detail = ", ".join(
            f"{result.kind}:{result.error_code or result.action.value}" for result in results
        )
        return DeliveryResult(
            self.name, not failures, detail=detail, elapsed_ms=(time.monotonic() - started) * 1000
        )
