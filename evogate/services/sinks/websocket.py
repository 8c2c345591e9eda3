from collections import defaultdict

from fastapi import WebSocket

from evogate.logging_config import get_logger
from evogate.services.event_service import RoutedEvent
from evogate.services.sinks.base import DeliveryResult

logger = get_logger("websocket")


class ConnectionManager:
    """Live websocket consumers grouped by instance."""

    def __init__(self):
        self._connections: dict[str, list[WebSocket]] = defaultdict(list)

    async def connect(self, instance: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections[instance].append(websocket)
        logger.info(f"Websocket consumer connected for {instance}", extra={"context": {"total": self.count(instance)}})

    def disconnect(self, instance: str, websocket: WebSocket) -> None:
        connections = self._connections.get(instance)
        if not connections:
            return
        if websocket in connections:
            connections.remove(websocket)
        if not connections:
            del self._connections[instance]
        logger.info(f"Websocket consumer disconnected for {instance}")

    def count(self, instance: str) -> int:
        return len(self._connections.get(instance, ()))

    async def broadcast(self, instance: str, message: dict) -> tuple[int, int]:
        """Send to every consumer of the instance; returns (sent, dropped)."""
        sent = 0
        disconnected: list[WebSocket] = []
        for websocket in list(self._connections.get(instance, ())):
            try:
                await websocket.send_json(message)
                sent += 1
            except Exception as exc:
                logger.warning(f"Dropping websocket consumer for {instance}: {exc}")
                disconnected.append(websocket)
        for websocket in disconnected:
            self.disconnect(instance, websocket)
        return sent, len(disconnected)


class WebsocketSink:
    """Push the event to connected consumers. At most once, no retries."""

    name = "websocket"

    def __init__(self, manager: ConnectionManager):
        self.manager = manager

    async def deliver(self, event: RoutedEvent) -> DeliveryResult:
        sent, dropped = await self.manager.broadcast(event.instance, event.to_dict())
        if dropped and not sent:
            return DeliveryResult(self.name, False, detail=f"all {dropped} consumers failed")
        return DeliveryResult(self.name, True, detail=f"sent to {sent} consumers")
