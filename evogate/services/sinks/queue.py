import json
from typing import Optional

from redis.exceptions import RedisError

from evogate.errors import SinkDeliveryError
from evogate.services.event_service import RoutedEvent
from evogate.services.settings_service import SinkSettings
from evogate.services.sinks.base import DeliveryResult, deliver_with_retries, retry_budget


class QueueSink:
    """Append the event envelope to a Redis list consumers pop from."""

    name = "queue"

    def __init__(
        self,
        settings: SinkSettings,
        redis_client,
        *,
        prefix: str = "evogate",
        attempt_timeout: Optional[float] = None,
        max_retries: int = 3,
        backoff_ms: int = 500,
    ):
        self.settings = settings
        self.redis = redis_client
        self.prefix = prefix
        self.attempt_timeout = attempt_timeout
        self.max_retries = settings.max_retries if settings.max_retries is not None else max_retries
        self.backoff_ms = settings.backoff_ms if settings.backoff_ms is not None else backoff_ms

    @property
    def max_duration(self) -> Optional[float]:
        if self.attempt_timeout is None:
            return None
        return retry_budget(self.attempt_timeout, self.max_retries, self.backoff_ms)

    def queue_key(self, event: RoutedEvent) -> str:
        return f"{self.prefix}:{self.settings.topic or event.instance}"

    async def deliver(self, event: RoutedEvent) -> DeliveryResult:
        if self.redis is None:
            return DeliveryResult(self.name, False, detail="queue broker not configured", attempts=0)

        key = self.queue_key(event)
        body = json.dumps(event.to_dict(), default=str)

        async def attempt():
            try:
                length = await self.redis.rpush(key, body)
            except (RedisError, OSError) as exc:
                raise SinkDeliveryError(self.name, f"broker error: {exc}") from exc
            return f"{key} length={length}"

        return await deliver_with_retries(
            self.name, attempt, max_retries=self.max_retries, backoff_ms=self.backoff_ms
        )
