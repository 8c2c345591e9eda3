import json

import httpx

from evogate.errors import SinkDeliveryError
from evogate.services.event_service import RoutedEvent
from evogate.services.settings_service import SinkSettings
from evogate.services.sinks.base import DeliveryResult, deliver_with_retries, retry_budget


class WebhookSink:
    """POST the event envelope to the configured URL."""

    name = "webhook"

    def __init__(
        self,
        settings: SinkSettings,
        client: httpx.AsyncClient,
        *,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_ms: int = 500,
    ):
        self.settings = settings
        self.client = client
        self.timeout = timeout
        self.max_retries = settings.max_retries if settings.max_retries is not None else max_retries
        self.backoff_ms = settings.backoff_ms if settings.backoff_ms is not None else backoff_ms

    @property
    def max_duration(self) -> float:
        return retry_budget(self.timeout, self.max_retries, self.backoff_ms)

    def target_url(self, event: RoutedEvent) -> str:
        url = (self.settings.url or "").rstrip("/")
        if self.settings.by_events:
            return f"{url}/{event.kind.path_suffix}"
        return url

    async def deliver(self, event: RoutedEvent) -> DeliveryResult:
        if not self.settings.url:
            return DeliveryResult(self.name, False, detail="webhook url not configured", attempts=0)

        url = self.target_url(event)
        body = json.dumps(event.to_dict(), default=str)
        headers = {"Content-Type": "application/json", **dict(self.settings.headers)}

        async def attempt():
            try:
                response = await self.client.post(url, content=body, headers=headers, timeout=self.timeout)
            except httpx.HTTPError as exc:
                raise SinkDeliveryError(self.name, f"request failed: {exc}") from exc
            if not 200 <= response.status_code < 300:
                raise SinkDeliveryError(self.name, f"HTTP {response.status_code}", status_code=response.status_code)
            return f"HTTP {response.status_code}"

        return await deliver_with_retries(
            self.name, attempt, max_retries=self.max_retries, backoff_ms=self.backoff_ms
        )
