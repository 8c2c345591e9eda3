import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

from evogate.errors import SinkDeliveryError
from evogate.logging_config import get_logger
from evogate.services.event_service import RoutedEvent

logger = get_logger("sinks")


@dataclass(frozen=True)
class DeliveryResult:
    sink: str
    ok: bool
    detail: Optional[str] = None
    attempts: int = 1
    elapsed_ms: float = 0.0


class Sink(Protocol):
    name: str

    async def deliver(self, event: RoutedEvent) -> DeliveryResult: ...


def backoff_delay(backoff_ms: int, attempt: int) -> float:
    """Seconds to wait before retry number ``attempt`` (1-based)."""
    return (backoff_ms / 1000.0) * (2 ** max(attempt - 1, 0))


def retry_budget(attempt_timeout: float, max_retries: int, backoff_ms: int) -> float:
    """Longest a ``deliver_with_retries`` run can take: every attempt times out and every backoff is slept."""
    backoff = sum(backoff_delay(backoff_ms, attempt) for attempt in range(1, max_retries + 1))
    return (max_retries + 1) * attempt_timeout + backoff


async def deliver_with_retries(
    sink: str,
    operation: Callable[[], Awaitable[Optional[str]]],
    *,
    max_retries: int,
    backoff_ms: int,
) -> DeliveryResult:
    """Run ``operation`` until it succeeds or retries run out.

    ``operation`` raises SinkDeliveryError on a failed attempt and may return a
    detail string on success.
    """
    started = time.monotonic()
    attempts = 0
    last_error: Optional[str] = None
    while attempts <= max_retries:
        attempts += 1
        try:
            detail = await operation()
            return DeliveryResult(
                sink, True, detail=detail, attempts=attempts, elapsed_ms=(time.monotonic() - started) * 1000
            )
        except SinkDeliveryError as exc:
            last_error = str(exc)
            logger.warning(
                f"{sink} delivery attempt {attempts} failed: {exc}",
                extra={"context": {"sink": sink, "attempt": attempts, "status_code": exc.status_code}},
            )
        if attempts <= max_retries:
            await asyncio.sleep(backoff_delay(backoff_ms, attempts))

    return DeliveryResult(
        sink, False, detail=last_error, attempts=attempts, elapsed_ms=(time.monotonic() - started) * 1000
    )
