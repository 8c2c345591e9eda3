"""Fan-out of routed events to the sinks configured for an instance.

Each sink runs concurrently and is bounded by the dispatch timeout, or by the
sink's retry budget (``max_duration``) when that is longer. A sink that
raises or times out yields a failed DeliveryResult for itself only;
the dispatcher never retries (retry is the webhook and queue adapters' job).
"""

import asyncio
import time
from collections import defaultdict
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from evogate.errors import InstanceClosedError, SessionStoreUnavailableError
from evogate.logging_config import get_logger
from evogate.services.event_service import RoutedEvent
from evogate.services.settings_service import SinkSettings
from evogate.services.sinks.base import DeliveryResult, Sink

logger = get_logger("dispatcher")


class EventDispatcher:
    def __init__(
        self,
        settings_source: Callable[[str], list[SinkSettings]],
        sink_factory: Callable[[SinkSettings], Sink],
        *,
        timeout: float = 15.0,
    ):
        self.settings_source = settings_source
        self.sink_factory = sink_factory
        self.timeout = timeout
        self._closed: set[str] = set()
        self._inflight: dict[str, set[asyncio.Task]] = defaultdict(set)

    def accepts(self, instance: str) -> bool:
        return instance not in self._closed

    async def dispatch(self, instance: str, event: RoutedEvent) -> list[DeliveryResult]:
        """Deliver the event to every subscribed sink. Raises InstanceClosedError."""
        if not self.accepts(instance):
            raise InstanceClosedError(f"Instance {instance} is closed")

        try:
            configs = self.settings_source(instance)
        except SQLAlchemyError as exc:
            logger.error(f"Sink settings unavailable for {instance}: {exc}")
            raise SessionStoreUnavailableError(str(exc)) from exc

        targets = []
        results: list[DeliveryResult] = []
        for config in configs:
            if not config.subscribes(event.kind.value):
                continue
            try:
                targets.append((config.kind, self.sink_factory(config)))
            except ValueError as exc:
                logger.warning(f"Skipping sink {config.kind} for {instance}: {exc}")
                results.append(DeliveryResult(config.kind, False, detail=str(exc), attempts=0))

        if not targets:
            return results

        task = asyncio.current_task()
        if task is not None:
            self._inflight[instance].add(task)
        try:
            delivered = await asyncio.gather(*(self._deliver_one(name, sink, event) for name, sink in targets))
        finally:
            if task is not None:
                self._inflight[instance].discard(task)
                if not self._inflight[instance]:
                    del self._inflight[instance]

        results.extend(delivered)
        return results

    def bound_for(self, sink: Sink) -> float:
        """Time allowed for one sink: the dispatch timeout, stretched to cover the sink's own retry budget."""
        budget = getattr(sink, "max_duration", None)
        return max(self.timeout, budget) if budget else self.timeout

    async def _deliver_one(self, name: str, sink: Sink, event: RoutedEvent) -> DeliveryResult:
        started = time.monotonic()
        bound = self.bound_for(sink)
        try:
            result = await asyncio.wait_for(sink.deliver(event), timeout=bound)
        except asyncio.TimeoutError:
            result = DeliveryResult(
                name, False, detail=f"timeout after {bound}s", elapsed_ms=(time.monotonic() - started) * 1000
            )
        except Exception as exc:
            # any sink failure stays local to that sink
            result = DeliveryResult(
                name, False, detail=f"{type(exc).__name__}: {exc}", elapsed_ms=(time.monotonic() - started) * 1000
            )

        context = {
            "instance": event.instance,
            "event": event.kind.value,
            "event_id": event.event_id,
            "sink": result.sink,
            "ok": result.ok,
            "attempts": result.attempts,
            "elapsed_ms": round(result.elapsed_ms, 1),
            "detail": result.detail,
        }
        if result.ok:
            logger.info("Sink delivery", extra={"context": context})
        else:
            logger.warning("Sink delivery failed", extra={"context": context})
        return result

    async def close_instance(self, instance: str, *, drain_timeout: Optional[float] = None) -> None:
        """Reject new events for the instance and wait for in-flight ones."""
        self._closed.add(instance)
        current = asyncio.current_task()
        pending = [task for task in self._inflight.get(instance, ()) if task is not current]
        if not pending:
            return
        logger.info(f"Draining {len(pending)} in-flight dispatches for {instance}")
        _, still_running = await asyncio.wait(pending, timeout=drain_timeout or self.timeout)
        if still_running:
            logger.warning(f"{len(still_running)} dispatches still running after drain for {instance}")

    def reopen_instance(self, instance: str) -> None:
        self._closed.discard(instance)
