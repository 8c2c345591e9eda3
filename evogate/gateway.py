"""Wiring of the long-lived runtime objects shared by all requests."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Optional

import httpx
import redis.asyncio as redis_async
from fastapi import Request

from evogate.config import Settings
from evogate.database import SessionLocal
from evogate.logging_config import get_logger
from evogate.services.alert_service import AlertService
from evogate.services.chatbots import build_backend
from evogate.services.coordinator import ChatbotCoordinator
from evogate.services.dispatcher import EventDispatcher
from evogate.services.health_service import check_session_invariants
from evogate.services.instance_service import expire_disconnected_instances
from evogate.services.session_store import SqlSessionStore
from evogate.services.settings_service import SettingsRepository
from evogate.services.sinks import ChatbotSink, ConnectionManager, SinkDependencies, build_sink
from evogate.services.transport_service import TransportClient

logger = get_logger("gateway")


@dataclass
class Gateway:
    settings: Settings
    session_factory: Any
    store: SqlSessionStore
    settings_repo: SettingsRepository
    http_client: httpx.AsyncClient
    redis: Optional[Any]
    alerts: AlertService
    connections: ConnectionManager
    transport: TransportClient
    coordinator: ChatbotCoordinator
    dispatcher: EventDispatcher

    async def close_instance(self, instance: str) -> None:
        self.coordinator.close_instance(instance)
        await self.dispatcher.close_instance(instance)

    def reopen_instance(self, instance: str) -> None:
        self.coordinator.reopen_instance(instance)
        self.dispatcher.reopen_instance(instance)

    async def sweep(self, now: Optional[datetime] = None) -> dict:
        """One pass of session expiry, closed-session retention, instance expiry and invariant repair."""
        now = now or datetime.now(timezone.utc)
        expired_sessions = await self.coordinator.expire_sessions(now, config_lookup=self.settings_repo.chatbot)
        purged = self.store.purge_closed(now - timedelta(minutes=self.settings.session_retention_minutes))

        expired_instances = []
        closed_sessions = 0
        if self.settings.instance_expire_minutes > 0:
            db = self.session_factory()
            try:
                expired_instances = expire_disconnected_instances(db, self.settings.instance_expire_minutes, now)
                db.commit()
            finally:
                db.close()
            for name in expired_instances:
                await self.close_instance(name)
                closed = await self.coordinator.close_instance_sessions(name, config_lookup=self.settings_repo.chatbot)
                closed_sessions += len(closed)
            if expired_instances:
                await self.alerts.alert_warning(
                    "Instances expired", {"instances": ", ".join(expired_instances), "closed_sessions": closed_sessions}
                )

        db = self.session_factory()
        try:
            invariants = check_session_invariants(db, heal=True)
        finally:
            db.close()

        return {
            "expired_sessions": len(expired_sessions),
            "purged_sessions": purged,
            "expired_instances": expired_instances,
            "closed_sessions": closed_sessions,
            "healed_issues": invariants["issue_count"],
        }

    async def aclose(self) -> None:
        await self.http_client.aclose()
        if self.redis is not None:
            await self.redis.aclose()


def build_gateway(
    settings: Settings,
    session_factory=SessionLocal,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    redis_client: Optional[Any] = None,
    alerts: Optional[AlertService] = None,
) -> Gateway:
    http_client = http_client or httpx.AsyncClient(timeout=settings.webhook_timeout_seconds)
    if redis_client is None and settings.redis_url:
        redis_client = redis_async.from_url(settings.redis_url, socket_timeout=settings.webhook_timeout_seconds)
    alerts = alerts or AlertService.from_settings(settings)

    store = SqlSessionStore(session_factory)
    settings_repo = SettingsRepository(session_factory)
    connections = ConnectionManager()
    transport = TransportClient.from_settings(settings, http_client)
    coordinator = ChatbotCoordinator(
        store,
        partial(build_backend, client=http_client, timeout=settings.chatbot_timeout_seconds),
        alerts=alerts,
    )
    deps = SinkDependencies(
        settings=settings,
        http_client=http_client,
        connections=connections,
        redis=redis_client,
        chatbot_sink=ChatbotSink(coordinator, settings_repo, transport),
    )
    dispatcher = EventDispatcher(
        settings_repo.sinks,
        partial(build_sink, deps=deps),
        timeout=settings.dispatch_timeout_seconds,
    )
    logger.info("Gateway built", extra={"context": {"transport_url": settings.transport_url}})
    return Gateway(
        settings=settings,
        session_factory=session_factory,
        store=store,
        settings_repo=settings_repo,
        http_client=http_client,
        redis=redis_client,
        alerts=alerts,
        connections=connections,
        transport=transport,
        coordinator=coordinator,
        dispatcher=dispatcher,
    )


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway
