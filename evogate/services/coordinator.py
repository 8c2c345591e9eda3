"""Chatbot session coordination.

Per (instance, remote_jid, kind) the coordinator decides whether an inbound
message resumes the open session, starts a new one or is ignored. All work
for one key runs under that key's lock, so the find-or-create decision is
race-free inside the process; the store's unique index covers other
processes and a lost race joins the winning session.

States: NONE (no record) -> OPEN (``opened`` / ``paused``) -> CLOSED.
CLOSED is terminal; the next message after a close starts a new session.
An OPEN session with an empty external ref (finish keyword with keep_open)
starts a fresh backend conversation inside the same session on its next turn.
"""

import asyncio
import re
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from evogate.errors import ChatbotBackendError, SessionConflictError, SessionStoreUnavailableError
from evogate.logging_config import get_logger
from evogate.services.alert_service import AlertService
from evogate.services.chatbots.base import ChatbotBackend
from evogate.services.event_service import RoutedEvent
from evogate.services.identifier_service import GROUP_SUFFIX, USER_SUFFIX
from evogate.services.locks import KeyedLock
from evogate.services.session_store import SessionRecord, SessionStore
from evogate.services.settings_service import ChatbotConfig
from evogate.services.state_machine import SessionStatus

logger = get_logger("coordinator")


class TurnAction(str, Enum):
    STARTED = "started"
    CONTINUED = "continued"
    JOINED = "joined"
    CLOSED = "closed"
    PAUSED = "paused"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    UNROUTABLE = "unroutable"
    FAILED = "failed"


@dataclass(frozen=True)
class TurnResult:
    kind: str
    action: TurnAction
    ok: bool = True
    session: Optional[SessionRecord] = None
    replies: tuple[str, ...] = ()
    reason: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def session_ref(self) -> Optional[str]:
        return self.session.session_ref if self.session else None


def matches_trigger(config: ChatbotConfig, text: str) -> bool:
    """Whether an inbound text may start a new session for this integration."""
    if config.trigger_type == "all":
        return True
    if config.trigger_type != "keyword" or not config.trigger_value:
        return False

    value = config.trigger_value.strip()
    candidate = text.strip()
    operator = config.trigger_operator
    if operator == "regex":
        try:
            return re.search(value, candidate) is not None
        except re.error:
            logger.warning(f"Invalid trigger regex: {value}")
            return False

    value = value.lower()
    candidate = candidate.lower()
    if operator == "equals":
        return candidate == value
    if operator == "contains":
        return value in candidate
    if operator == "starts_with":
        return candidate.startswith(value)
    if operator == "ends_with":
        return candidate.endswith(value)
    return False


def is_ignored_jid(remote_jid: str, ignore_jids) -> bool:
    for entry in ignore_jids or ():
        if entry == remote_jid:
            return True
        if entry == GROUP_SUFFIX and remote_jid.endswith(GROUP_SUFFIX):
            return True
        if entry == USER_SUFFIX and remote_jid.endswith(USER_SUFFIX):
            return True
    return False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatbotCoordinator:
    def __init__(
        self,
        store: SessionStore,
        backend_factory: Callable[[ChatbotConfig], ChatbotBackend],
        *,
        alerts: Optional[AlertService] = None,
        clock: Callable[[], datetime] = _utcnow,
        dedup_window: int = 4096,
    ):
        self.store = store
        self.backend_factory = backend_factory
        self.alerts = alerts
        self.clock = clock
        self.locks = KeyedLock()
        self._dedup_window = dedup_window
        self._recent: OrderedDict = OrderedDict()
        self._closed_instances: set[str] = set()
        self._background: set[asyncio.Task] = set()

    # -- duplicate suppression -------------------------------------------

    def _already_seen(self, key: tuple, message_id: str) -> bool:
        return (key, message_id) in self._recent

    def _remember(self, key: tuple, message_id: str) -> None:
        self._recent[(key, message_id)] = True
        while len(self._recent) > self._dedup_window:
            self._recent.popitem(last=False)

    # -- instance lifecycle ----------------------------------------------

    def close_instance(self, instance: str) -> None:
        """Stop starting or continuing turns for this instance."""
        self._closed_instances.add(instance)

    def reopen_instance(self, instance: str) -> None:
        self._closed_instances.discard(instance)

    def accepts(self, instance: str) -> bool:
        return instance not in self._closed_instances

    def _backend_for(self, config: ChatbotConfig) -> Optional[ChatbotBackend]:
        try:
            return self.backend_factory(config)
        except ValueError as exc:
            logger.error(f"Cannot build {config.kind} backend: {exc}")
            return None

    # -- inbound turns ---------------------------------------------------

    async def handle_inbound(self, event: RoutedEvent, config: ChatbotConfig) -> TurnResult:
        if not event.routable:
            logger.warning(
                "Unroutable event skipped for chatbot routing",
                extra={"context": {"instance": event.instance, "kind": config.kind, "event_id": event.event_id}},
            )
            return TurnResult(
                config.kind, TurnAction.UNROUTABLE, ok=False, error="no participant identifier", error_code="unroutable"
            )
        if not self.accepts(event.instance):
            return TurnResult(config.kind, TurnAction.IGNORED, reason="instance_closed")
        if not config.enabled:
            return TurnResult(config.kind, TurnAction.IGNORED, reason="disabled")
        if is_ignored_jid(event.remote_jid, config.ignore_jids):
            return TurnResult(config.kind, TurnAction.IGNORED, reason="ignored_jid")

        backend = self._backend_for(config)
        if backend is None:
            return TurnResult(
                config.kind, TurnAction.FAILED, ok=False, error="backend misconfigured", error_code="chatbot_backend_error"
            )

        key = (event.instance, event.remote_jid, config.kind)
        async with self.locks.hold(key):
            try:
                return await self._handle_locked(key, event, config, backend)
            except SessionStoreUnavailableError as exc:
                logger.error(
                    "Session store unavailable, chatbot routing skipped",
                    extra={"context": {"instance": event.instance, "kind": config.kind, "error": str(exc)}},
                )
                return TurnResult(
                    config.kind, TurnAction.FAILED, ok=False, error=str(exc), error_code="store_unavailable"
                )

    async def _handle_locked(
        self, key: tuple, event: RoutedEvent, config: ChatbotConfig, backend: ChatbotBackend
    ) -> TurnResult:
        instance, remote_jid, kind = key
        session = self.store.find(instance, remote_jid, kind)

        if event.message_id and self._already_seen(key, event.message_id):
            return TurnResult(kind, TurnAction.DUPLICATE, session=session)

        if session and self._is_expired(session, config):
            logger.info(
                f"Session {session.id} expired before turn",
                extra={"context": {"instance": instance, "remote_jid": remote_jid, "kind": kind}},
            )
            await self._close_remote(backend, session)
            self.store.close(session.id, now=self.clock())
            session = None

        if event.from_me:
            if session and config.stop_bot_from_me and session.status == SessionStatus.OPENED:
                paused = self.store.set_status(session.id, SessionStatus.PAUSED, now=self.clock())
                return TurnResult(kind, TurnAction.PAUSED, session=paused, reason="from_me")
            if not config.listening_from_me:
                return TurnResult(kind, TurnAction.IGNORED, session=session, reason="from_me")

        if session and session.status == SessionStatus.PAUSED:
            return TurnResult(kind, TurnAction.IGNORED, session=session, reason="paused")

        text = (event.text or "").strip()
        if not text:
            replies = (config.unknown_message,) if session and config.unknown_message else ()
            return TurnResult(kind, TurnAction.IGNORED, session=session, replies=replies, reason="no_text")

        if event.message_id:
            self._remember(key, event.message_id)

        if session:
            if config.keyword_finish and text.lower() == config.keyword_finish.strip().lower():
                return await self._finish(backend, session, config)
            if not session.session_ref:
                return await self._restart(backend, session, event, text)
            return await self._continue(backend, session, text)

        if not matches_trigger(config, text):
            return TurnResult(kind, TurnAction.IGNORED, reason="no_trigger")

        return await self._start(backend, key, event, text)

    async def _start(self, backend: ChatbotBackend, key: tuple, event: RoutedEvent, text: str) -> TurnResult:
        instance, remote_jid, kind = key
        try:
            turn = await backend.start_conversation(instance, remote_jid, text, push_name=event.push_name)
        except ChatbotBackendError as exc:
            return self._backend_failed(key, exc, None)

        try:
            session = self.store.create(
                instance,
                remote_jid,
                kind,
                turn.session_ref,
                push_name=event.push_name,
                awaiting_user=turn.awaiting_user,
                context=dict(turn.context),
                now=self.clock(),
            )
        except SessionConflictError:
            winner = self.store.find(instance, remote_jid, kind)
            logger.info(
                "Session created concurrently elsewhere, joining it",
                extra={
                    "context": {
                        "instance": instance,
                        "remote_jid": remote_jid,
                        "kind": kind,
                        "orphan_ref": turn.session_ref,
                        "winner_ref": winner.session_ref if winner else None,
                    }
                },
            )
            await self._close_remote(backend, turn.session_ref)
            if winner is None:
                return TurnResult(
                    kind, TurnAction.FAILED, ok=False, error="session vanished after conflict", error_code="session_conflict"
                )
            if winner.status == SessionStatus.PAUSED or not winner.session_ref:
                return TurnResult(kind, TurnAction.JOINED, session=winner, reason="not_forwarded")
            joined = await self._continue(backend, winner, text)
            if not joined.ok:
                return joined
            return replace(joined, action=TurnAction.JOINED)

        logger.info(
            f"Session {session.id} opened",
            extra={"context": {"instance": instance, "remote_jid": remote_jid, "kind": kind, "ref": session.session_ref}},
        )
        return TurnResult(kind, TurnAction.STARTED, session=session, replies=turn.replies)

    async def _continue(self, backend: ChatbotBackend, session: SessionRecord, text: str) -> TurnResult:
        try:
            turn = await backend.continue_conversation(session.session_ref, text)
        except ChatbotBackendError as exc:
            return self._backend_failed(session.key, exc, session)

        context = {**session.context, **turn.context} if turn.context else None
        updated = self.store.touch(session.id, awaiting_user=turn.awaiting_user, context=context, now=self.clock())
        return TurnResult(session.kind, TurnAction.CONTINUED, session=updated or session, replies=turn.replies)

    async def _restart(
        self, backend: ChatbotBackend, session: SessionRecord, event: RoutedEvent, text: str
    ) -> TurnResult:
        try:
            turn = await backend.start_conversation(session.instance, session.remote_jid, text, push_name=event.push_name)
        except ChatbotBackendError as exc:
            return self._backend_failed(session.key, exc, session)

        updated = self.store.touch(
            session.id,
            session_ref=turn.session_ref,
            awaiting_user=turn.awaiting_user,
            context={**session.context, **turn.context},
            now=self.clock(),
        )
        logger.info(
            f"Session {session.id} restarted",
            extra={"context": {"instance": session.instance, "kind": session.kind, "ref": turn.session_ref}},
        )
        return TurnResult(session.kind, TurnAction.STARTED, session=updated or session, replies=turn.replies)

    async def _finish(self, backend: ChatbotBackend, session: SessionRecord, config: ChatbotConfig) -> TurnResult:
        await self._close_remote(backend, session)
        if config.keep_open:
            # session stays opened; the next message starts a new backend conversation in it
            kept = self.store.touch(session.id, session_ref="", awaiting_user=False, now=self.clock())
            return TurnResult(session.kind, TurnAction.CLOSED, session=kept or session, reason="keyword_finish")
        closed = self.store.close(session.id, now=self.clock())
        return TurnResult(session.kind, TurnAction.CLOSED, session=closed, reason="keyword_finish")

    def _is_expired(self, session: SessionRecord, config: ChatbotConfig) -> bool:
        if config.expire_minutes <= 0:
            return False
        return self.clock() - session.updated_at >= timedelta(minutes=config.expire_minutes)

    async def _close_remote(self, backend: Optional[ChatbotBackend], session_or_ref) -> None:
        ref = session_or_ref.session_ref if isinstance(session_or_ref, SessionRecord) else session_or_ref
        if backend is None or not ref:
            return
        try:
            await backend.close_conversation(ref)
        except ChatbotBackendError as exc:
            logger.warning(f"Remote close failed for {ref}: {exc}")

    def _backend_failed(self, key: tuple, exc: ChatbotBackendError, session: Optional[SessionRecord]) -> TurnResult:
        instance, remote_jid, kind = key
        context = {
            "instance": instance,
            "remote_jid": remote_jid,
            "kind": kind,
            "session_ref": session.session_ref if session else None,
            "error": str(exc),
        }
        logger.error("Chatbot backend call failed", extra={"context": context})
        if self.alerts is not None:
            task = asyncio.create_task(self.alerts.alert_error("Chatbot backend failed", context))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return TurnResult(
            kind, TurnAction.FAILED, ok=False, session=session, error=str(exc), error_code="chatbot_backend_error"
        )

    # -- operator commands and sweeps ------------------------------------

    async def close_session(
        self, instance: str, remote_jid: str, kind: str, *, config: Optional[ChatbotConfig] = None
    ) -> Optional[SessionRecord]:
        """Explicit close from an operator or the chatbot backend."""
        key = (instance, remote_jid, kind)
        async with self.locks.hold(key):
            session = self.store.find(*key)
            if session is None:
                return None
            if config is not None:
                await self._close_remote(self._backend_for(config), session)
            closed = self.store.close(session.id, now=self.clock())
        logger.info(f"Session {session.id} closed by command", extra={"context": {"instance": instance, "kind": kind}})
        return closed

    async def touch_session(self, instance: str, remote_jid: str, kind: str) -> Optional[SessionRecord]:
        """Record activity on an open session from outside an inbound turn (agent replies)."""
        key = (instance, remote_jid, kind)
        async with self.locks.hold(key):
            session = self.store.find(*key)
            if session is None:
                return None
            return self.store.touch(session.id, now=self.clock())

    async def change_status(
        self,
        instance: str,
        remote_jid: str,
        kind: str,
        status: SessionStatus,
        *,
        config: Optional[ChatbotConfig] = None,
    ) -> Optional[SessionRecord]:
        """Pause, resume or close an open session. Raises InvalidTransitionError."""
        status = SessionStatus(status)
        if status == SessionStatus.CLOSED:
            return await self.close_session(instance, remote_jid, kind, config=config)
        key = (instance, remote_jid, kind)
        async with self.locks.hold(key):
            session = self.store.find(*key)
            if session is None:
                return None
            if session.status == status:
                return session
            return self.store.set_status(session.id, status, now=self.clock())

    async def expire_sessions(
        self, now: Optional[datetime] = None, *, config_lookup: Optional[Callable] = None
    ) -> list[SessionRecord]:
        """Close sessions idle past their integration's timeout."""
        now = now or self.clock()
        closed = []
        for record in self.store.list_expired(now):
            async with self.locks.hold(record.key):
                current = self.store.find(*record.key)
                # touched or replaced since the listing
                if current is None or current.id != record.id or current.updated_at != record.updated_at:
                    continue
                if config_lookup is not None:
                    config = config_lookup(record.instance, record.kind)
                    if config is not None:
                        await self._close_remote(self._backend_for(config), record)
                result = self.store.close(record.id, now=now)
            if result is not None:
                closed.append(result)
                logger.info(
                    f"Session {record.id} expired",
                    extra={"context": {"instance": record.instance, "remote_jid": record.remote_jid, "kind": record.kind}},
                )
        return closed

    async def close_instance_sessions(
        self, instance: str, *, config_lookup: Optional[Callable] = None
    ) -> list[SessionRecord]:
        """Close every non-closed session of an instance that is going away."""
        closed = []
        for record in self.store.list_open(instance):
            async with self.locks.hold(record.key):
                current = self.store.find(*record.key)
                if current is None or current.id != record.id:
                    continue
                if config_lookup is not None:
                    config = config_lookup(record.instance, record.kind)
                    if config is not None:
                        await self._close_remote(self._backend_for(config), current)
                result = self.store.close(current.id, now=self.clock())
            if result is not None:
                closed.append(result)
        if closed:
            logger.info(f"Closed {len(closed)} sessions of {instance}", extra={"context": {"instance": instance}})
        return closed
