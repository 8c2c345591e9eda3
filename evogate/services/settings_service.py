"""Frozen per-instance settings read from the database once per use."""

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from evogate.models import ChatbotSetting, Instance, SinkConfig

SINK_KINDS = ("webhook", "websocket", "queue", "chatbot")
TRIGGER_TYPES = ("all", "keyword", "none")
TRIGGER_OPERATORS = ("equals", "contains", "starts_with", "ends_with", "regex")


@dataclass(frozen=True)
class SinkSettings:
    kind: str
    enabled: bool = True
    url: Optional[str] = None
    topic: Optional[str] = None
    events: tuple[str, ...] = ()
    by_events: bool = False
    headers: tuple[tuple[str, str], ...] = ()
    max_retries: Optional[int] = None
    backoff_ms: Optional[int] = None

    def subscribes(self, event_kind: str) -> bool:
        return not self.events or event_kind in self.events


@dataclass(frozen=True)
class ChatbotConfig:
    kind: str
    api_url: str
    enabled: bool = True
    api_key: Optional[str] = None
    bot_id: Optional[str] = None
    inbox_id: Optional[str] = None
    trigger_type: str = "all"
    trigger_operator: str = "equals"
    trigger_value: Optional[str] = None
    expire_minutes: int = 0
    keyword_finish: Optional[str] = None
    stop_bot_from_me: bool = False
    keep_open: bool = False
    listening_from_me: bool = False
    ignore_jids: tuple[str, ...] = field(default_factory=tuple)
    unknown_message: Optional[str] = None


def sink_settings_from_row(row: SinkConfig) -> SinkSettings:
    return SinkSettings(
        kind=row.kind,
        enabled=bool(row.enabled),
        url=row.url,
        topic=row.topic,
        events=tuple(row.events or ()),
        by_events=bool(row.by_events),
        headers=tuple(sorted((row.headers or {}).items())),
        max_retries=row.max_retries,
        backoff_ms=row.backoff_ms,
    )


def chatbot_config_from_row(row: ChatbotSetting) -> ChatbotConfig:
    return ChatbotConfig(
        kind=row.kind,
        api_url=row.api_url,
        enabled=bool(row.enabled),
        api_key=row.api_key,
        bot_id=row.bot_id,
        inbox_id=row.inbox_id,
        trigger_type=row.trigger_type or "all",
        trigger_operator=row.trigger_operator or "equals",
        trigger_value=row.trigger_value,
        expire_minutes=row.expire_minutes or 0,
        keyword_finish=row.keyword_finish,
        stop_bot_from_me=bool(row.stop_bot_from_me),
        keep_open=bool(row.keep_open),
        listening_from_me=bool(row.listening_from_me),
        ignore_jids=tuple(row.ignore_jids or ()),
        unknown_message=row.unknown_message,
    )


def load_sink_settings(db: Session, instance: str, *, enabled_only: bool = True) -> list[SinkSettings]:
    query = db.query(SinkConfig).join(Instance, Instance.id == SinkConfig.instance_id).filter(Instance.name == instance)
    if enabled_only:
        query = query.filter(SinkConfig.enabled.is_(True))
    return [sink_settings_from_row(row) for row in query.all()]


def load_chatbot_configs(db: Session, instance: str, *, enabled_only: bool = True) -> list[ChatbotConfig]:
    query = (
        db.query(ChatbotSetting)
        .join(Instance, Instance.id == ChatbotSetting.instance_id)
        .filter(Instance.name == instance)
    )
    if enabled_only:
        query = query.filter(ChatbotSetting.enabled.is_(True))
    return [chatbot_config_from_row(row) for row in query.order_by(ChatbotSetting.kind).all()]


def load_chatbot_config(db: Session, instance: str, kind: str) -> Optional[ChatbotConfig]:
    row = (
        db.query(ChatbotSetting)
        .join(Instance, Instance.id == ChatbotSetting.instance_id)
        .filter(Instance.name == instance, ChatbotSetting.kind == kind)
        .first()
    )
    return chatbot_config_from_row(row) if row else None


class SettingsRepository:
    """Reads settings with a fresh database session per call."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def sinks(self, instance: str) -> list[SinkSettings]:
        db = self._session_factory()
        try:
            return load_sink_settings(db, instance)
        finally:
            db.close()

    def chatbots(self, instance: str) -> list[ChatbotConfig]:
        db = self._session_factory()
        try:
            return load_chatbot_configs(db, instance)
        finally:
            db.close()

    def chatbot(self, instance: str, kind: str) -> Optional[ChatbotConfig]:
        db = self._session_factory()
        try:
            return load_chatbot_config(db, instance, kind)
        finally:
            db.close()
