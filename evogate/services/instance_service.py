from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from evogate.errors import InstanceNotFoundError
from evogate.logging_config import get_logger
from evogate.models import ChatbotSetting, Instance, SinkConfig
from evogate.services.chatbots import BACKENDS
from evogate.services.session_store import ensure_timezone
from evogate.services.settings_service import SINK_KINDS, TRIGGER_OPERATORS, TRIGGER_TYPES
from evogate.services.state_machine import InstanceState, instance_state_from_connection, transition

logger = get_logger("instance_service")

SINK_FIELDS = ("enabled", "url", "topic", "events", "by_events", "headers", "max_retries", "backoff_ms")
CHATBOT_FIELDS = (
    "enabled",
    "api_url",
    "api_key",
    "bot_id",
    "inbox_id",
    "trigger_type",
    "trigger_operator",
    "trigger_value",
    "expire_minutes",
    "keyword_finish",
    "stop_bot_from_me",
    "keep_open",
    "listening_from_me",
    "ignore_jids",
    "unknown_message",
)


def get_instance(db: Session, name: str) -> Instance:
    """Raises InstanceNotFoundError."""
    instance = db.query(Instance).filter(Instance.name == name).first()
    if instance is None:
        raise InstanceNotFoundError(f"Instance {name} not found")
    return instance


def list_instances(db: Session) -> list[Instance]:
    return db.query(Instance).order_by(Instance.name).all()


def provision_instance(
    db: Session, name: str, transport: str = "web_session", now: Optional[datetime] = None
) -> tuple[Instance, bool]:
    """Create the instance if missing. Returns (instance, created)."""
    existing = db.query(Instance).filter(Instance.name == name).first()
    if existing is not None:
        return existing, False

    now = now or datetime.now(timezone.utc)
    instance = Instance(
        name=name,
        transport=transport,
        state=InstanceState.CONNECTING.value,
        created_at=now,
        updated_at=now,
    )
    db.add(instance)
    db.flush()
    logger.info(f"Provisioned instance {name}", extra={"context": {"transport": transport}})
    return instance, True


def delete_instance(db: Session, name: str) -> None:
    """Delete the instance with its sink, chatbot and session rows."""
    instance = get_instance(db, name)
    db.delete(instance)
    db.flush()
    logger.info(f"Deleted instance {name}")


def apply_connection_update(
    db: Session, name: str, connection_state: str, now: Optional[datetime] = None
) -> Instance:
    """Move the instance along its lifecycle from a connection.update event.

    Raises InstanceNotFoundError, ValueError for unknown states and
    InvalidTransitionError for moves the lifecycle forbids.
    """
    instance = get_instance(db, name)
    current = InstanceState(instance.state)
    target = instance_state_from_connection(connection_state)
    if current == target:
        return instance

    now = now or datetime.now(timezone.utc)
    instance.state = transition(current, target).value
    instance.updated_at = now
    instance.disconnected_at = now if target == InstanceState.DISCONNECTED else None
    db.flush()
    logger.info(f"Instance {name}: {current.value} -> {target.value}")
    return instance


def expire_disconnected_instances(db: Session, expire_minutes: int, now: Optional[datetime] = None) -> list[str]:
    """Mark instances disconnected for longer than expire_minutes as expired."""
    if expire_minutes <= 0:
        return []
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=expire_minutes)
    expired = []
    rows = db.query(Instance).filter(Instance.state == InstanceState.DISCONNECTED.value).all()
    for instance in rows:
        disconnected_at = ensure_timezone(instance.disconnected_at or instance.updated_at)
        if disconnected_at > cutoff:
            continue
        instance.state = transition(InstanceState.DISCONNECTED, InstanceState.EXPIRED).value
        instance.updated_at = now
        expired.append(instance.name)
        logger.warning(f"Instance {instance.name} expired after disconnection")
    db.flush()
    return expired


def upsert_sink_config(db: Session, name: str, kind: str, **fields) -> SinkConfig:
    if kind not in SINK_KINDS:
        raise ValueError(f"Unknown sink kind: {kind}")
    instance = get_instance(db, name)
    row = db.query(SinkConfig).filter(SinkConfig.instance_id == instance.id, SinkConfig.kind == kind).first()
    if row is None:
        row = SinkConfig(instance_id=instance.id, kind=kind, events=[], headers={})
        db.add(row)
    for field_name in SINK_FIELDS:
        if field_name in fields and fields[field_name] is not None:
            setattr(row, field_name, fields[field_name])
    if kind == "webhook" and not row.url:
        raise ValueError("Webhook sink requires a url")
    db.flush()
    return row


def upsert_chatbot_setting(db: Session, name: str, kind: str, **fields) -> ChatbotSetting:
    if kind not in BACKENDS:
        raise ValueError(f"Unknown chatbot integration: {kind}")
    instance = get_instance(db, name)
    trigger_type = fields.get("trigger_type")
    if trigger_type is not None and trigger_type not in TRIGGER_TYPES:
        raise ValueError(f"Unknown trigger type: {trigger_type}")
    trigger_operator = fields.get("trigger_operator")
    if trigger_operator is not None and trigger_operator not in TRIGGER_OPERATORS:
        raise ValueError(f"Unknown trigger operator: {trigger_operator}")

    row = (
        db.query(ChatbotSetting)
        .filter(ChatbotSetting.instance_id == instance.id, ChatbotSetting.kind == kind)
        .first()
    )
    if row is None:
        if not fields.get("api_url"):
            raise ValueError("Chatbot integration requires an api_url")
        row = ChatbotSetting(instance_id=instance.id, kind=kind, ignore_jids=[])
        db.add(row)
    for field_name in CHATBOT_FIELDS:
        if field_name in fields and fields[field_name] is not None:
            setattr(row, field_name, fields[field_name])
    db.flush()
    return row
