"""Routed event envelope built once per transport occurrence.

The envelope is immutable: the payload is frozen recursively so that sinks
running concurrently cannot change what another sink sees. Use ``to_dict``
to get a mutable, JSON-ready copy.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from evogate.logging_config import get_logger
from evogate.services.identifier_service import resolve_remote_jid

logger = get_logger("event_service")


class EventKind(str, Enum):
    MESSAGES_UPSERT = "messages.upsert"
    MESSAGES_UPDATE = "messages.update"
    MESSAGES_DELETE = "messages.delete"
    SEND_MESSAGE = "send.message"
    CONNECTION_UPDATE = "connection.update"
    QRCODE_UPDATED = "qrcode.updated"
    CONTACTS_UPSERT = "contacts.upsert"
    CHATS_UPSERT = "chats.upsert"
    GROUPS_UPSERT = "groups.upsert"
    PRESENCE_UPDATE = "presence.update"
    CALL = "call"

    @classmethod
    def parse(cls, value: str) -> "EventKind":
        """Accept both ``messages.upsert`` and ``MESSAGES_UPSERT`` spellings."""
        normalized = (value or "").strip().lower().replace("_", ".")
        return cls(normalized)

    @property
    def path_suffix(self) -> str:
        """URL suffix used by webhooks configured per event (``messages-upsert``)."""
        return self.value.replace(".", "-")


MESSAGE_EVENTS = frozenset({EventKind.MESSAGES_UPSERT, EventKind.SEND_MESSAGE})


def freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    if isinstance(value, set):
        return frozenset(freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, (tuple, frozenset)):
        return [thaw(item) for item in value]
    return value


@dataclass(frozen=True)
class TransportEvent:
    """Minimal shape consumed from the transport feed."""

    instance: str
    kind: str
    payload: Mapping[str, Any]


@dataclass(frozen=True)
class RoutedEvent:
    instance: str
    kind: EventKind
    remote_jid: Optional[str]
    payload: Mapping[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    message_id: Optional[str] = None
    from_me: bool = False
    push_name: Optional[str] = None
    text: Optional[str] = None
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def routable(self) -> bool:
        return self.remote_jid is not None

    def to_dict(self) -> dict:
        return {
            "event": self.kind.value,
            "instance": self.instance,
            "eventId": self.event_id,
            "remoteJid": self.remote_jid,
            "messageId": self.message_id,
            "fromMe": self.from_me,
            "dateTime": self.timestamp.isoformat(),
            "data": thaw(self.payload),
        }


def extract_text(data: Mapping) -> Optional[str]:
    """Text body of a message payload across the common message types."""
    message = data.get("message") if isinstance(data, Mapping) else None
    if not isinstance(message, Mapping):
        return None

    conversation = message.get("conversation")
    if isinstance(conversation, str) and conversation.strip():
        return conversation

    for container, key in (
        ("extendedTextMessage", "text"),
        ("imageMessage", "caption"),
        ("videoMessage", "caption"),
        ("documentMessage", "caption"),
        ("buttonsResponseMessage", "selectedDisplayText"),
        ("listResponseMessage", "title"),
    ):
        inner = message.get(container)
        if isinstance(inner, Mapping):
            value = inner.get(key)
            if isinstance(value, str) and value.strip():
                return value
    return None


def build_routed_event(raw: TransportEvent, *, now: Optional[datetime] = None) -> RoutedEvent:
    """Attach the canonical identifier and freeze the payload.

    Raises ValueError for unknown event kinds.
    """
    kind = EventKind.parse(raw.kind)
    data = raw.payload if isinstance(raw.payload, Mapping) else {}
    key = data.get("key") if isinstance(data.get("key"), Mapping) else {}

    remote_jid = resolve_remote_jid(data)
    if remote_jid is None and kind in MESSAGE_EVENTS:
        logger.warning(
            "Unroutable message event",
            extra={"context": {"instance": raw.instance, "event": kind.value, "payload_keys": list(data.keys())[:20]}},
        )

    message_id = key.get("id") or data.get("messageId")
    push_name = data.get("pushName")

    return RoutedEvent(
        instance=raw.instance,
        kind=kind,
        remote_jid=remote_jid,
        payload=freeze(data),
        timestamp=now or datetime.now(timezone.utc),
        message_id=str(message_id) if message_id else None,
        from_me=bool(key.get("fromMe")),
        push_name=push_name if isinstance(push_name, str) else None,
        text=extract_text(data),
    )
