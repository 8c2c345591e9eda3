"""Canonical participant identifier resolution for transport event payloads.

Precedence is fixed and first match wins:

1. source identifier (``key.remoteJid``) when it is a qualified address
2. sender identifier (``key.participant`` / ``sender``) when qualified
3. sender phone number with the leading ``+`` stripped

A qualified address is group (``@g.us``), linked-device (``@lid``) or
direct-session (``@s.whatsapp.net``) addressed. The phone number is only a
fallback; preferring it over a qualified form splits one person across two
session records.
"""

import re
from typing import Any, Mapping, Optional

from evogate.errors import UnroutableEventError

QUALIFIED_JID_RE = re.compile(r"^[^@\s]+@(?:g\.us|lid|s\.whatsapp\.net)$")

GROUP_SUFFIX = "@g.us"
LID_SUFFIX = "@lid"
USER_SUFFIX = "@s.whatsapp.net"


def _get(container: Any, key: str) -> Any:
    if isinstance(container, Mapping):
        return container.get(key)
    return None


def _as_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (Mapping, list, tuple)):
        return None
    text = str(value).strip()
    return text or None


def is_qualified(value: Optional[str]) -> bool:
    return bool(value) and QUALIFIED_JID_RE.match(value) is not None


def is_group(remote_jid: Optional[str]) -> bool:
    return bool(remote_jid) and remote_jid.endswith(GROUP_SUFFIX)


def _source_identifier(body: Mapping) -> Optional[str]:
    return _as_text(_get(_get(body, "key"), "remoteJid")) or _as_text(_get(body, "remoteJid"))


def _sender_identifier(body: Mapping) -> Optional[str]:
    return _as_text(_get(_get(body, "key"), "participant")) or _as_text(_get(body, "sender"))


def _sender_phone(body: Mapping) -> Optional[str]:
    for candidate in (
        _get(body, "senderPn"),
        _get(_get(body, "key"), "senderPn"),
        _get(body, "phone"),
    ):
        text = _as_text(candidate)
        if not text:
            continue
        text = text.split("@", 1)[0]
        if text.startswith("+"):
            text = text[1:]
        if text:
            return text
    return None


def resolve_remote_jid(body: Optional[Mapping]) -> Optional[str]:
    """Return the canonical routable identifier, or None when unroutable."""
    if not isinstance(body, Mapping):
        return None

    source = _source_identifier(body)
    if is_qualified(source):
        return source

    sender = _sender_identifier(body)
    if is_qualified(sender):
        return sender

    return _sender_phone(body)


def require_remote_jid(body: Optional[Mapping]) -> str:
    remote_jid = resolve_remote_jid(body)
    if remote_jid is None:
        raise UnroutableEventError("No participant identifier in event payload")
    return remote_jid


def jid_to_phone(remote_jid: Optional[str]) -> Optional[str]:
    """Digits of a direct address; None for groups and linked devices."""
    if not remote_jid or is_group(remote_jid) or remote_jid.endswith(LID_SUFFIX):
        return None
    digits = re.sub(r"\D", "", remote_jid.split("@", 1)[0].split(":", 1)[0])
    return digits or None


def phone_to_jid(value: Optional[str]) -> Optional[str]:
    """Turn a bare phone number into a direct-session address; qualified values pass through."""
    text = _as_text(value)
    if not text:
        return None
    if "@" in text:
        return text
    digits = re.sub(r"\D", "", text)
    if not digits:
        return None
    return f"{digits}{USER_SUFFIX}"
