from evogate.services.identifier_service import require_remote_jid, resolve_remote_jid
from evogate.services.markup_service import to_helpdesk_markup, to_transport_markup
from evogate.services.state_machine import (
    InstanceState,
    SessionStatus,
    can_transition,
    transition,
)

__all__ = [
    "InstanceState",
    "SessionStatus",
    "can_transition",
    "require_remote_jid",
    "resolve_remote_jid",
    "to_helpdesk_markup",
    "to_transport_markup",
    "transition",
]
