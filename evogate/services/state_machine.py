from enum import Enum

from evogate.errors import InvalidTransitionError


class SessionStatus(str, Enum):
    OPENED = "opened"
    PAUSED = "paused"
    CLOSED = "closed"


class InstanceState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    EXPIRED = "expired"


SESSION_TRANSITIONS = {
    SessionStatus.OPENED: [SessionStatus.PAUSED, SessionStatus.CLOSED],
    SessionStatus.PAUSED: [SessionStatus.OPENED, SessionStatus.CLOSED],
    SessionStatus.CLOSED: [],
}

INSTANCE_TRANSITIONS = {
    InstanceState.CONNECTING: [InstanceState.CONNECTED, InstanceState.DISCONNECTED],
    InstanceState.CONNECTED: [InstanceState.DISCONNECTED],
    InstanceState.DISCONNECTED: [InstanceState.CONNECTING, InstanceState.CONNECTED, InstanceState.EXPIRED],
    InstanceState.EXPIRED: [],
}


def can_transition(from_state, to_state) -> bool:
    """Check if transition is valid for either state machine."""
    table = SESSION_TRANSITIONS if isinstance(from_state, SessionStatus) else INSTANCE_TRANSITIONS
    allowed = table.get(from_state, [])
    return to_state in allowed


def transition(from_state, to_state):
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def instance_state_from_connection(state: str) -> InstanceState:
    """Map a transport connection.update state onto the instance lifecycle."""
    mapping = {
        "open": InstanceState.CONNECTED,
        "connected": InstanceState.CONNECTED,
        "connecting": InstanceState.CONNECTING,
        "close": InstanceState.DISCONNECTED,
        "closed": InstanceState.DISCONNECTED,
        "disconnected": InstanceState.DISCONNECTED,
    }
    try:
        return mapping[(state or "").strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown connection state: {state!r}") from None
