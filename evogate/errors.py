"""Error taxonomy for event routing and chatbot session coordination."""

from typing import Optional


class GatewayError(Exception):
    """Base class for gateway errors."""

    code = "gateway_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class UnroutableEventError(GatewayError):
    """No canonical participant identifier could be derived from the event."""

    code = "unroutable"


class SessionConflictError(GatewayError):
    """A non-closed session already exists for (instance, remote_jid, kind)."""

    code = "session_conflict"

    def __init__(self, instance_id, remote_jid: str, kind: str):
        self.instance_id = instance_id
        self.remote_jid = remote_jid
        self.kind = kind
        super().__init__(f"Open {kind} session already exists for {remote_jid} on {instance_id}")


class SessionStoreUnavailableError(GatewayError):
    """Session state cannot be read or written at all."""

    code = "store_unavailable"


class SinkDeliveryError(GatewayError):
    """Delivery to a single sink failed (timeout, non-2xx, broker unreachable)."""

    code = "sink_delivery_error"

    def __init__(self, sink: str, message: str, status_code: Optional[int] = None):
        self.sink = sink
        self.status_code = status_code
        super().__init__(f"{sink}: {message}")


class MarkupTranslationError(GatewayError):
    """A markup substitution step failed on the given input."""

    code = "markup_error"


class ChatbotBackendError(GatewayError):
    """The external chatbot backend call failed."""

    code = "chatbot_backend_error"

    def __init__(self, kind: str, message: str, status_code: Optional[int] = None):
        self.kind = kind
        self.status_code = status_code
        super().__init__(f"{kind}: {message}")


class InvalidTransitionError(GatewayError):
    code = "invalid_transition"

    def __init__(self, from_state, to_state):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


class InstanceNotFoundError(GatewayError):
    code = "instance_not_found"


class InstanceClosedError(GatewayError):
    """The instance is shutting down and no longer accepts events."""

    code = "instance_closed"
