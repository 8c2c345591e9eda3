from evogate.schemas.chatbot import ChangeStatusRequest, ChatbotSettingIn, ChatbotSettingOut, SessionOut
from evogate.schemas.events import DeliveryResultOut, DispatchResponse, TransportEventRequest
from evogate.schemas.helpdesk import HelpdeskWebhook, HelpdeskWebhookResponse
from evogate.schemas.instance import InstanceCreate, InstanceOut, SinkConfigIn, SinkConfigOut

__all__ = [
    "ChangeStatusRequest",
    "ChatbotSettingIn",
    "ChatbotSettingOut",
    "DeliveryResultOut",
    "DispatchResponse",
    "HelpdeskWebhook",
    "HelpdeskWebhookResponse",
    "InstanceCreate",
    "InstanceOut",
    "SessionOut",
    "SinkConfigIn",
    "SinkConfigOut",
    "TransportEventRequest",
]
