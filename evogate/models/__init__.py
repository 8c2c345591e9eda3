from evogate.models.chatbot_setting import ChatbotSetting
from evogate.models.instance import Instance
from evogate.models.integration_session import IntegrationSession
from evogate.models.sink_config import SinkConfig

__all__ = [
    "Instance",
    "SinkConfig",
    "ChatbotSetting",
    "IntegrationSession",
]
