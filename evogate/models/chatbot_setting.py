import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from evogate.database import Base, JSONType


class ChatbotSetting(Base):
    __tablename__ = "chatbot_settings"
    __table_args__ = (UniqueConstraint("instance_id", "kind", name="uq_chatbot_settings_instance_kind"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    instance_id = Column(Uuid, ForeignKey("instances.id", ondelete="CASCADE"), nullable=False)
    kind = Column(Text, nullable=False)  # typebot, n8n, chatwoot
    enabled = Column(Boolean, nullable=False, default=True)
    api_url = Column(Text, nullable=False)
    api_key = Column(Text)
    bot_id = Column(Text)  # typebot public id, chatwoot account id
    inbox_id = Column(Text)
    trigger_type = Column(Text, nullable=False, default="all")  # all, keyword, none
    trigger_operator = Column(Text, nullable=False, default="equals")
    trigger_value = Column(Text)
    expire_minutes = Column(Integer, nullable=False, default=0)
    keyword_finish = Column(Text)
    stop_bot_from_me = Column(Boolean, nullable=False, default=False)
    keep_open = Column(Boolean, nullable=False, default=False)
    listening_from_me = Column(Boolean, nullable=False, default=False)
    ignore_jids = Column(JSONType, nullable=False, default=list)
    unknown_message = Column(Text)

    instance = relationship("Instance", back_populates="chatbots")
