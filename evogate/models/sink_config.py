import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from evogate.database import Base, JSONType


class SinkConfig(Base):
    __tablename__ = "sink_configs"
    __table_args__ = (UniqueConstraint("instance_id", "kind", name="uq_sink_configs_instance_kind"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    instance_id = Column(Uuid, ForeignKey("instances.id", ondelete="CASCADE"), nullable=False)
    kind = Column(Text, nullable=False)  # webhook, websocket, queue, chatbot
    enabled = Column(Boolean, nullable=False, default=True)
    url = Column(Text)
    topic = Column(Text)
    events = Column(JSONType, nullable=False, default=list)  # empty = all events
    by_events = Column(Boolean, nullable=False, default=False)
    headers = Column(JSONType, nullable=False, default=dict)
    max_retries = Column(Integer)
    backoff_ms = Column(Integer)

    instance = relationship("Instance", back_populates="sinks")
