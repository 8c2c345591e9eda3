import uuid

from sqlalchemy import Column, DateTime, Text, Uuid
from sqlalchemy.orm import relationship

from evogate.database import Base


class Instance(Base):
    __tablename__ = "instances"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False, unique=True)
    transport = Column(Text, nullable=False, default="web_session")  # web_session, business_api
    state = Column(Text, nullable=False, default="connecting")  # connecting, connected, disconnected, expired
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    disconnected_at = Column(DateTime(timezone=True))

    sinks = relationship("SinkConfig", back_populates="instance", cascade="all, delete-orphan")
    chatbots = relationship("ChatbotSetting", back_populates="instance", cascade="all, delete-orphan")
    sessions = relationship("IntegrationSession", back_populates="instance", cascade="all, delete-orphan")
