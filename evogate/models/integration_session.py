import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Text, Uuid, text
from sqlalchemy.orm import relationship

from evogate.database import Base, JSONType


class IntegrationSession(Base):
    __tablename__ = "integration_sessions"
    __table_args__ = (
        # at most one non-closed session per (instance, participant, integration)
        Index(
            "uq_integration_sessions_open_key",
            "instance_id",
            "remote_jid",
            "kind",
            unique=True,
            postgresql_where=text("status <> 'closed'"),
            sqlite_where=text("status <> 'closed'"),
        ),
        Index("ix_integration_sessions_status_updated", "status", "updated_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    instance_id = Column(Uuid, ForeignKey("instances.id", ondelete="CASCADE"), nullable=False)
    remote_jid = Column(Text, nullable=False)
    kind = Column(Text, nullable=False)
    session_ref = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="opened")  # opened, paused, closed
    awaiting_user = Column(Boolean, nullable=False, default=False)
    push_name = Column(Text)
    context = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True))

    instance = relationship("Instance", back_populates="sessions")
