from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class InstanceCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_.-]+$")
    transport: str = "web_session"


class InstanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    transport: str
    state: str
    created_at: datetime
    updated_at: datetime
    disconnected_at: Optional[datetime] = None


class SinkConfigIn(BaseModel):
    enabled: Optional[bool] = None
    url: Optional[str] = None
    topic: Optional[str] = None
    events: Optional[list[str]] = None
    by_events: Optional[bool] = None
    headers: Optional[dict[str, str]] = None
    max_retries: Optional[int] = Field(default=None, ge=0, le=10)
    backoff_ms: Optional[int] = Field(default=None, ge=0)


class SinkConfigOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: str
    enabled: bool
    url: Optional[str] = None
    topic: Optional[str] = None
    events: list[str] = Field(default_factory=list)
    by_events: bool = False
    max_retries: Optional[int] = None
    backoff_ms: Optional[int] = None
