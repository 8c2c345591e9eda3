from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field


class TransportEventRequest(BaseModel):
    """Envelope posted by the transport for every occurrence."""

    event: str
    data: dict[str, Any] = Field(default_factory=dict)
    instance: Optional[str] = None
    date_time: Optional[str] = Field(default=None, validation_alias=AliasChoices("date_time", "dateTime"))
    sender: Optional[str] = None
    server_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("server_url", "serverUrl"))


class DeliveryResultOut(BaseModel):
    sink: str
    ok: bool
    detail: Optional[str] = None
    attempts: int
    elapsed_ms: float


class DispatchResponse(BaseModel):
    success: bool
    event_id: str
    event: str
    remote_jid: Optional[str] = None
    results: list[DeliveryResultOut] = Field(default_factory=list)
