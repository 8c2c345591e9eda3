from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ChatbotSettingIn(BaseModel):
    enabled: Optional[bool] = None
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    bot_id: Optional[str] = None
    inbox_id: Optional[str] = None
    trigger_type: Optional[Literal["all", "keyword", "none"]] = None
    trigger_operator: Optional[Literal["equals", "contains", "starts_with", "ends_with", "regex"]] = None
    trigger_value: Optional[str] = None
    expire_minutes: Optional[int] = Field(default=None, ge=0)
    keyword_finish: Optional[str] = None
    stop_bot_from_me: Optional[bool] = None
    keep_open: Optional[bool] = None
    listening_from_me: Optional[bool] = None
    ignore_jids: Optional[list[str]] = None
    unknown_message: Optional[str] = None


class ChatbotSettingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: str
    enabled: bool
    api_url: str
    bot_id: Optional[str] = None
    inbox_id: Optional[str] = None
    trigger_type: str
    trigger_operator: str
    trigger_value: Optional[str] = None
    expire_minutes: int
    keyword_finish: Optional[str] = None
    stop_bot_from_me: bool
    keep_open: bool
    listening_from_me: bool
    ignore_jids: list[str] = Field(default_factory=list)


class SessionOut(BaseModel):
    id: UUID
    instance: str
    remote_jid: str
    kind: str
    session_ref: str
    status: str
    awaiting_user: bool
    push_name: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "SessionOut":
        return cls(
            id=record.id,
            instance=record.instance,
            remote_jid=record.remote_jid,
            kind=record.kind,
            session_ref=record.session_ref,
            status=record.status.value,
            awaiting_user=record.awaiting_user,
            push_name=record.push_name,
            context=dict(record.context),
            created_at=record.created_at,
            updated_at=record.updated_at,
            closed_at=record.closed_at,
        )


class ChangeStatusRequest(BaseModel):
    remote_jid: str
    status: Literal["opened", "paused", "closed"]
