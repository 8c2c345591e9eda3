from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class HelpdeskSender(BaseModel):
    model_config = ConfigDict(extra="allow")

    identifier: Optional[str] = None
    phone_number: Optional[str] = None


class HelpdeskConversation(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    status: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict)

    @property
    def sender(self) -> HelpdeskSender:
        return HelpdeskSender.model_validate(self.meta.get("sender") or {})


class HelpdeskWebhook(BaseModel):
    """Subset of the helpdesk webhook payload the gateway acts on."""

    model_config = ConfigDict(extra="allow")

    event: str
    id: Optional[int] = None
    content: Optional[str] = None
    message_type: Optional[str] = None
    private: bool = False
    status: Optional[str] = None
    conversation: Optional[HelpdeskConversation] = None
    meta: dict[str, Any] = Field(default_factory=dict)

    def conversation_id(self) -> Optional[str]:
        if self.event == "conversation_status_changed" and self.id is not None:
            return str(self.id)
        if self.conversation and self.conversation.id is not None:
            return str(self.conversation.id)
        return None

    def sender_identifier(self) -> Optional[str]:
        """Contact identifier of the conversation, or its phone number when no identifier was stored."""
        senders = [self.meta.get("sender") or {}]
        if self.conversation:
            senders.insert(0, self.conversation.sender.model_dump())
        for name in ("identifier", "phone_number"):
            for sender in senders:
                if sender.get(name):
                    return sender[name]
        return None


class HelpdeskWebhookResponse(BaseModel):
    success: bool
    action: str
    detail: Optional[str] = None
