"""Agent side of the helpdesk integration.

Agent replies arrive here in helpdesk markdown and leave through the
transport in WhatsApp markup.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from evogate.errors import SessionStoreUnavailableError
from evogate.gateway import Gateway, get_gateway
from evogate.logging_config import get_logger
from evogate.schemas.helpdesk import HelpdeskWebhook, HelpdeskWebhookResponse
from evogate.services.chatbots.chatwoot import ChatwootBackend
from evogate.services.identifier_service import is_qualified, phone_to_jid
from evogate.services.markup_service import safe_to_transport_markup
from evogate.services.session_store import SessionRecord

logger = get_logger("helpdesk")

router = APIRouter()

HELPDESK_KIND = ChatwootBackend.kind


def require_helpdesk_token(
    x_helpdesk_token: Optional[str] = Header(default=None, alias="X-Helpdesk-Token"),
    token: Optional[str] = Query(default=None),
    gateway: Gateway = Depends(get_gateway),
) -> None:
    """Shared secret from the X-Helpdesk-Token header or the ``token`` query parameter."""
    expected = gateway.settings.helpdesk_token
    if not expected:
        return
    if (x_helpdesk_token or token) != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid helpdesk token")


def _find_session(gateway: Gateway, instance: str, conversation_id: Optional[str]) -> Optional[SessionRecord]:
    if not conversation_id:
        return None
    return gateway.store.find_by_ref(instance, HELPDESK_KIND, conversation_id)


@router.post(
    "/helpdesk/{instance}/webhook",
    response_model=HelpdeskWebhookResponse,
    dependencies=[Depends(require_helpdesk_token)],
)
async def helpdesk_webhook(
    instance: str,
    payload: HelpdeskWebhook,
    gateway: Gateway = Depends(get_gateway),
):
    conversation_id = payload.conversation_id()
    try:
        session = _find_session(gateway, instance, conversation_id)
    except SessionStoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    if payload.event == "message_created":
        if payload.message_type != "outgoing" or payload.private:
            return HelpdeskWebhookResponse(success=True, action="ignored", detail="not an agent reply")
        if not payload.content:
            return HelpdeskWebhookResponse(success=True, action="ignored", detail="empty message")

        remote_jid = session.remote_jid if session else phone_to_jid(payload.sender_identifier())
        if not is_qualified(remote_jid):
            logger.warning(
                "Agent reply for unknown conversation",
                extra={"context": {"instance": instance, "conversation_id": conversation_id}},
            )
            return HelpdeskWebhookResponse(success=False, action="ignored", detail="unknown conversation")

        text = safe_to_transport_markup(payload.content)
        sent = await gateway.transport.send_text(instance, remote_jid, text)
        if sent and session:
            await gateway.coordinator.touch_session(instance, session.remote_jid, HELPDESK_KIND)
        return HelpdeskWebhookResponse(success=sent, action="forwarded" if sent else "send_failed")

    if payload.event == "conversation_status_changed" and payload.status == "resolved":
        if session is None:
            return HelpdeskWebhookResponse(success=True, action="ignored", detail="no open session")
        await gateway.coordinator.close_session(instance, session.remote_jid, HELPDESK_KIND)
        logger.info(f"Helpdesk conversation {conversation_id} resolved, session closed")
        return HelpdeskWebhookResponse(success=True, action="closed")

    return HelpdeskWebhookResponse(success=True, action="ignored", detail=payload.event)
