"""Helpdesk integration: mirrors WhatsApp conversations into Chatwoot.

Text going to the helpdesk is translated with ``to_helpdesk_markup`` only.
Agent replies come back through the helpdesk webhook router, which applies
the opposite direction.
"""

from typing import Optional

import httpx

from evogate.errors import ChatbotBackendError
from evogate.logging_config import get_logger
from evogate.services.chatbots.base import BotTurn, get_json, post_json
from evogate.services.identifier_service import is_group, jid_to_phone
from evogate.services.markup_service import safe_to_helpdesk_markup
from evogate.services.settings_service import ChatbotConfig

logger = get_logger("chatbots.chatwoot")


class ChatwootBackend:
    kind = "chatwoot"

    def __init__(self, config: ChatbotConfig, client: httpx.AsyncClient, timeout: Optional[float] = None):
        if not config.bot_id or not config.inbox_id:
            raise ValueError("chatwoot integration requires bot_id (account id) and inbox_id")
        self.config = config
        self.client = client
        self.timeout = timeout
        self.account_url = f"{config.api_url.rstrip('/')}/api/v1/accounts/{config.bot_id}"

    def _headers(self) -> dict:
        return {"api_access_token": self.config.api_key or ""}

    async def _post(self, path: str, payload: dict):
        return await post_json(
            self.client, self.kind, f"{self.account_url}{path}", payload, headers=self._headers(), timeout=self.timeout
        )

    def _source_id(self, contact: dict) -> Optional[str]:
        for contact_inbox in contact.get("contact_inboxes") or ():
            inbox = contact_inbox.get("inbox") or {}
            if str(inbox.get("id")) == str(self.config.inbox_id):
                return contact_inbox.get("source_id")
        return None

    async def _find_contact(self, remote_jid: str) -> Optional[dict]:
        data = await get_json(
            self.client,
            self.kind,
            f"{self.account_url}/contacts/search",
            params={"q": remote_jid},
            headers=self._headers(),
            timeout=self.timeout,
        )
        candidates = data.get("payload") if isinstance(data, dict) else None
        for contact in candidates or ():
            if contact.get("identifier") == remote_jid:
                return contact
        return None

    async def _create_contact(self, remote_jid: str, push_name: Optional[str]) -> dict:
        phone = jid_to_phone(remote_jid)
        name = push_name or phone or remote_jid
        payload = {"inbox_id": int(self.config.inbox_id), "name": name, "identifier": remote_jid}
        if phone and not is_group(remote_jid):
            payload["phone_number"] = f"+{phone}"

        data = await self._post("/contacts", payload)
        body = data.get("payload", data) if isinstance(data, dict) else {}
        contact = dict(body.get("contact", body))
        contact_inbox = body.get("contact_inbox") or {}
        if contact_inbox.get("source_id"):
            contact["contact_inboxes"] = [{"source_id": contact_inbox["source_id"], "inbox": {"id": self.config.inbox_id}}]
        return contact

    async def _ensure_contact(self, remote_jid: str, push_name: Optional[str]) -> tuple[int, str]:
        """Reuse the contact registered under this identifier, creating it on first contact."""
        contact = await self._find_contact(remote_jid)
        if contact is None:
            try:
                contact = await self._create_contact(remote_jid, push_name)
            except ChatbotBackendError as exc:
                # identifier taken by a concurrent creation
                if exc.status_code != 422:
                    raise
                contact = await self._find_contact(remote_jid)
                if contact is None:
                    raise

        contact_id = contact.get("id")
        if not contact_id:
            raise ChatbotBackendError(self.kind, "contact lookup returned no id")

        source_id = self._source_id(contact)
        if source_id is None:
            data = await self._post(f"/contacts/{contact_id}/contact_inboxes", {"inbox_id": int(self.config.inbox_id)})
            source_id = (data.get("source_id") if isinstance(data, dict) else None) or remote_jid
        return contact_id, source_id

    async def post_incoming(self, session_ref: str, text: str) -> None:
        await self._post(
            f"/conversations/{session_ref}/messages",
            {"content": safe_to_helpdesk_markup(text), "message_type": "incoming", "private": False},
        )

    async def start_conversation(self, instance: str, remote_jid: str, text: str, *, push_name=None) -> BotTurn:
        contact_id, source_id = await self._ensure_contact(remote_jid, push_name)
        data = await self._post(
            "/conversations",
            {
                "source_id": source_id,
                "inbox_id": int(self.config.inbox_id),
                "contact_id": contact_id,
                "additional_attributes": {"instance": instance, "remoteJid": remote_jid},
            },
        )
        conversation_id = data.get("id") if isinstance(data, dict) else None
        if not conversation_id:
            raise ChatbotBackendError(self.kind, "conversation creation returned no id")

        session_ref = str(conversation_id)
        await self.post_incoming(session_ref, text)
        logger.info(
            f"Chatwoot conversation {session_ref} opened",
            extra={"context": {"instance": instance, "remote_jid": remote_jid}},
        )
        return BotTurn(session_ref=session_ref, context={"contact_id": contact_id})

    async def continue_conversation(self, session_ref: str, text: str) -> BotTurn:
        await self.post_incoming(session_ref, text)
        return BotTurn(session_ref=session_ref)

    async def close_conversation(self, session_ref: str) -> None:
        await self._post(f"/conversations/{session_ref}/toggle_status", {"status": "resolved"})
