import json

import httpx
import pytest

from evogate.errors import ChatbotBackendError
from evogate.services.chatbots import BACKENDS, build_backend
from evogate.services.chatbots.chatwoot import ChatwootBackend
from evogate.services.chatbots.n8n import N8nBackend
from evogate.services.chatbots.typebot import TypebotBackend, render_rich_text
from evogate.services.settings_service import ChatbotConfig


class Recorder:
    """MockTransport handler returning canned responses and keeping the requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        status, body = self.responses.pop(0)
        return httpx.Response(status, json=body)

    def body(self, index):
        return json.loads(self.requests[index].content)


def _client(recorder):
    return httpx.AsyncClient(transport=httpx.MockTransport(recorder))


def _typebot_message(text, **marks):
    return {"type": "text", "content": {"richText": [{"type": "p", "children": [{"text": text, **marks}]}]}}


class TestTypebot:
    CONFIG = ChatbotConfig(kind="typebot", api_url="https://typebot.test/", bot_id="bot-1", api_key="secret")

    @pytest.mark.asyncio
    async def test_start_posts_prefilled_variables(self):
        recorder = Recorder(
            (200, {"sessionId": "s-1", "messages": [_typebot_message("Hi there")], "input": {"type": "text input"}})
        )
        backend = TypebotBackend(self.CONFIG, _client(recorder))

        turn = await backend.start_conversation("A", "123@g.us", "hello", push_name="Ana")

        assert turn.session_ref == "s-1"
        assert turn.replies == ("Hi there",)
        assert turn.awaiting_user is True
        request = recorder.requests[0]
        assert str(request.url) == "https://typebot.test/api/v1/typebots/bot-1/startChat"
        assert request.headers["Authorization"] == "Bearer secret"
        body = recorder.body(0)
        assert body["message"]["text"] == "hello"
        assert body["prefilledVariables"] == {"remoteJid": "123@g.us", "pushName": "Ana", "instanceName": "A"}

    @pytest.mark.asyncio
    async def test_continue_uses_session_url(self):
        recorder = Recorder((200, {"messages": [_typebot_message("Done", bold=True)]}))
        backend = TypebotBackend(self.CONFIG, _client(recorder))

        turn = await backend.continue_conversation("s-1", "2")

        assert str(recorder.requests[0].url) == "https://typebot.test/api/v1/sessions/s-1/continueChat"
        assert turn.replies == ("*Done*",)
        assert turn.awaiting_user is False

    @pytest.mark.asyncio
    async def test_missing_session_id_is_an_error(self):
        backend = TypebotBackend(self.CONFIG, _client(Recorder((200, {"messages": []}))))

        with pytest.raises(ChatbotBackendError):
            await backend.start_conversation("A", "123@g.us", "hello")

    @pytest.mark.asyncio
    async def test_http_error_is_an_error(self):
        backend = TypebotBackend(self.CONFIG, _client(Recorder((500, {"error": "boom"}))))

        with pytest.raises(ChatbotBackendError) as exc_info:
            await backend.continue_conversation("s-1", "hi")
        assert exc_info.value.status_code == 500

    def test_requires_bot_id(self):
        with pytest.raises(ValueError):
            TypebotBackend(ChatbotConfig(kind="typebot", api_url="https://typebot.test"), httpx.AsyncClient())

    def test_render_rich_text_links_and_lines(self):
        blocks = [
            {"type": "p", "children": [{"text": "Visit "}, {"type": "a", "url": "https://x.test", "children": [{"text": "site"}]}]},
            {"type": "p", "children": [{"text": "bye", "italic": True}]},
        ]
        assert render_rich_text(blocks) == "Visit site (https://x.test)\n_bye_"


class TestN8n:
    CONFIG = ChatbotConfig(kind="n8n", api_url="https://n8n.test/webhook/abc")

    @pytest.mark.asyncio
    async def test_start_generates_session_and_posts_input(self):
        recorder = Recorder((200, {"output": "Welcome!"}))
        backend = N8nBackend(self.CONFIG, _client(recorder))

        turn = await backend.start_conversation("A", "123@g.us", "hi", push_name="Ana")

        assert turn.session_ref.startswith("123@g.us-")
        assert turn.replies == ("Welcome!",)
        body = recorder.body(0)
        assert body["sessionId"] == turn.session_ref
        assert body["chatInput"] == "hi"
        assert body["remoteJid"] == "123@g.us"
        assert "Authorization" not in recorder.requests[0].headers

    @pytest.mark.asyncio
    async def test_continue_reads_list_output(self):
        recorder = Recorder((200, [{"output": ["one", "two"]}]))
        backend = N8nBackend(self.CONFIG, _client(recorder))

        turn = await backend.continue_conversation("sess", "next")

        assert turn.replies == ("one", "two")
        assert recorder.body(0) == {"sessionId": "sess", "chatInput": "next"}

    @pytest.mark.asyncio
    async def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectTimeout("slow")

        backend = N8nBackend(self.CONFIG, httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        with pytest.raises(ChatbotBackendError):
            await backend.continue_conversation("sess", "next")


class FakeChatwoot:
    """Chatwoot account keeping contacts; a second contact with the same identifier is rejected with 422."""

    def __init__(self, inbox_id=3):
        self.inbox_id = inbox_id
        self.contacts = []
        self.conversations = {}
        self.requests = []
        self.hide_from_search = False

    def __call__(self, request):
        self.requests.append(request)
        path = request.url.path.removeprefix("/api/v1/accounts/7")
        if request.method == "GET" and path == "/contacts/search":
            query = request.url.params["q"]
            found = [] if self.hide_from_search else [c for c in self.contacts if c["identifier"] == query]
            self.hide_from_search = False
            return httpx.Response(200, json={"meta": {"count": len(found)}, "payload": found})
        body = json.loads(request.content)
        if path == "/contacts":
            if any(contact["identifier"] == body["identifier"] for contact in self.contacts):
                return httpx.Response(422, json={"message": "Identifier has already been taken"})
            contact = {"id": len(self.contacts) + 11, "identifier": body["identifier"], "contact_inboxes": []}
            self.contacts.append(contact)
            return httpx.Response(200, json={"payload": {"contact": contact, "contact_inbox": {}}})
        if path.endswith("/contact_inboxes"):
            contact_id = int(path.split("/")[2])
            contact = next(contact for contact in self.contacts if contact["id"] == contact_id)
            contact_inbox = {"source_id": f"src-{contact_id}", "inbox": {"id": body["inbox_id"]}}
            contact["contact_inboxes"].append(contact_inbox)
            return httpx.Response(200, json=contact_inbox)
        if path == "/conversations":
            conversation_id = len(self.conversations) + 40
            self.conversations[conversation_id] = {"status": "open", "source_id": body["source_id"]}
            return httpx.Response(200, json={"id": conversation_id})
        if path.endswith("/toggle_status"):
            self.conversations[int(path.split("/")[2])]["status"] = body["status"]
            return httpx.Response(200, json={})
        return httpx.Response(200, json={"id": 1})

    def posted(self, suffix):
        return [r for r in self.requests if r.method == "POST" and r.url.path.endswith(suffix)]


class TestChatwoot:
    CONFIG = ChatbotConfig(
        kind="chatwoot", api_url="https://desk.test", bot_id="7", inbox_id="3", api_key="tok"
    )

    @pytest.mark.asyncio
    async def test_start_creates_contact_conversation_and_message(self):
        recorder = Recorder(
            (200, {"meta": {"count": 0}, "payload": []}),
            (200, {"payload": {"contact": {"id": 11}, "contact_inbox": {"source_id": "src-1"}}}),
            (200, {"id": 42}),
            (200, {"id": 1}),
        )
        backend = ChatwootBackend(self.CONFIG, _client(recorder))

        turn = await backend.start_conversation("A", "5511999999999@s.whatsapp.net", "*hello* _there_", push_name="Ana")

        assert turn.session_ref == "42"
        assert turn.context == {"contact_id": 11}
        search = recorder.requests[0]
        assert search.method == "GET"
        assert search.url.path == "/api/v1/accounts/7/contacts/search"
        assert search.url.params["q"] == "5511999999999@s.whatsapp.net"
        urls = [str(request.url) for request in recorder.requests[1:]]
        assert urls == [
            "https://desk.test/api/v1/accounts/7/contacts",
            "https://desk.test/api/v1/accounts/7/conversations",
            "https://desk.test/api/v1/accounts/7/conversations/42/messages",
        ]
        assert recorder.requests[1].headers["api_access_token"] == "tok"
        assert recorder.body(1)["phone_number"] == "+5511999999999"
        assert recorder.body(2)["source_id"] == "src-1"
        message = recorder.body(3)
        assert message["message_type"] == "incoming"
        assert message["content"] == "**hello** *there*"

    @pytest.mark.asyncio
    async def test_known_contact_is_reused(self):
        contact = {
            "id": 11,
            "identifier": "5511999999999@s.whatsapp.net",
            "contact_inboxes": [{"source_id": "src-old", "inbox": {"id": 3}}],
        }
        recorder = Recorder((200, {"payload": [contact]}), (200, {"id": 43}), (200, {"id": 1}))
        backend = ChatwootBackend(self.CONFIG, _client(recorder))

        turn = await backend.start_conversation("A", "5511999999999@s.whatsapp.net", "hi")

        assert turn.session_ref == "43"
        assert [request.url.path.rsplit("/", 1)[-1] for request in recorder.requests] == [
            "search",
            "conversations",
            "messages",
        ]
        assert recorder.body(1)["source_id"] == "src-old"
        assert recorder.body(1)["contact_id"] == 11

    @pytest.mark.asyncio
    async def test_known_contact_is_attached_to_inbox(self):
        contact = {"id": 11, "identifier": "123@g.us", "contact_inboxes": [{"source_id": "x", "inbox": {"id": 9}}]}
        recorder = Recorder(
            (200, {"payload": [contact]}),
            (200, {"source_id": "src-3"}),
            (200, {"id": 44}),
            (200, {"id": 1}),
        )
        backend = ChatwootBackend(self.CONFIG, _client(recorder))

        await backend.start_conversation("A", "123@g.us", "hi")

        assert recorder.requests[1].url.path == "/api/v1/accounts/7/contacts/11/contact_inboxes"
        assert recorder.body(1) == {"inbox_id": 3}
        assert recorder.body(2)["source_id"] == "src-3"

    @pytest.mark.asyncio
    async def test_new_session_after_resolve_reuses_contact(self):
        chatwoot = FakeChatwoot()
        backend = ChatwootBackend(self.CONFIG, _client(chatwoot))

        first = await backend.start_conversation("A", "5511999999999@s.whatsapp.net", "hello")
        await backend.close_conversation(first.session_ref)
        second = await backend.start_conversation("A", "5511999999999@s.whatsapp.net", "hello again")

        assert first.session_ref != second.session_ref
        assert first.context == second.context == {"contact_id": 11}
        assert len(chatwoot.contacts) == 1
        assert len(chatwoot.posted("/contacts")) == 1
        assert chatwoot.conversations[int(first.session_ref)]["status"] == "resolved"
        assert chatwoot.conversations[int(second.session_ref)]["source_id"] == "src-11"

    @pytest.mark.asyncio
    async def test_contact_created_concurrently_is_found_after_rejection(self):
        chatwoot = FakeChatwoot()
        chatwoot.contacts.append(
            {"id": 11, "identifier": "123@g.us", "contact_inboxes": [{"source_id": "src-11", "inbox": {"id": 3}}]}
        )
        chatwoot.hide_from_search = True
        backend = ChatwootBackend(self.CONFIG, _client(chatwoot))

        turn = await backend.start_conversation("A", "123@g.us", "hi")

        assert turn.context == {"contact_id": 11}
        assert len(chatwoot.posted("/contacts")) == 1
        assert [r.method for r in chatwoot.requests[:3]] == ["GET", "POST", "GET"]

    @pytest.mark.asyncio
    async def test_other_contact_errors_propagate(self):
        recorder = Recorder((200, {"payload": []}), (500, {}))
        backend = ChatwootBackend(self.CONFIG, _client(recorder))

        with pytest.raises(ChatbotBackendError) as exc_info:
            await backend.start_conversation("A", "123@g.us", "hi")

        assert exc_info.value.status_code == 500
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_close_resolves_conversation(self):
        recorder = Recorder((200, {}))
        backend = ChatwootBackend(self.CONFIG, _client(recorder))

        await backend.close_conversation("42")

        assert str(recorder.requests[0].url).endswith("/conversations/42/toggle_status")
        assert recorder.body(0) == {"status": "resolved"}

    @pytest.mark.asyncio
    async def test_contact_without_id(self):
        backend = ChatwootBackend(self.CONFIG, _client(Recorder((200, {"payload": []}), (200, {"payload": {}}))))

        with pytest.raises(ChatbotBackendError):
            await backend.start_conversation("A", "123@g.us", "hi")

    def test_requires_account_and_inbox(self):
        with pytest.raises(ValueError):
            ChatwootBackend(ChatbotConfig(kind="chatwoot", api_url="https://desk.test"), httpx.AsyncClient())


class TestRegistry:
    def test_known_kinds(self):
        assert set(BACKENDS) == {"typebot", "n8n", "chatwoot"}

    def test_builds_registered_backend(self):
        backend = build_backend(ChatbotConfig(kind="n8n", api_url="https://n8n.test"), httpx.AsyncClient(), timeout=3)
        assert isinstance(backend, N8nBackend)
        assert backend.timeout == 3

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            build_backend(ChatbotConfig(kind="dialogflow", api_url="https://x.test"), httpx.AsyncClient())
