import json

import httpx
import pytest

from evogate.config import Settings
from evogate.services.transport_service import TransportClient


def _transport(handler, base_url="https://wa.test/", api_key="key"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TransportClient(base_url, api_key, client)


class TestSendText:
    @pytest.mark.asyncio
    async def test_posts_to_instance_endpoint(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(201, json={"key": {"id": "OUT1"}})

        ok = await _transport(handler).send_text("A", "123@g.us", "hello", delay_ms=1200)

        assert ok is True
        assert str(requests[0].url) == "https://wa.test/message/sendText/A"
        assert requests[0].headers["apikey"] == "key"
        assert json.loads(requests[0].content) == {"number": "123@g.us", "text": "hello", "delay": 1200}

    @pytest.mark.asyncio
    async def test_error_status_is_false(self):
        ok = await _transport(lambda request: httpx.Response(500)).send_text("A", "123@g.us", "hello")
        assert ok is False

    @pytest.mark.asyncio
    async def test_network_error_is_false(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        assert await _transport(handler).send_text("A", "123@g.us", "hello") is False

    @pytest.mark.asyncio
    async def test_missing_base_url(self):
        client = TransportClient("", None, httpx.AsyncClient())
        assert await client.send_text("A", "123@g.us", "hello") is False

    @pytest.mark.asyncio
    async def test_empty_text_is_not_sent(self):
        calls = []
        transport = _transport(lambda request: calls.append(request) or httpx.Response(200))

        assert await transport.send_text("A", "123@g.us", "") is False
        assert calls == []

    def test_from_settings(self):
        client = TransportClient.from_settings(
            Settings(transport_url="https://wa.test/", transport_api_key="k"), httpx.AsyncClient()
        )
        assert client.base_url == "https://wa.test"
        assert client.api_key == "k"


class TestSendReplies:
    @pytest.mark.asyncio
    async def test_sends_in_order_and_counts(self):
        texts = []

        def handler(request):
            text = json.loads(request.content)["text"]
            texts.append(text)
            return httpx.Response(500 if text == "two" else 200)

        sent = await _transport(handler).send_replies("A", "123@g.us", ("one", "two", "three"))

        assert texts == ["one", "two", "three"]
        assert sent == 2
