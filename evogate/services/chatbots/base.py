from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

import httpx

from evogate.errors import ChatbotBackendError
from evogate.logging_config import get_logger

logger = get_logger("chatbots")


@dataclass(frozen=True)
class BotTurn:
    """What a chatbot backend answered for one inbound message."""

    session_ref: str
    replies: tuple[str, ...] = ()
    awaiting_user: bool = False
    context: Mapping[str, Any] = field(default_factory=dict)


class ChatbotBackend(Protocol):
    kind: str

    async def start_conversation(
        self, instance: str, remote_jid: str, text: str, *, push_name: Optional[str] = None
    ) -> BotTurn: ...

    async def continue_conversation(self, session_ref: str, text: str) -> BotTurn: ...

    async def close_conversation(self, session_ref: str) -> None: ...


async def request_json(
    client: httpx.AsyncClient,
    kind: str,
    method: str,
    url: str,
    *,
    payload: Optional[dict] = None,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: Optional[float] = None,
) -> Any:
    """Send a JSON request and return the decoded body. Raises ChatbotBackendError."""
    try:
        response = await client.request(method, url, json=payload, params=params, headers=headers, timeout=timeout)
    except httpx.HTTPError as exc:
        logger.error(f"{kind} request failed: {exc}", extra={"context": {"kind": kind, "url": url}})
        raise ChatbotBackendError(kind, f"request failed: {exc}") from exc

    if response.status_code >= 400:
        logger.error(
            f"{kind} error response: {response.status_code}",
            extra={"context": {"kind": kind, "url": url, "body": response.text[:200]}},
        )
        raise ChatbotBackendError(kind, f"HTTP {response.status_code}", status_code=response.status_code)

    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError as exc:
        raise ChatbotBackendError(kind, "invalid JSON response") from exc


async def post_json(
    client: httpx.AsyncClient,
    kind: str,
    url: str,
    payload: Optional[dict] = None,
    *,
    headers: Optional[dict] = None,
    timeout: Optional[float] = None,
) -> Any:
    return await request_json(client, kind, "POST", url, payload=payload or {}, headers=headers, timeout=timeout)


async def get_json(
    client: httpx.AsyncClient,
    kind: str,
    url: str,
    *,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: Optional[float] = None,
) -> Any:
    return await request_json(client, kind, "GET", url, params=params, headers=headers, timeout=timeout)
