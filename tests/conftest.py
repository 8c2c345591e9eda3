import asyncio
import os

# evogate.database builds its engine at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SWEEP_WORKER_ENABLED", "false")

from datetime import datetime, timezone  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from evogate.database import build_engine, init_db  # noqa: E402
from evogate.errors import ChatbotBackendError  # noqa: E402
from evogate.services.chatbots.base import BotTurn  # noqa: E402
from evogate.services.instance_service import provision_instance  # noqa: E402
from evogate.services.session_store import SqlSessionStore  # noqa: E402
from evogate.services.settings_service import ChatbotConfig  # noqa: E402


class FakeRedis:
    def __init__(self, fail_times: int = 0):
        self.lists: dict[str, list] = {}
        self.fail_times = fail_times
        self.calls = 0

    async def rpush(self, key, value):
        from redis.exceptions import ConnectionError as RedisConnectionError

        self.calls += 1
        if self.calls <= self.fail_times:
            raise RedisConnectionError("broker down")
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])

    async def aclose(self):
        return None


class FakeBackend:
    """In-memory chatbot backend recording every call."""

    def __init__(self, kind: str = "typebot", replies=("Hello!",), delay: float = 0.0):
        self.kind = kind
        self.replies = tuple(replies)
        self.delay = delay
        self.started: list[tuple] = []
        self.continued: list[tuple] = []
        self.closed: list[str] = []
        self.fail_with = None
        self.on_start = None

    async def start_conversation(self, instance, remote_jid, text, *, push_name=None):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with:
            raise self.fail_with
        self.started.append((instance, remote_jid, text))
        if self.on_start:
            self.on_start(instance, remote_jid)
        return BotTurn(session_ref=f"ref-{len(self.started)}", replies=self.replies, awaiting_user=True)

    async def continue_conversation(self, session_ref, text):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with:
            raise self.fail_with
        self.continued.append((session_ref, text))
        return BotTurn(session_ref=session_ref, replies=(f"echo: {text}",), awaiting_user=True)

    async def close_conversation(self, session_ref):
        self.closed.append(session_ref)


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite:///:memory:")
    init_db(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def instance_a(session_factory):
    db = session_factory()
    try:
        provision_instance(db, "A", now=datetime(2024, 1, 1, tzinfo=timezone.utc))
        db.commit()
    finally:
        db.close()
    return "A"


@pytest.fixture
def store(session_factory):
    return SqlSessionStore(session_factory)


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def typebot_config():
    return ChatbotConfig(kind="typebot", api_url="https://typebot.test", bot_id="bot-1")


@pytest.fixture
def backend_error():
    return ChatbotBackendError("typebot", "HTTP 500", status_code=500)
