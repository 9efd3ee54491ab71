from __future__ import annotations

import asyncio
import json
import os
import socket
import tempfile
from typing import Any, List, Optional

import pytest

# Keep test runs away from the developer's database, logs and API key.
_TEST_ROOT = tempfile.mkdtemp(prefix="companion-relay-tests-")
os.environ.setdefault("RELAY_DB_PATH", os.path.join(_TEST_ROOT, "relay.db"))
os.environ.setdefault("RELAY_LOG_DIR", os.path.join(_TEST_ROOT, "logs"))
os.environ["OPENAI_API_KEY"] = ""

from companion_relay.clients.openai_client import GeneratedReply, MessageScore  # noqa: E402
from companion_relay.config.settings import Settings  # noqa: E402
from companion_relay.core.registry import ConnectionRegistry  # noqa: E402
from companion_relay.memory.repository import ConversationStore  # noqa: E402


class NetworkBlockedError(RuntimeError):
    pass


def _blocked(*_args: Any, **_kwargs: Any) -> Any:
    raise NetworkBlockedError(
        "Network access is disabled during tests. "
        "Mark the test with @pytest.mark.network or set ALLOW_NETWORK=1."
    )


@pytest.fixture(autouse=True)
def _disable_network(monkeypatch: pytest.MonkeyPatch, request: pytest.FixtureRequest) -> None:
    """Prevent accidental outbound network calls in unit tests."""

    if os.getenv("ALLOW_NETWORK") == "1":
        return

    if request.node.get_closest_marker("network"):
        return

    monkeypatch.setattr(socket, "create_connection", _blocked)
    monkeypatch.setattr(socket, "getaddrinfo", _blocked)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeConnection:
    """Stands in for a WebSocket: records every frame it is sent."""

    def __init__(self, name: str, fail: bool = False, delay: float = 0.0) -> None:
        self.name = name
        self.fail = fail
        self.delay = delay
        self.sent: List[Any] = []
        self.closed_with: Optional[int] = None

    async def send_text(self, data: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError(f"{self.name}: socket closed")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    def __repr__(self) -> str:
        return f"FakeConnection({self.name!r})"


class StubGenerator:
    """Scripted response generator; records every call it receives."""

    def __init__(
        self,
        replies: Optional[List[str]] = None,
        tokens: Optional[List[Optional[str]]] = None,
        error: Optional[BaseException] = None,
        delay: float = 0.0,
    ) -> None:
        self.replies = list(replies or [])
        self.tokens = list(tokens or [])
        self.error = error
        self.delay = delay
        self.calls: List[dict] = []
        self.score_calls: List[dict] = []
        self.active = 0
        self.max_active = 0

    async def generate_counterpart_message(self, content, conversation_id, continuation_token=None, history=None):
        self.calls.append(
            {
                "content": content,
                "conversation_id": conversation_id,
                "continuation_token": continuation_token,
                "history": list(history or []),
            }
        )
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            reply = self.replies.pop(0) if self.replies else f"echo: {content}"
            token = self.tokens.pop(0) if self.tokens else None
            return GeneratedReply(content=reply, continuation_token=token)
        finally:
            self.active -= 1

    async def score_message(self, content, history=None, subject_attributes=None):
        self.score_calls.append(
            {"content": content, "history": list(history or []), "subject_attributes": subject_attributes}
        )
        return MessageScore(score=8, feedback="Warm and specific. Nice!")


class SpyRegistry(ConnectionRegistry):
    """Real registry that also remembers every broadcast call."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.broadcasts: List[tuple] = []

    async def broadcast(self, conversation_id, payload):
        self.broadcasts.append((conversation_id, payload))
        return await super().broadcast(conversation_id, payload)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def store(tmp_path) -> ConversationStore:
    s = ConversationStore(tmp_path / "relay.db")
    s.initialize()
    return s


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        openai_api_key="",
        db_path=str(tmp_path / "relay.db"),
        generator_timeout_seconds=2.0,
        send_timeout_seconds=1.0,
    )


@pytest.fixture()
def registry() -> SpyRegistry:
    return SpyRegistry(send_timeout_seconds=1.0)
