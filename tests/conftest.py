"""Shared fixtures: temp-dir stores, a fake clock, chat and agent API."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from relay.agent_api import AgentClient
from relay.approvals import Relay
from relay.control import ControlStore
from relay.filestore import JsonFileStore
from relay.state import PendingStore
from relay.telegram_bot import SentMessage

CHAT_ID = -5000


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeChat:
    """Records everything the relay would send to Telegram."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.edits: list[dict[str, Any]] = []
        self.notifications: list[str] = []
        self.fail_send = False
        self._next_message_id = 100

    async def send_message(self, text, buttons=None):
        if self.fail_send:
            return None
        self._next_message_id += 1
        self.sent.append({"text": text, "buttons": buttons, "message_id": self._next_message_id})
        return SentMessage(chat_id=CHAT_ID, message_id=self._next_message_id)

    async def edit_message(self, chat_id, message_id, text=None, clear_buttons=True):
        self.edits.append(
            {"chat_id": chat_id, "message_id": message_id, "text": text, "clear_buttons": clear_buttons}
        )
        return True

    async def notify(self, text):
        self.notifications.append(text)


class AgentServer:
    """In-memory stand-in for the agent HTTP API, served through httpx.MockTransport."""

    def __init__(self):
        self.requests: list[tuple[str, str, Any]] = []
        self.sessions: list[dict] = [{"id": "ses_existing", "time": {"updated": 10}}]
        self.questions: list[dict] = []
        self.messages: dict[str, list[dict]] = {}
        self.fail_status: int | None = None

    def handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        path = request.url.path
        self.requests.append((request.method, path, body))
        if self.fail_status:
            return httpx.Response(self.fail_status, text="agent failure")

        if request.method == "GET" and path == "/session":
            return httpx.Response(200, json=self.sessions)
        if request.method == "POST" and path == "/session":
            return httpx.Response(200, json={"id": "ses_created"})
        if request.method == "GET" and path == "/question":
            return httpx.Response(200, json=self.questions)
        if request.method == "GET" and path.endswith("/message"):
            return httpx.Response(200, json=self.messages.get(path.split("/")[2], []))
        return httpx.Response(200, json=True)

    def calls(self, method: str, path: str) -> list[Any]:
        return [body for m, p, body in self.requests if m == method and p == path]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def pending_file(tmp_path) -> JsonFileStore:
    return JsonFileStore(tmp_path / "pending.json", lock_wait=0.5)


@pytest.fixture
def pending(pending_file, clock) -> PendingStore:
    return PendingStore(pending_file, open_question_ttl=360.0, request_ttl=1800.0, clock=clock)


@pytest.fixture
def control(tmp_path, clock) -> ControlStore:
    return ControlStore(JsonFileStore(tmp_path / "control.json", lock_wait=0.5), clock=clock)


@pytest.fixture
def chat() -> FakeChat:
    return FakeChat()


@pytest.fixture
def agent_server() -> AgentServer:
    return AgentServer()


@pytest.fixture
def agent(agent_server) -> AgentClient:
    return AgentClient("http://agent.test", transport=httpx.MockTransport(agent_server.handle))


@pytest.fixture
def relay(pending, control, agent, chat, clock) -> Relay:
    return Relay(
        pending,
        control,
        agent,
        chat,
        question_match_attempts=1,
        stall_threshold=90.0,
        retry_limit=1,
        clock=clock,
    )
