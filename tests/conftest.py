import asyncio
import json
from collections.abc import AsyncGenerator
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from warden.channel import Channel
from warden.database import Database
from warden.llm.types import CompletionResult
from warden.session.machine import MachineDeps, MachineTimings
from warden.session.models import LLMBinding, Session
from warden.usage import Usage

FAST_TIMINGS = MachineTimings(
    idle_timeout=0.05,
    waiting_idle=0.02,
    working_idle=0.05,
    ready_timeout=0.1,
    post_ready_check=0.02,
    status_debounce=0.01,
    working_log_gap=0.0,
    retry_attempts=2,
    retry_backoff=0.0,
)

TEST_LLM = LLMBinding(provider="groq", model="test-model", api_key="test-key")


class FakeHost:
    def __init__(self, recent: str = ""):
        self.recent = recent
        self.sent: list[tuple[str, str]] = []

    async def send_text(self, session_id: str, text: str) -> None:
        self.sent.append((session_id, text))

    async def get_recent_buffer(self, session_id: str, max_bytes: int) -> str:
        return self.recent[-max_bytes:]

    def texts(self, session_id: str | None = None) -> list[str]:
        return [text for sid, text in self.sent if session_id is None or sid == session_id]


def mock_llm_response(content: str | dict) -> CompletionResult:
    if isinstance(content, dict):
        content = json.dumps(content)
    return CompletionResult.ok(content, Usage(prompt_tokens=100, completion_tokens=10))


def mock_gateway(*contents: str | dict) -> AsyncMock:
    """Gateway whose completions return ``contents`` in order, then waits forever."""
    gateway = AsyncMock()
    gateway.complete.side_effect = [mock_llm_response(c) for c in contents] + [
        mock_llm_response({"action": "wait"})
    ] * 50
    return gateway


def make_session(session_id: str = "s1", task: str = "Build a todo app with tests", **kwargs) -> Session:
    return Session(session_id=session_id, task=task, llm=TEST_LLM, **kwargs)


def make_deps(host: FakeHost, gateway, timings: MachineTimings = FAST_TIMINGS, **kwargs) -> MachineDeps:
    return MachineDeps(host=host, gateway=gateway, channel=Channel(), timings=timings, **kwargs)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncGenerator[Database]:
    db = Database(tmp_path / "test.db")
    await db.connect()
    yield db
    await db.close()
