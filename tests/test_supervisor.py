import pytest
import pytest_asyncio

import warden.config as config_module
from warden.config import Config
from warden.orchestrator.orchestrator import OrchestratorOptions
from warden.session.models import SessionOptions, SessionStatus
from warden.supervisor import Supervisor
from tests.conftest import FAST_TIMINGS, mock_gateway, wait_for

TASK = "Build a todo app with tests"


@pytest.fixture
def config(tmp_path, monkeypatch) -> Config:
    monkeypatch.setattr(config_module, "WARDEN_DIR", tmp_path)
    return Config(groq_api_key="test-key", max_duration=0)


@pytest_asyncio.fixture
async def supervisor(host, config, tmp_path):
    sup = Supervisor(host, config=config, gateway=mock_gateway(), timings=FAST_TIMINGS)
    await sup.connect(tmp_path)
    yield sup
    await sup.close()


class TestStart:
    @pytest.mark.asyncio
    async def test_starts_session_with_defaults(self, supervisor: Supervisor):
        assert await supervisor.start(TASK, "s1")

        machine = supervisor.machines["s1"]
        assert machine.status == SessionStatus.AWAITING_READY
        assert machine.session.llm.api_key == "test-key"
        assert machine.session.time_limit_minutes == 0
        assert machine.session.safety_level == "safe"

    @pytest.mark.asyncio
    async def test_refuses_without_api_key(self, host):
        sup = Supervisor(host, config=Config(groq_api_key=None), gateway=mock_gateway(), timings=FAST_TIMINGS)
        assert not await sup.start(TASK, "s1")
        assert sup.machines == {}

    @pytest.mark.asyncio
    async def test_refuses_empty_task_and_duplicates(self, supervisor: Supervisor):
        assert not await supervisor.start("   ", "s1")
        assert await supervisor.start(TASK, "s1")
        assert not await supervisor.start(TASK, "s1")
        assert await supervisor.start(TASK, "s2")

    @pytest.mark.asyncio
    async def test_options_override_config(self, supervisor: Supervisor):
        options = SessionOptions(time_limit_minutes=5, safety_level="yolo", cli_profile="codex")
        assert await supervisor.start(TASK, "s1", options)

        session = supervisor.machines["s1"].session
        assert session.time_limit_minutes == 5
        assert session.safety_level == "yolo"
        assert session.cli_profile == "codex"


class TestRouting:
    @pytest.mark.asyncio
    async def test_output_reaches_session(self, supervisor: Supervisor, host):
        await supervisor.start(TASK, "s1")
        supervisor.on_output("s1", "Welcome to Claude Code\n> ")
        supervisor.on_output("unknown", "ignored")

        await wait_for(lambda: host.texts("s1") == [TASK])

    @pytest.mark.asyncio
    async def test_stop_records_history(self, supervisor: Supervisor):
        await supervisor.start(TASK, "s1")
        assert supervisor.stop("s1")
        assert "s1" not in supervisor.machines
        assert not supervisor.stop("s1")

        await supervisor.channel.drain()
        summaries = await supervisor.history.list_recent()
        assert [s.status for s in summaries] == ["stopped"]

    @pytest.mark.asyncio
    async def test_process_exit_ends_session(self, supervisor: Supervisor):
        await supervisor.start(TASK, "s1")
        machine = supervisor.machines["s1"]
        supervisor.on_process_exit("s1")
        assert machine.status == SessionStatus.ERROR
        assert supervisor.machines == {}

    @pytest.mark.asyncio
    async def test_pause_resume_nudge(self, supervisor: Supervisor, host):
        await supervisor.start(TASK, "s1")
        assert supervisor.pause()
        assert not supervisor.pause("s1")
        assert supervisor.resume("s1")
        assert supervisor.nudge()
        await wait_for(lambda: host.texts("s1") == [TASK])


class TestExclusivity:
    @pytest.mark.asyncio
    async def test_orchestrator_blocks_sessions(self, supervisor: Supervisor, host):
        assert await supervisor.start_orchestrator(TASK, ["a", "b"], OrchestratorOptions())
        assert not await supervisor.start(TASK, "s1")
        assert not await supervisor.start_race(TASK, {"r1": "claude"})

        supervisor.on_output("a", "Welcome to Claude Code\n> ")
        await wait_for(lambda: host.texts("a") == [TASK])

        assert supervisor.stop_orchestrator()
        assert supervisor.orchestrator is None
        assert await supervisor.start(TASK, "s1")

    @pytest.mark.asyncio
    async def test_sessions_block_groups(self, supervisor: Supervisor):
        await supervisor.start(TASK, "s1")
        assert not await supervisor.start_orchestrator(TASK, ["a"])
        assert not await supervisor.start_race(TASK, {"r1": "claude"})

    @pytest.mark.asyncio
    async def test_race_lifecycle(self, supervisor: Supervisor):
        assert await supervisor.start_race(TASK, {"r1": "claude", "r2": "codex"})
        assert supervisor.race.time_limit_minutes == 10

        supervisor.on_output("r1", "Created app.py\n3 passed")
        assert supervisor.race.metrics["r1"].tests_passed == 3

        assert supervisor.stop_race() == "r1"
        assert supervisor.race is None
        assert supervisor.stop_race() is None
