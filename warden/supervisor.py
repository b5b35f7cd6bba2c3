from pathlib import Path

from warden.agent.safety import SafetyLevel
from warden.channel import Channel
from warden.config import Config, get_config
from warden.database import Database
from warden.events import OrchestratorStopped, SessionStopped
from warden.history.store import HistoryStore, make_history_handler
from warden.host import ProcessHost
from warden.llm.gateway import Gateway, LLMGateway
from warden.logging import get_logger
from warden.memory.extraction import make_learning_handler
from warden.memory.formatting import load_memory_context
from warden.memory.store import LearningStore
from warden.orchestrator.orchestrator import Orchestrator, OrchestratorOptions
from warden.race.race import Race
from warden.session.machine import MachineDeps, MachineTimings, SessionMachine
from warden.session.models import LLMBinding, Session, SessionOptions
from warden.skills.registry import SkillRegistry, skill_dirs

_logger = get_logger(__name__)


class Supervisor:
    """Entry point for the host: routes output and control calls to sessions.

    Standalone sessions, one orchestrator run and one race are mutually
    exclusive. Stores are optional; without ``connect`` sessions still run
    but nothing is persisted and no project memory is injected.
    """

    def __init__(
        self,
        host: ProcessHost,
        config: Config | None = None,
        gateway: Gateway | None = None,
        timings: MachineTimings | None = None,
    ):
        self.config = config or get_config()
        self.host = host
        self.gateway = gateway or LLMGateway()
        self.channel = Channel()
        self.timings = timings or MachineTimings(
            idle_timeout=self.config.idle_timeout,
            ready_timeout=self.config.ready_timeout,
        )

        self.machines: dict[str, SessionMachine] = {}
        self.orchestrator: Orchestrator | None = None
        self.race: Race | None = None

        self.history: HistoryStore | None = None
        self.learnings: LearningStore | None = None
        self._databases: list[Database] = []
        self._connected = False

    async def connect(self, db_dir: Path | None = None) -> None:
        if self._connected:
            return
        db_dir = db_dir or self.config.db_dir

        history_db = Database(db_dir / "history.db")
        await history_db.connect()
        self.history = HistoryStore(history_db.conn)
        await self.history.init_schema()

        memory_db = Database(db_dir / "memory.db")
        await memory_db.connect()
        self.learnings = LearningStore(memory_db.conn)
        await self.learnings.init_schema()
        self._databases = [history_db, memory_db]

        history_handler = make_history_handler(self.history)
        self.channel.subscribe(SessionStopped, history_handler)
        self.channel.subscribe(OrchestratorStopped, history_handler)
        self.channel.subscribe(SessionStopped, make_learning_handler(self.learnings, self.gateway))
        self._connected = True

    async def close(self) -> None:
        machines = list(self.machines.values())
        for machine in machines:
            machine.stop()
        groups = [g for g in (self.orchestrator, self.race) if g is not None]
        if self.orchestrator:
            self.orchestrator.stop()
        if self.race:
            self.race.finish()
        for item in (*machines, *groups):
            await item.wait_idle()
        await self.channel.drain()
        for db in self._databases:
            await db.close()
        self._databases = []
        if isinstance(self.gateway, LLMGateway):
            await self.gateway.close()
        self._connected = False

    # --- Wiring ---

    def _llm(self, provider: str | None) -> LLMBinding | None:
        provider = provider or self.config.default_provider
        api_key = self.config.api_key_for(provider)
        if not api_key:
            _logger.error("No %s API key configured", provider)
            return None
        return LLMBinding(provider=provider, model=self.config.model_for(provider), api_key=api_key)

    async def _memory_context(self, project_path: str | None) -> str:
        if self.learnings is None:
            return ""
        return await load_memory_context(self.learnings, project_path)

    def _skills_context(self, project_path: str | None, active: tuple[str, ...] = ()) -> str:
        registry = SkillRegistry()
        registry.load(skill_dirs(project_path, self.config.skills_dir))
        return registry.skills_context(active or None)

    def _deps(self, project_path: str | None, active_skills: tuple[str, ...] = ()) -> MachineDeps:
        return MachineDeps(
            host=self.host,
            gateway=self.gateway,
            channel=self.channel,
            timings=self.timings,
            memory=self._memory_context if self.learnings is not None else None,
            skills_context=self._skills_context(project_path, active_skills),
            allow_completion=self.config.allow_completion,
        )

    def _busy_with_group(self) -> bool:
        if self.orchestrator is not None:
            _logger.warning("Orchestrator is running")
            return True
        if self.race is not None:
            _logger.warning("Race is running")
            return True
        return False

    # --- Standalone sessions ---

    async def start(self, task: str, session_id: str, options: SessionOptions = SessionOptions()) -> bool:
        if self._busy_with_group():
            return False
        if session_id in self.machines:
            _logger.warning("Session %s is already supervised", session_id)
            return False
        if not task.strip():
            _logger.warning("Refusing to start session %s without a task", session_id)
            return False
        llm = self._llm(options.provider)
        if llm is None:
            return False

        time_limit = options.time_limit_minutes
        session = Session(
            session_id=session_id,
            task=task,
            llm=llm,
            time_limit_minutes=self.config.max_duration if time_limit is None else time_limit,
            safety_level=SafetyLevel(options.safety_level or self.config.default_safety_level),
            cli_profile=options.cli_profile or self.config.cli_profile,
            project_path=options.project_path,
            takeover=options.takeover,
        )
        machine = SessionMachine(
            session,
            self._deps(options.project_path, options.active_skills),
            complete_on_finish=options.complete_on_finish,
            on_finished=self._on_session_finished,
        )
        self.machines[session_id] = machine
        _logger.info("Starting session %s (%s/%s, %s)", session_id, llm.provider, llm.model, session.safety_level)
        await machine.start()
        return True

    def _on_session_finished(self, machine: SessionMachine) -> None:
        if self.machines.get(machine.session_id) is machine:
            del self.machines[machine.session_id]

    def stop(self, session_id: str) -> bool:
        machine = self.machines.get(session_id)
        return machine.stop() if machine else False

    def pause(self, session_id: str | None = None) -> bool:
        if self.orchestrator:
            return self.orchestrator.pause()
        targets = self._targets(session_id)
        return any([m.pause() for m in targets])

    def resume(self, session_id: str | None = None) -> bool:
        if self.orchestrator:
            return self.orchestrator.resume()
        targets = self._targets(session_id)
        return any([m.resume() for m in targets])

    def nudge(self, session_id: str | None = None) -> bool:
        if self.orchestrator:
            return self.orchestrator.nudge(session_id)
        targets = self._targets(session_id)
        return any([m.nudge() for m in targets])

    def _targets(self, session_id: str | None) -> list[SessionMachine]:
        if session_id is None:
            return list(self.machines.values())
        machine = self.machines.get(session_id)
        return [machine] if machine else []

    # --- Host events ---

    def on_output(self, session_id: str, chunk: str) -> None:
        if machine := self.machines.get(session_id):
            machine.on_output(chunk)
        elif self.orchestrator and self.orchestrator.on_output(session_id, chunk):
            return
        elif self.race:
            self.race.on_output(session_id, chunk)

    def on_process_exit(self, session_id: str) -> None:
        if machine := self.machines.get(session_id):
            machine.on_process_exit()
        elif self.orchestrator and self.orchestrator.on_process_exit(session_id):
            return
        elif self.race:
            self.race.on_process_exit(session_id)

    # --- Orchestrator ---

    async def start_orchestrator(
        self,
        master_task: str,
        session_ids: list[str],
        options: OrchestratorOptions = OrchestratorOptions(),
        provider: str | None = None,
    ) -> bool:
        if self.machines:
            _logger.warning("Cannot start orchestrator while %d session(s) are supervised", len(self.machines))
            return False
        if self._busy_with_group():
            return False
        if not session_ids or not master_task.strip():
            return False
        llm = self._llm(provider)
        if llm is None:
            return False

        self.orchestrator = Orchestrator(
            master_task,
            session_ids,
            llm,
            self._deps(options.project_path),
            options=options,
            on_finished=self._on_orchestrator_finished,
        )
        await self.orchestrator.start()
        return True

    def _on_orchestrator_finished(self, orchestrator: Orchestrator) -> None:
        if self.orchestrator is orchestrator:
            self.orchestrator = None

    def stop_orchestrator(self) -> bool:
        return self.orchestrator.stop() if self.orchestrator else False

    # --- Race ---

    async def start_race(
        self,
        task: str,
        racers: dict[str, str],
        project_path: str | None = None,
        time_limit_minutes: int | None = None,
        provider: str | None = None,
    ) -> bool:
        if self.machines or self._busy_with_group():
            return False
        llm = self._llm(provider)
        if llm is None or not racers:
            return False

        self.race = Race(
            task,
            racers,
            llm,
            self._deps(project_path),
            time_limit_minutes=self.config.race_time_limit if time_limit_minutes is None else time_limit_minutes,
            safety_level=SafetyLevel(self.config.default_safety_level),
            project_path=project_path,
            on_finished=self._on_race_finished,
        )
        await self.race.start()
        return True

    def _on_race_finished(self, race: Race) -> None:
        if self.race is race:
            self.race = None

    def stop_race(self) -> str | None:
        return self.race.finish() if self.race else None
