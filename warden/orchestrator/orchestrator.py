import asyncio
import dataclasses
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from uuid import uuid4

from warden.agent.safety import SafetyLevel
from warden.events import OrchestratorStopped
from warden.history.models import SessionSummary
from warden.logging import get_logger
from warden.orchestrator.decompose import decompose_task
from warden.session.machine import MachineDeps, SessionMachine
from warden.session.models import ActivityLog, ActivityType, LLMBinding, Session, SessionStatus
from warden.session.timers import TimerSet
from warden.usage import Usage

_logger = get_logger(__name__)

PEER_TASK_CHARS = 80
PEER_LOG_CHARS = 50

_MODE_NOTES = {
    "split": "These terminals are working on sub-tasks of the same project. Avoid duplicating their work.",
    "parallel": "These terminals are working on separate tasks. Avoid interfering with their files.",
}


class OrchestratorMode(StrEnum):
    SPLIT = "split"
    PARALLEL = "parallel"


@dataclass(frozen=True)
class DecomposedTask:
    session_id: str
    task: str
    order: int


@dataclass(frozen=True)
class OrchestratorOptions:
    mode: OrchestratorMode = OrchestratorMode.PARALLEL
    # Per-session tasks for parallel mode; missing ids get the master task
    tasks: dict[str, str] = field(default_factory=dict)
    time_limit_minutes: int = 0
    safety_level: SafetyLevel = SafetyLevel.SAFE
    project_path: str | None = None
    cli_profile: str = "claude"


class Orchestrator:
    """Supervises several CLI sessions working towards one master task.

    In split mode the master task is decomposed and the sessions run one
    after another, each starting when the previous one finishes. In parallel
    mode every session starts at once. Each session is driven by its own
    ``SessionMachine``; the orchestrator only fans out control calls, keeps
    the coordinator log and decides when the whole run is over.
    """

    def __init__(
        self,
        master_task: str,
        session_ids: list[str],
        llm: LLMBinding,
        deps: MachineDeps,
        options: OrchestratorOptions = OrchestratorOptions(),
        on_finished=None,
    ):
        if not session_ids:
            raise ValueError("Orchestrator needs at least one session")
        self.id = uuid4().hex[:12]
        self.master_task = master_task
        self.session_ids = list(session_ids)
        self.llm = llm
        self.deps = dataclasses.replace(deps, peers=self.peers, summary_mode=options.mode.value)
        self.options = options
        self.on_finished = on_finished

        self.status = SessionStatus.CONFIGURING
        self.start_time = datetime.now(UTC)
        self.end_time: datetime | None = None
        self.coordinator_log = ActivityLog()
        self.decomposed_tasks: list[DecomposedTask] = []
        self.machines: dict[str, SessionMachine] = {}
        self.timers = TimerSet()
        self._tasks: set[asyncio.Task] = set()

    @property
    def mode(self) -> OrchestratorMode:
        return self.options.mode

    def _log(self, type: ActivityType, message: str) -> None:
        self.coordinator_log.add(type, message)
        _logger.info("Orchestrator %s: %s", self.id, message)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and (exc := task.exception()):
            _logger.error("Orchestrator %s: background task failed", self.id, exc_info=exc)

    async def _assign_tasks(self) -> list[str]:
        if self.mode == OrchestratorMode.PARALLEL:
            return [self.options.tasks.get(sid, self.master_task) for sid in self.session_ids]

        self._log(ActivityType.DECISION, "Decomposing master task...")
        subtasks = await decompose_task(self.master_task, len(self.session_ids), self.llm, self.deps.gateway)
        if not subtasks:
            self._log(ActivityType.ERROR, "Failed to decompose task. Using master task for all terminals.")
            return [self.master_task] * len(self.session_ids)

        self.decomposed_tasks = [
            DecomposedTask(session_id=sid, task=task, order=i)
            for i, (sid, task) in enumerate(zip(self.session_ids, subtasks, strict=True))
        ]
        self._log(ActivityType.DECISION, f"Decomposed into {len(self.decomposed_tasks)} sub-tasks")
        return subtasks

    async def start(self) -> None:
        self._log(ActivityType.START, f"Orchestrator started ({self.mode}, {len(self.session_ids)} terminals)")
        tasks = await self._assign_tasks()

        for sid, task in zip(self.session_ids, tasks, strict=True):
            session = Session(
                session_id=sid,
                task=task,
                llm=self.llm,
                safety_level=self.options.safety_level,
                cli_profile=self.options.cli_profile,
                project_path=self.options.project_path,
            )
            self.machines[sid] = SessionMachine(
                session, self.deps, complete_on_finish=True, on_finished=self._on_machine_finished
            )

        self.status = SessionStatus.RUNNING
        if self.options.time_limit_minutes > 0:
            self.timers.schedule("deadline", self.options.time_limit_minutes * 60, self._on_deadline)

        if self.mode == OrchestratorMode.SPLIT:
            await self.machines[self.session_ids[0]].start()
        else:
            await asyncio.gather(*(m.start() for m in self.machines.values()))

    def _on_deadline(self) -> None:
        self._log(ActivityType.COMPLETE, f"Time limit reached ({self.options.time_limit_minutes} minutes)")
        self.stop(SessionStatus.COMPLETED)

    def _on_machine_finished(self, machine: SessionMachine) -> None:
        if self.status.is_final:
            return
        self._log(ActivityType.COMPLETE, f"Terminal {machine.session_id} finished ({machine.status})")

        if self.mode == OrchestratorMode.SPLIT:
            index = self.session_ids.index(machine.session_id)
            if index + 1 < len(self.session_ids):
                following = self.machines[self.session_ids[index + 1]]
                if following.status == SessionStatus.CONFIGURING:
                    self._log(ActivityType.START, f"Handing off to terminal {following.session_id}")
                    self._spawn(following.start())
                    return

        if all(m.status.is_final for m in self.machines.values()):
            self._log(ActivityType.COMPLETE, "All terminals finished! Stopping orchestrator.")
            self.stop(SessionStatus.COMPLETED)

    def peers(self, session_id: str) -> tuple[tuple[str, ...], str | None]:
        lines = []
        for sid, machine in self.machines.items():
            if sid == session_id:
                continue
            s = machine.session
            last = s.activity_log.last()
            suffix = f" ({last.message[:PEER_LOG_CHARS]})" if last else ""
            lines.append(f'- "{s.task[:PEER_TASK_CHARS]}" [{s.status}]{suffix}')
        if not lines:
            return (), None
        return tuple(lines), _MODE_NOTES[self.mode]

    def on_output(self, session_id: str, chunk: str) -> bool:
        machine = self.machines.get(session_id)
        if machine is None:
            return False
        machine.on_output(chunk)
        return True

    def on_process_exit(self, session_id: str) -> bool:
        machine = self.machines.get(session_id)
        if machine is None:
            return False
        machine.on_process_exit()
        return True

    def pause(self) -> bool:
        if self.status != SessionStatus.RUNNING:
            return False
        self.status = SessionStatus.PAUSED
        for machine in self.machines.values():
            machine.pause()
        self._log(ActivityType.STOP, "Paused")
        return True

    def resume(self) -> bool:
        if self.status != SessionStatus.PAUSED:
            return False
        self.status = SessionStatus.RUNNING
        for machine in self.machines.values():
            machine.resume()
        self._log(ActivityType.START, "Resumed")
        return True

    def nudge(self, session_id: str | None = None) -> bool:
        if self.status != SessionStatus.RUNNING:
            return False
        targets = [self.machines[session_id]] if session_id in self.machines else list(self.machines.values())
        return any([m.nudge() for m in targets])

    def stop(self, status: SessionStatus = SessionStatus.STOPPED) -> bool:
        if self.status.is_final:
            return False
        self.status = status
        self.end_time = datetime.now(UTC)
        self.timers.cancel_all()
        for machine in self.machines.values():
            if machine.status.is_final:
                continue
            started = machine.status != SessionStatus.CONFIGURING
            machine.stop(status if started else SessionStatus.STOPPED, reason=f"Orchestrator {status}")
        self._log(ActivityType.STOP, f"Orchestrator {status}")

        self.deps.channel.publish(OrchestratorStopped(summary=self.summary()))
        if self.on_finished:
            self.on_finished(self)
        return True

    def summary(self) -> SessionSummary:
        end = self.end_time or datetime.now(UTC)
        stats: dict[str, int] = {}
        usage = Usage()
        for machine in self.machines.values():
            for key, value in machine.session.stats.to_dict().items():
                stats[key] = stats.get(key, 0) + value
            usage += machine.session.usage
        return SessionSummary(
            id=f"orchestrator_{self.id}",
            task=self.master_task,
            status=self.status.value,
            start_time=self.start_time,
            end_time=end,
            duration=int((end - self.start_time).total_seconds()),
            provider=self.llm.provider,
            model=self.llm.model,
            mode=self.mode.value,
            project_path=self.options.project_path,
            terminal_count=len(self.session_ids),
            stats=stats,
            usage=usage.to_dict(),
            activity_log=[e.to_dict() for e in self.coordinator_log],
        )

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        for machine in self.machines.values():
            await machine.wait_idle()
