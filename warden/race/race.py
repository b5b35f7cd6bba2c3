import asyncio
import dataclasses
from datetime import UTC, datetime
from enum import StrEnum
from uuid import uuid4

from warden.agent.safety import SafetyLevel
from warden.events import RaceFinished
from warden.logging import get_logger
from warden.race.metrics import RaceMetrics, RacerStatus, announces_done
from warden.session.machine import MachineDeps, SessionMachine
from warden.session.models import ActivityType, LLMBinding, Session, SessionStatus
from warden.session.timers import TimerSet

_logger = get_logger(__name__)

DEFAULT_RACE_MINUTES = 10


class RaceStatus(StrEnum):
    CONFIGURING = "configuring"
    RACING = "racing"
    FINISHED = "finished"


class Race:
    """Several CLIs attempt the same task; the first to announce completion wins.

    Every racer is supervised by its own ``SessionMachine`` and scored live
    from its output. If nobody finishes before ``finish`` is called (or the
    auto-finish timer fires) the highest score wins.
    """

    def __init__(
        self,
        task: str,
        racers: dict[str, str],
        llm: LLMBinding,
        deps: MachineDeps,
        time_limit_minutes: int = DEFAULT_RACE_MINUTES,
        safety_level: SafetyLevel = SafetyLevel.SAFE,
        project_path: str | None = None,
        on_finished=None,
    ):
        if not racers:
            raise ValueError("Race needs at least one racer")
        self.id = uuid4().hex[:12]
        self.task = task
        self.llm = llm
        self.deps = dataclasses.replace(deps, summary_mode="race")
        self.time_limit_minutes = time_limit_minutes
        self.safety_level = safety_level
        self.project_path = project_path
        self.on_finished = on_finished

        self.status = RaceStatus.CONFIGURING
        self.start_time: datetime | None = None
        self.end_time: datetime | None = None
        self.winner_id: str | None = None
        self.metrics = {sid: RaceMetrics(session_id=sid, cli_profile=profile) for sid, profile in racers.items()}
        self.machines: dict[str, SessionMachine] = {}
        self.timers = TimerSet()

    @property
    def scores(self) -> dict[str, int]:
        return {sid: m.score for sid, m in self.metrics.items()}

    async def start(self) -> None:
        self.status = RaceStatus.RACING
        self.start_time = datetime.now(UTC)
        for sid, metrics in self.metrics.items():
            session = Session(
                session_id=sid,
                task=self.task,
                llm=self.llm,
                safety_level=self.safety_level,
                cli_profile=metrics.cli_profile,
                project_path=self.project_path,
            )
            self.machines[sid] = SessionMachine(session, self.deps, on_finished=self._on_machine_finished)
            metrics.activity_log.add(ActivityType.START, f"{metrics.cli_profile} racer ready")

        if self.time_limit_minutes > 0:
            self.timers.schedule("auto-finish", self.time_limit_minutes * 60, self._on_time_up)
        _logger.info("Race %s started with %d racers", self.id, len(self.metrics))
        await asyncio.gather(*(m.start() for m in self.machines.values()))

    def on_output(self, session_id: str, chunk: str) -> bool:
        metrics = self.metrics.get(session_id)
        machine = self.machines.get(session_id)
        if metrics is None or machine is None:
            return False
        if self.status != RaceStatus.RACING:
            return True

        clean = metrics.ingest(chunk)
        if metrics.status == RacerStatus.WAITING and clean.strip():
            metrics.status = RacerStatus.RUNNING
            metrics.start_time = datetime.now(UTC)

        machine.on_output(chunk)
        if machine.session.task_sent and metrics.status != RacerStatus.DONE:
            sent = (machine.session.task, machine.guard.last_response)
            if announces_done(clean, sent):
                self.mark_done(session_id)
        return True

    def on_process_exit(self, session_id: str) -> bool:
        machine = self.machines.get(session_id)
        if machine is None:
            return False
        machine.on_process_exit()
        return True

    def mark_done(self, session_id: str) -> bool:
        """Record that a racer finished. The first caller becomes the winner."""
        metrics = self.metrics.get(session_id)
        if metrics is None or metrics.status == RacerStatus.DONE or self.status != RaceStatus.RACING:
            return False

        metrics.status = RacerStatus.DONE
        metrics.completion_time = datetime.now(UTC)
        metrics.activity_log.add(ActivityType.COMPLETE, "Task completed!")
        if self.winner_id is None:
            self.winner_id = session_id
            _logger.info("Race %s: %s finished first", self.id, session_id)

        machine = self.machines.get(session_id)
        if machine is not None:
            machine.stop(SessionStatus.COMPLETED, reason="Racer finished")
        self._check_all_done()
        return True

    def _on_machine_finished(self, machine: SessionMachine) -> None:
        if self.status == RaceStatus.RACING:
            self._check_all_done()

    def _check_all_done(self) -> None:
        if self.status == RaceStatus.RACING and all(m.status.is_final for m in self.machines.values()):
            self.finish()

    def _on_time_up(self) -> None:
        _logger.info("Race %s: time limit reached (%d min)", self.id, self.time_limit_minutes)
        self.finish()

    def finish(self) -> str | None:
        """End the race and return the winner.

        Keeps the first finisher if there is one, otherwise picks the highest
        score (earliest racer on ties). Calling it again is a no-op.
        """
        if self.status == RaceStatus.FINISHED:
            return self.winner_id
        self.status = RaceStatus.FINISHED
        self.end_time = datetime.now(UTC)
        self.timers.cancel_all()

        if self.winner_id is None:
            best: RaceMetrics | None = None
            for metrics in self.metrics.values():
                if best is None or metrics.score > best.score:
                    best = metrics
            self.winner_id = best.session_id if best else None

        for machine in self.machines.values():
            machine.stop(SessionStatus.STOPPED, reason="Race finished")

        _logger.info("Race %s finished, winner %s, scores %s", self.id, self.winner_id, self.scores)
        self.deps.channel.publish(RaceFinished(race_id=self.id, winner_id=self.winner_id, scores=self.scores))
        if self.on_finished:
            self.on_finished(self)
        return self.winner_id

    async def wait_idle(self) -> None:
        for machine in self.machines.values():
            await machine.wait_idle()
