import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from warden.agent.decision import DecisionEngine, Verdict, VerdictKind, failure_backoff
from warden.agent.fast_path import FastPathKind, FastPathResult, fast_path
from warden.agent.guard import RepeatGuard
from warden.agent.safety import blocked_pattern
from warden.channel import Channel
from warden.errors import InvalidTransition
from warden.events import SessionStarted, SessionStopped
from warden.history.models import SessionSummary
from warden.host import ProcessHost
from warden.llm.gateway import Gateway
from warden.logging import get_logger
from warden.session.models import OUTPUT_BUFFER_CAP, ActivityType, Session, SessionSnapshot, SessionStatus
from warden.session.timers import TimerSet
from warden.terminal.ansi import strip_ansi
from warden.terminal.classifier import classify, detect_task_completion, extract_stats, has_ready_prompt
from warden.terminal.profiles import TerminalStatus, get_profile

_logger = get_logger(__name__)

type MemoryLoader = Callable[[str | None], Awaitable[str]]
type PeerProvider = Callable[[str], tuple[tuple[str, ...], str | None]]
type FinishedCallback = Callable[["SessionMachine"], None]

S = SessionStatus

TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    S.CONFIGURING: frozenset({S.AWAITING_READY, S.RUNNING, S.STOPPED, S.ERROR}),
    S.AWAITING_READY: frozenset({S.RUNNING, S.PAUSED, S.COMPLETED, S.STOPPED, S.ERROR}),
    S.RUNNING: frozenset({S.PAUSED, S.COMPLETED, S.STOPPED, S.ERROR}),
    S.PAUSED: frozenset({S.RUNNING, S.AWAITING_READY, S.COMPLETED, S.STOPPED, S.ERROR}),
    S.COMPLETED: frozenset(),
    S.STOPPED: frozenset(),
    S.ERROR: frozenset(),
}

# Timer names
IDLE = "idle"
READY = "ready"
DEADLINE = "deadline"
STATUS = "status"


@dataclass(frozen=True)
class MachineTimings:
    idle_timeout: float = 5.0
    waiting_idle: float = 1.5
    working_idle: float = 8.0
    ready_timeout: float = 10.0
    post_ready_check: float = 2.0
    status_debounce: float = 1.5
    working_log_gap: float = 0.5
    stale_working_checks: int = 3
    retry_attempts: int = 3
    retry_backoff: float = 1.0

    def idle_delay(self, status: TerminalStatus | None) -> float:
        match status:
            case TerminalStatus.WAITING:
                return min(self.idle_timeout, self.waiting_idle)
            case TerminalStatus.WORKING:
                return max(self.idle_timeout, self.working_idle)
        return self.idle_timeout


@dataclass
class MachineDeps:
    host: ProcessHost
    gateway: Gateway
    channel: Channel
    timings: MachineTimings = MachineTimings()
    memory: MemoryLoader | None = None
    skills_context: str = ""
    allow_completion: bool = False
    peers: PeerProvider | None = None
    summary_mode: str = "single"


class SessionMachine:
    """Drives one supervised CLI session.

    The machine is the only writer of its ``Session``. Output chunks, timers
    and nudges all funnel into ``_trigger``, which runs at most one decision
    cycle at a time; triggers that arrive while a cycle is in flight are
    dropped. Every timer lives in one ``TimerSet`` so ``stop`` can cancel
    them synchronously.
    """

    def __init__(
        self,
        session: Session,
        deps: MachineDeps,
        complete_on_finish: bool = False,
        on_finished: FinishedCallback | None = None,
    ):
        self.session = session
        self.deps = deps
        self.complete_on_finish = complete_on_finish
        self.on_finished = on_finished
        self.profile = get_profile(session.cli_profile)
        self.guard = RepeatGuard()
        self.engine = DecisionEngine(
            deps.gateway,
            allow_completion=deps.allow_completion,
            attempts=deps.timings.retry_attempts,
            backoff=deps.timings.retry_backoff,
        )
        self.timers = TimerSet()
        self._tasks: set[asyncio.Task] = set()
        self._processing = False
        self._force_next = False
        self._paused_from: SessionStatus | None = None

        self._classified: TerminalStatus | None = None
        self._logged_status: TerminalStatus | None = None
        self._pending_status: TerminalStatus | None = None
        self._status_changed_at = 0.0
        self._stale_checks = 0
        self._output_seq = 0
        self._fast_path_seq = -1

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    @property
    def processing(self) -> bool:
        return self._processing

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    def _log(self, type: ActivityType, message: str, detail: str | None = None) -> None:
        self.session.activity_log.add(type, message, detail)

    def _transition(self, target: SessionStatus) -> None:
        current = self.session.status
        if target not in TRANSITIONS[current]:
            raise InvalidTransition(self.session_id, current, target)
        self.session.status = target
        _logger.info("Session %s: %s -> %s", self.session_id, current, target)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        if exc := task.exception():
            _logger.error("Session %s: background task failed", self.session_id, exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait until no background work is in flight (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # --- Lifecycle ---

    async def start(self) -> None:
        s = self.session
        self._log(ActivityType.START, f"Session started: {s.task}")
        self.deps.channel.publish(SessionStarted(session_id=s.session_id, task=s.task, takeover=s.takeover))

        if s.time_limit_minutes > 0:
            self.timers.schedule(DEADLINE, s.time_limit_minutes * 60, self._on_deadline)

        if s.takeover:
            recent = await self.deps.host.get_recent_buffer(s.session_id, OUTPUT_BUFFER_CAP)
            if self.status.is_final:
                return
            if recent:
                s.output.append(recent)
                self._output_seq += 1
            s.task_sent = True
            self._transition(S.RUNNING)
            self._log(ActivityType.READY, "Taking over running session")
            self._trigger("takeover")
            return

        self._transition(S.AWAITING_READY)
        self.timers.schedule(READY, self.deps.timings.ready_timeout, self._on_ready_timeout)
        if has_ready_prompt(s.output.text, self.profile):
            self._become_ready("CLI ready prompt detected")

    def stop(self, status: SessionStatus = S.STOPPED, reason: str | None = None) -> bool:
        """End the session. Returns False if it had already ended."""
        s = self.session
        if s.status.is_final:
            return False
        self.timers.cancel_all()
        self._transition(status)
        s.end_time = datetime.now(UTC)
        s.is_idle = True
        self._log(ActivityType.STOP, reason or f"Session {status}")

        self.deps.channel.publish(
            SessionStopped(
                summary=SessionSummary.from_session(s, mode=self.deps.summary_mode),
                activity=tuple(s.activity_log),
                llm=s.llm,
                project_path=s.project_path,
            )
        )
        if self.on_finished:
            self.on_finished(self)
        return True

    def pause(self) -> bool:
        if self.status not in (S.RUNNING, S.AWAITING_READY):
            return False
        self._paused_from = self.status
        self.timers.cancel(IDLE)
        self.timers.cancel(READY)
        self.timers.cancel(STATUS)
        self._transition(S.PAUSED)
        self._log(ActivityType.STOP, "Paused")
        return True

    def resume(self) -> bool:
        if self.status != S.PAUSED:
            return False
        target = self._paused_from or S.RUNNING
        self._paused_from = None
        self._transition(target)
        self._log(ActivityType.START, "Resumed")
        if target == S.AWAITING_READY:
            self.timers.schedule(READY, self.deps.timings.ready_timeout, self._on_ready_timeout)
        else:
            self._schedule_idle()
        return True

    def nudge(self) -> bool:
        """Run a decision cycle now, even if the CLI looks busy.

        A session still waiting for its ready prompt is started instead.
        """
        if self.status == S.AWAITING_READY:
            self._become_ready("Nudged, sending task")
            return True
        if self.status != S.RUNNING:
            return False
        self._force_next = True
        self._log(ActivityType.DECISION, "Nudged")
        return self._trigger("nudge")

    def on_process_exit(self) -> None:
        self.stop(S.ERROR, reason="CLI process exited")

    # --- Output ---

    def on_output(self, chunk: str) -> None:
        s = self.session
        if s.status.is_final:
            return
        s.output.append(chunk)
        self._output_seq += 1
        self._stale_checks = 0

        match s.status:
            case S.CONFIGURING:
                return
            case S.PAUSED:
                return
            case S.AWAITING_READY:
                if has_ready_prompt(s.output.text, self.profile):
                    self._become_ready("CLI ready prompt detected")
                return

        status = classify(s.output.text, self.profile)
        self._classified = status
        self._observe(status)
        self._schedule_idle()

    def _observe(self, status: TerminalStatus) -> None:
        self.session.is_idle = status in (TerminalStatus.WAITING, TerminalStatus.IDLE)
        if status == self._logged_status:
            self._pending_status = None
            self.timers.cancel(STATUS)
            return

        t = self.deps.timings
        gap = self._now() - self._status_changed_at
        if gap >= t.status_debounce or (status == TerminalStatus.WORKING and gap >= t.working_log_gap):
            self._commit_status(status)
            return
        self._pending_status = status
        self.timers.schedule(STATUS, t.status_debounce - gap, self._flush_status)

    def _flush_status(self) -> None:
        if self._pending_status is not None and self._pending_status != self._logged_status:
            self._commit_status(self._pending_status)
        self._pending_status = None

    def _commit_status(self, status: TerminalStatus) -> None:
        self._logged_status = status
        self._status_changed_at = self._now()
        match status:
            case TerminalStatus.WORKING:
                self._log(ActivityType.WORKING, "CLI is working")
            case TerminalStatus.WAITING:
                self._log(ActivityType.WAITING, "CLI is waiting for input")

    # --- Timers ---

    def _schedule_idle(self, delay: float | None = None) -> None:
        if delay is None:
            delay = self.deps.timings.idle_delay(self._classified)
        self.timers.schedule(IDLE, delay, self._on_idle)

    def _on_idle(self) -> None:
        if self.status != S.RUNNING:
            return
        if self._classified == TerminalStatus.WORKING:
            self._stale_checks += 1
        self._trigger("idle")

    def _on_ready_timeout(self) -> None:
        self._become_ready(f"No ready prompt after {self.deps.timings.ready_timeout:g}s, sending task")

    def _on_deadline(self) -> None:
        minutes = self.session.time_limit_minutes
        self._log(ActivityType.COMPLETE, f"Time limit reached ({minutes} min)")
        self.stop(S.COMPLETED, reason="Time limit reached")

    def _become_ready(self, reason: str) -> None:
        s = self.session
        if s.status != S.AWAITING_READY:
            return
        self.timers.cancel(READY)
        self._transition(S.RUNNING)
        self._log(ActivityType.READY, reason)
        s.task_sent = True
        self._spawn(self._send(s.task, is_task=True))
        self._schedule_idle(self.deps.timings.post_ready_check)

    # --- Decision cycle ---

    def _trigger(self, reason: str) -> bool:
        if self.status != S.RUNNING or self._processing:
            return False
        self._processing = True
        self._spawn(self._cycle(reason))
        return True

    async def _cycle(self, reason: str) -> None:
        try:
            await self._run_cycle(reason)
        except Exception as e:
            _logger.exception("Session %s: decision cycle failed", self.session_id)
            self._log(ActivityType.ERROR, f"Decision cycle failed: {e}")
        finally:
            self._processing = False
            if self.status == S.RUNNING and not self.timers.pending(IDLE):
                self._schedule_idle()

    async def _run_cycle(self, reason: str) -> None:
        s = self.session
        if s.status != S.RUNNING:
            return
        forced, self._force_next = self._force_next, False

        text = s.output.text
        clean = strip_ansi(text)
        s.stats.merge(extract_stats(clean))

        status = classify(text, self.profile)
        self._classified = status
        stale = self._stale_checks >= self.deps.timings.stale_working_checks
        if status == TerminalStatus.WORKING and not (stale or forced):
            self._schedule_idle()
            return

        if self._output_seq != self._fast_path_seq:
            result = fast_path(clean, s.task_sent, s.task, s.safety_level, self.profile)
            if result is not None and not (result.is_wait and (stale or forced)):
                await self._apply_fast_path(result)
                return

        if self.complete_on_finish and detect_task_completion(clean):
            self._log(ActivityType.COMPLETE, "CLI finished the task")
            self.stop(S.COMPLETED, reason="Task complete")
            return

        memory = await self.deps.memory(s.project_path) if self.deps.memory else ""
        snapshot = self.snapshot(clean)
        decision = await self.engine.decide(
            snapshot,
            self.guard,
            s.activity_log,
            memory_context=memory,
            skills_context=self.deps.skills_context,
        )
        s.usage = self.engine.usage

        if s.status != S.RUNNING:
            _logger.info("Session %s: discarding decision, session is %s", self.session_id, s.status)
            return

        if decision is None:
            self._back_off()
            return

        s.stats.bump("llm_decisions")
        verdict = self.engine.resolve(decision, self.guard, snapshot, self.deps.timings.idle_timeout)
        await self._apply(verdict)

    def snapshot(self, clean_output: str | None = None) -> SessionSnapshot:
        s = self.session
        peers, note = self.deps.peers(s.session_id) if self.deps.peers else ((), None)
        return SessionSnapshot(
            session_id=s.session_id,
            task=s.task,
            status=s.status,
            safety_level=s.safety_level,
            task_sent=s.task_sent,
            takeover=s.takeover,
            project_path=s.project_path,
            clean_output=clean_output if clean_output is not None else strip_ansi(s.output.text),
            llm=s.llm,
            now=self._now(),
            peers=peers,
            peer_note=note,
        )

    def _back_off(self) -> None:
        failures = self.guard.failures
        delay = failure_backoff(failures)
        if delay is None:
            self._schedule_idle()
            return
        _logger.warning("Session %s: %d LLM failures in a row, backing off %gs", self.session_id, failures, delay)
        self._log(ActivityType.ERROR, f"LLM unavailable ({failures} failures), retrying in {delay:g}s")
        self._schedule_idle(delay)

    async def _apply_fast_path(self, result: FastPathResult) -> None:
        s = self.session
        if result.is_wait:
            self._schedule_idle()
            return

        s.stats.bump("fast_path_decisions")
        self._fast_path_seq = self._output_seq
        match result.kind:
            case FastPathKind.TRUST | FastPathKind.PERMISSION:
                self._log(ActivityType.PERMISSION, f"Auto-approved: {result.question}")
            case FastPathKind.TASK:
                s.task_sent = True
                self._log(ActivityType.FAST_PATH, "Prompt ready, sending task")
            case _:
                self._log(ActivityType.FAST_PATH, "Pressing Enter")
        await self._send(result.response, is_task=result.kind == FastPathKind.TASK)

    async def _apply(self, verdict: Verdict) -> None:
        s = self.session
        match verdict.kind:
            case VerdictKind.WAIT:
                self._log(ActivityType.DECISION, verdict.log)
                self._schedule_idle(verdict.delay)
            case VerdictKind.SKIP:
                _logger.info("Session %s: %s", self.session_id, verdict.log)
                self._log(ActivityType.DECISION, verdict.log)
                self._schedule_idle(verdict.delay)
            case VerdictKind.COMPLETE:
                self._log(ActivityType.COMPLETE, verdict.log)
                self.stop(S.COMPLETED, reason="Task complete")
            case VerdictKind.SEND:
                self._log(ActivityType.DECISION, verdict.log)
                if verdict.marks_task_sent:
                    s.task_sent = True
                await self._send(verdict.text, is_task=verdict.is_task)

    async def _send(self, text: str, is_task: bool = False) -> bool:
        s = self.session
        if not is_task and (danger := blocked_pattern(text, s.safety_level)):
            _logger.warning("Session %s: blocked %s: %r", self.session_id, danger.label, text)
            self._log(ActivityType.ERROR, f"Blocked dangerous command ({danger.label})", detail=text)
            return False

        shown = text or "[Enter]"
        self._log(ActivityType.INPUT, f"Sent: {shown}")
        await self.deps.host.send_text(s.session_id, text)
        s.output.mark_sent(shown)
        self._stale_checks = 0
        return True
