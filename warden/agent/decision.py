from dataclasses import dataclass
from enum import StrEnum

from warden.agent.guard import RepeatGuard
from warden.agent.parsing import Action, Decision, parse_decision
from warden.agent.prompts import build_system_prompt, build_user_prompt
from warden.llm.gateway import Gateway
from warden.llm.retry import BACKOFF_STEP, MAX_ATTEMPTS, complete_with_retry
from warden.llm.types import CompletionRequest
from warden.logging import get_logger
from warden.session.models import ActivityLog, ActivityType, SessionSnapshot
from warden.usage import Usage

__all__ = ["Decision", "DecisionEngine", "Verdict", "VerdictKind", "failure_backoff", "resolve"]

_logger = get_logger(__name__)

FORCE_MESSAGE = "Please continue with the next step or suggest an improvement"
POLISH_MESSAGE = "Please add more polish, error handling, or improvements to make this even better"

DECISION_TEMPERATURE = 0.2
WAIT_ESCALATION_LIMIT = 5
WAIT_SHORTEN_AFTER = 2
WAIT_DELAY_START = 3.0
WAIT_DELAY_STEP = 0.5
WAIT_DELAY_FLOOR = 1.5
REPEAT_RECHECK_DELAY = 3.0
TASK_MARK_LENGTH = 20

FAILURE_WARN_AT = 3
FAILURE_BACKOFF_BASE = 5.0
FAILURE_BACKOFF_CAP = 30.0


class VerdictKind(StrEnum):
    SEND = "send"
    WAIT = "wait"
    SKIP = "skip"
    COMPLETE = "complete"


@dataclass(frozen=True)
class Verdict:
    """What the state machine should do with one decision."""

    kind: VerdictKind
    text: str = ""
    log: str = ""
    marks_task_sent: bool = False
    # The user's own task text; exempt from the safety filter
    is_task: bool = False
    # Seconds until the next idle check, for WAIT and SKIP
    delay: float | None = None


def wait_delay(consecutive_waits: int, base: float) -> float:
    if consecutive_waits < WAIT_SHORTEN_AFTER:
        return base
    shrunk = WAIT_DELAY_START - WAIT_DELAY_STEP * (consecutive_waits - WAIT_SHORTEN_AFTER)
    return max(WAIT_DELAY_FLOOR, min(base, shrunk))


def failure_backoff(failures: int) -> float | None:
    if failures < FAILURE_WARN_AT:
        return None
    return min(FAILURE_BACKOFF_CAP, FAILURE_BACKOFF_BASE * 2 ** (failures - FAILURE_WARN_AT))


def resolve(
    decision: Decision,
    guard: RepeatGuard,
    snapshot: SessionSnapshot,
    base_delay: float,
    allow_completion: bool = False,
) -> Verdict:
    """Apply repeat suppression, WAIT escalation and token mapping to a parsed decision."""
    token = decision.token

    if token == "WAIT":
        waits = guard.record_wait(snapshot.now)
        if waits >= WAIT_ESCALATION_LIMIT:
            guard.reset_waits()
            return Verdict(VerdictKind.SEND, FORCE_MESSAGE, log="WAIT limit reached, forcing action")
        waited = int(guard.waited_for(snapshot.now))
        return Verdict(
            VerdictKind.WAIT,
            log=f"Waiting for CLI ({waited}s, {waits} checks)",
            delay=wait_delay(waits, base_delay),
        )

    said = decision.text.strip() if decision.action == Action.SEND else token
    if guard.is_repeat(said):
        return Verdict(VerdictKind.SKIP, log="Skipping repeated response", delay=REPEAT_RECHECK_DELAY)
    if decision.action == Action.SEND and guard.is_similar(said):
        return Verdict(VerdictKind.SKIP, log="Skipping similar suggestion", delay=REPEAT_RECHECK_DELAY)

    guard.accept(said)
    guard.reset_waits()

    match token:
        case "DONE" if allow_completion:
            return Verdict(VerdictKind.COMPLETE, log="Model reports task complete")
        case "DONE":
            return Verdict(VerdictKind.SEND, POLISH_MESSAGE, log="Overriding DONE, asking for improvements")
        case "ENTER":
            return Verdict(VerdictKind.SEND, "", log="Pressing Enter")
        case "TASK":
            return Verdict(
                VerdictKind.SEND, snapshot.task, log="Sending task", marks_task_sent=True, is_task=True
            )
        case "Y" | "N":
            return Verdict(VerdictKind.SEND, said.lower(), log=f"LLM: {said.lower()}")
    return Verdict(
        VerdictKind.SEND,
        said,
        log=f"LLM: {said}",
        marks_task_sent=len(said) > TASK_MARK_LENGTH and not snapshot.task_sent,
    )


class DecisionEngine:
    """Asks the model what to type next for one session."""

    def __init__(
        self,
        gateway: Gateway,
        allow_completion: bool = False,
        attempts: int = MAX_ATTEMPTS,
        backoff: float = BACKOFF_STEP,
        temperature: float = DECISION_TEMPERATURE,
    ):
        self.gateway = gateway
        self.allow_completion = allow_completion
        self.attempts = attempts
        self.backoff = backoff
        self.temperature = temperature
        self.usage = Usage()

    async def decide(
        self,
        snapshot: SessionSnapshot,
        guard: RepeatGuard,
        activity: ActivityLog,
        memory_context: str = "",
        skills_context: str = "",
    ) -> Decision | None:
        request = CompletionRequest(
            provider=snapshot.llm.provider,
            api_key=snapshot.llm.api_key,
            model=snapshot.llm.model,
            system_prompt=build_system_prompt(
                snapshot,
                guard,
                memory_context=memory_context,
                skills_context=skills_context,
                allow_completion=self.allow_completion,
            ),
            user_prompt=build_user_prompt(snapshot.clean_output),
            temperature=self.temperature,
        )

        def on_retry(attempt: int, delay: float, exc: BaseException) -> None:
            activity.add(
                ActivityType.ERROR,
                f"LLM failed, retrying in {delay:g}s ({attempt}/{self.attempts})...",
                detail=str(exc),
            )

        try:
            result = await complete_with_retry(
                self.gateway, request, attempts=self.attempts, backoff=self.backoff, on_retry=on_retry
            )
        except Exception as e:
            guard.failures += 1
            _logger.error("Session %s: LLM gave up after %d attempts: %s", snapshot.session_id, self.attempts, e)
            activity.add(ActivityType.ERROR, f"LLM error after {self.attempts} attempts: {e}")
            return None

        guard.failures = 0
        if result.usage:
            self.usage += result.usage

        decision = parse_decision(result.content)
        if decision is None:
            _logger.info("Session %s: unparseable decision %r", snapshot.session_id, (result.content or "")[:200])
            activity.add(ActivityType.DECISION, "Unparseable LLM reply, skipping cycle", detail=result.content)
            return None

        guard.decision_count += 1
        return decision

    def resolve(self, decision: Decision, guard: RepeatGuard, snapshot: SessionSnapshot, base_delay: float) -> Verdict:
        return resolve(decision, guard, snapshot, base_delay, allow_completion=self.allow_completion)
