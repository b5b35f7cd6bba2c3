import json
from unittest.mock import AsyncMock

import pytest

from warden.agent.decision import (
    FORCE_MESSAGE,
    POLISH_MESSAGE,
    DecisionEngine,
    VerdictKind,
    failure_backoff,
    resolve,
    wait_delay,
)
from warden.agent.guard import RepeatGuard, is_semantic_duplicate
from warden.agent.parsing import Action, Decision, parse_decision, unwrap_meta
from warden.agent.prompts import build_system_prompt
from warden.agent.safety import SafetyLevel
from warden.llm.types import CompletionResult
from warden.session.models import ActivityLog, ActivityType, SessionSnapshot, SessionStatus
from tests.conftest import TEST_LLM, mock_llm_response

TASK = "Build a todo app with tests"


def snapshot(now: float = 100.0, task_sent: bool = True, **kwargs) -> SessionSnapshot:
    defaults = dict(
        session_id="s1",
        task=TASK,
        status=SessionStatus.RUNNING,
        safety_level=SafetyLevel.SAFE,
        task_sent=task_sent,
        takeover=False,
        project_path=None,
        clean_output="> ",
        llm=TEST_LLM,
        now=now,
    )
    defaults.update(kwargs)
    return SessionSnapshot(**defaults)


class TestParseDecision:
    def test_plain_object(self):
        assert parse_decision('{"action":"wait"}') == Decision(Action.WAIT)

    def test_fenced_object(self):
        decision = parse_decision('```json\n{"action":"send","text":"y"}\n```')
        assert decision.token == "Y"

    def test_object_inside_prose(self):
        decision = parse_decision('Sure. {"action":"send","text":"Add input validation"} hope that helps')
        assert decision.text == "Add input validation"

    def test_array_of_objects(self):
        assert parse_decision('[{"action":"done"}]').token == "DONE"

    def test_meta_narration_is_unwrapped(self):
        decision = parse_decision('{"action":"send","text":"You should type: npm test"}')
        assert decision.text == "npm test"

    @pytest.mark.parametrize("raw", [None, "", "not json at all", '{"action":"explode"}', '{"text":"hi"}'])
    def test_malformed(self, raw):
        assert parse_decision(raw) is None

    def test_empty_send_is_enter(self):
        assert parse_decision('{"action":"send","text":""}').token == "ENTER"

    def test_wait_disguised_as_send(self):
        assert parse_decision('{"action":"send","text":"I\'ll wait for the build"}').token == "WAIT"

    @pytest.mark.parametrize(
        "text",
        [
            "Run the database migrations and restart the dev server",
            "Run npm test and fix failures",
            "Suggest a clearer name for the helper",
        ],
    )
    def test_instructions_sent_verbatim(self, text):
        decision = parse_decision(json.dumps({"action": "send", "text": text}))
        assert decision.text == text

    def test_unwrap_labelled_command(self):
        assert unwrap_meta("Run this command: npm test") == "npm test"
        assert unwrap_meta("Suggestion: 'Add dark mode'") == "Add dark mode"


class TestRepeatGuard:
    def test_exact_repeat(self):
        guard = RepeatGuard()
        guard.accept("Add unit tests for the parser")
        assert guard.is_repeat("Add unit tests for the parser")

    def test_short_responses_may_repeat(self):
        guard = RepeatGuard()
        guard.accept("y")
        assert not guard.is_repeat("y")
        assert not guard.is_similar("y")

    def test_word_overlap_is_similar(self):
        recent = ["Add error handling to the login form"]
        assert is_semantic_duplicate("Add error handling for the login form", recent)

    def test_unrelated_text_is_not_similar(self):
        recent = ["Add error handling to the login form"]
        assert not is_semantic_duplicate("Write integration tests for the payment service", recent)

    def test_waits_track_duration(self):
        guard = RepeatGuard()
        guard.record_wait(10.0)
        guard.record_wait(12.0)
        assert guard.consecutive_waits == 2
        assert guard.waited_for(17.5) == 7.5
        guard.reset_waits()
        assert guard.waited_for(20.0) == 0.0


class TestResolve:
    def test_wait_schedules_recheck(self):
        guard = RepeatGuard()
        verdict = resolve(Decision(Action.WAIT), guard, snapshot(), base_delay=5.0)
        assert verdict.kind == VerdictKind.WAIT
        assert verdict.delay == 5.0

    def test_wait_escalates_to_force_on_fifth(self):
        guard = RepeatGuard()
        kinds = [resolve(Decision(Action.WAIT), guard, snapshot(now=i), 5.0).kind for i in range(5)]
        assert kinds == [VerdictKind.WAIT] * 4 + [VerdictKind.SEND]
        assert guard.consecutive_waits == 0

    def test_force_message_text(self):
        guard = RepeatGuard(consecutive_waits=4, waiting_since=0.0)
        verdict = resolve(Decision(Action.WAIT), guard, snapshot(), 5.0)
        assert verdict.text == FORCE_MESSAGE

    def test_wait_delay_shrinks(self):
        assert wait_delay(1, 5.0) == 5.0
        assert wait_delay(2, 5.0) == 3.0
        assert wait_delay(3, 5.0) == 2.5
        assert wait_delay(10, 5.0) == 1.5

    def test_repeat_is_skipped(self):
        guard = RepeatGuard()
        decision = Decision(Action.SEND, "Add pagination to the list view")
        assert resolve(decision, guard, snapshot(), 5.0).kind == VerdictKind.SEND
        verdict = resolve(decision, guard, snapshot(), 5.0)
        assert verdict.kind == VerdictKind.SKIP
        assert verdict.delay == 3.0

    def test_similar_suggestion_is_skipped(self):
        guard = RepeatGuard()
        resolve(Decision(Action.SEND, "Add error handling to the login form"), guard, snapshot(), 5.0)
        verdict = resolve(Decision(Action.SEND, "Add error handling for the login form"), guard, snapshot(), 5.0)
        assert verdict.kind == VerdictKind.SKIP

    def test_done_becomes_polish(self):
        verdict = resolve(Decision(Action.DONE), RepeatGuard(), snapshot(), 5.0)
        assert verdict.kind == VerdictKind.SEND
        assert verdict.text == POLISH_MESSAGE

    def test_done_completes_when_allowed(self):
        verdict = resolve(Decision(Action.DONE), RepeatGuard(), snapshot(), 5.0, allow_completion=True)
        assert verdict.kind == VerdictKind.COMPLETE

    def test_enter(self):
        verdict = resolve(Decision(Action.SEND, ""), RepeatGuard(), snapshot(), 5.0)
        assert verdict.text == ""

    def test_task_token(self):
        verdict = resolve(Decision(Action.SEND, "task"), RepeatGuard(), snapshot(task_sent=False), 5.0)
        assert verdict.text == TASK
        assert verdict.is_task
        assert verdict.marks_task_sent

    def test_yes_is_lowercased(self):
        verdict = resolve(Decision(Action.SEND, "Y"), RepeatGuard(), snapshot(), 5.0)
        assert verdict.text == "y"

    def test_long_literal_marks_task_sent(self):
        text = "Create the project skeleton with a src folder"
        verdict = resolve(Decision(Action.SEND, text), RepeatGuard(), snapshot(task_sent=False), 5.0)
        assert verdict.text == text
        assert verdict.marks_task_sent
        assert not verdict.is_task

    def test_send_resets_waits(self):
        guard = RepeatGuard(consecutive_waits=3, waiting_since=1.0)
        resolve(Decision(Action.SEND, "Run the test suite"), guard, snapshot(), 5.0)
        assert guard.consecutive_waits == 0

    def test_failure_backoff(self):
        assert failure_backoff(2) is None
        assert failure_backoff(3) == 5.0
        assert failure_backoff(4) == 10.0
        assert failure_backoff(10) == 30.0


class TestPrompts:
    def test_state_hints(self):
        guard = RepeatGuard(last_response="Add tests", consecutive_waits=2, waiting_since=90.0, decision_count=10)
        prompt = build_system_prompt(snapshot(peers=('- "API" [running]',), peer_note="Avoid overlap."), guard)
        assert "ALREADY been sent" in prompt
        assert 'Your last response was: "Add tests"' in prompt
        assert "URGENT" in prompt
        assert "REMINDER" in prompt
        assert "=== OTHER TERMINALS ===" in prompt

    def test_long_wait_is_urgent_after_one_wait(self):
        guard = RepeatGuard(consecutive_waits=1, waiting_since=92.0)
        prompt = build_system_prompt(snapshot(now=100.0), guard)
        assert "URGENT" in prompt
        assert "for 8 seconds" in prompt

    def test_short_single_wait_is_not_urgent(self):
        guard = RepeatGuard(consecutive_waits=1, waiting_since=97.0)
        assert "URGENT" not in build_system_prompt(snapshot(now=100.0), guard)

    def test_memory_and_skills_come_first(self):
        prompt = build_system_prompt(snapshot(), RepeatGuard(), memory_context="MEMORY", skills_context="SKILLS")
        assert prompt.startswith("MEMORY\n\nSKILLS\n\n")

    def test_takeover_mode(self):
        prompt = build_system_prompt(snapshot(takeover=True), RepeatGuard())
        assert "MODE: TAKEOVER" in prompt


class TestDecisionEngine:
    @pytest.mark.asyncio
    async def test_returns_parsed_decision(self):
        gateway = AsyncMock()
        gateway.complete.return_value = mock_llm_response({"action": "send", "text": "Add a README"})
        engine = DecisionEngine(gateway, backoff=0)
        guard = RepeatGuard()

        decision = await engine.decide(snapshot(), guard, ActivityLog())

        assert decision.text == "Add a README"
        assert guard.decision_count == 1
        assert engine.usage.total_tokens == 110
        request = gateway.complete.call_args.args[0]
        assert request.temperature == 0.2
        assert request.max_tokens == 200

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        gateway = AsyncMock()
        gateway.complete.side_effect = [
            CompletionResult.failed("rate limited"),
            mock_llm_response({"action": "wait"}),
        ]
        activity = ActivityLog()
        engine = DecisionEngine(gateway, backoff=0)

        decision = await engine.decide(snapshot(), RepeatGuard(), activity)

        assert decision.action == Action.WAIT
        assert gateway.complete.await_count == 2
        assert activity.count(ActivityType.ERROR) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        gateway = AsyncMock()
        gateway.complete.return_value = CompletionResult.failed("connection refused")
        activity = ActivityLog()
        guard = RepeatGuard()
        engine = DecisionEngine(gateway, attempts=3, backoff=0)

        assert await engine.decide(snapshot(), guard, activity) is None
        assert gateway.complete.await_count == 3
        assert guard.failures == 1
        assert "after 3 attempts" in activity.last().message

    @pytest.mark.asyncio
    async def test_unparseable_reply_is_skipped(self):
        gateway = AsyncMock()
        gateway.complete.return_value = mock_llm_response("I think you should wait")
        guard = RepeatGuard(failures=2)
        engine = DecisionEngine(gateway, backoff=0)

        assert await engine.decide(snapshot(), guard, ActivityLog()) is None
        assert guard.failures == 0
        assert guard.decision_count == 0
