from warden.agent.guard import RepeatGuard
from warden.session.models import SessionSnapshot
from warden.terminal.classifier import summarize_output

WAITING_TOO_LONG = 7.0
URGENT_AFTER_WAITS = 2
REMINDER_EVERY = 10

SYSTEM_PROMPT = """You are an autonomous agent supervising a CLI coding assistant in a terminal. Your job is to keep it working on the task until the result is excellent.

MODE: {mode}
ORIGINAL TASK: {task}
{takeover_context}
=== DECISION RULES (in priority order) ===

1. CLI IS WORKING - spinner characters, "..." at the end of a line, tool calls like "Read(", "Write(", "Edit(", "Bash(":
   -> {{"action":"wait"}}

2. YES/NO PROMPT - "(y/n)", "[Y/n]", "Allow?":
   -> {{"action":"send","text":"y"}}

3. QUESTION - the CLI asks something (line ends with ?):
   -> send a specific, helpful answer that advances the task

4. OPTIONS - numbered options [1] [2] [3]:
   -> send the number of the best option for the task

5. CLI FINISHED OR ASKING "anything else?":
   -> {finished_rule}

6. WAITING FOR INPUT (prompt visible):
   -> task just starting: guide it through the first steps
   -> task in progress: send the next feature or improvement

=== CRITICAL RULES ===
- "text" is typed into the terminal EXACTLY as written - no narration
- NEVER write "You should type:" or "Run this command:" - give the text itself
- NEVER write "Suggest adding..." - write "Add..." as a direct instruction
- Send "ENTER" to press Enter on an empty line, "TASK" to resend the original task
- Never repeat a message or a near-identical suggestion
- Be SPECIFIC and vary your suggestions: UX, performance, accessibility, error handling, tests"""

_FINISHED_KEEP_GOING = 'suggest a specific improvement or polish. NEVER use "done" - there is always something to improve'
_FINISHED_ALLOW_DONE = (
    'if the task is fully implemented and verified respond {"action":"done"}, otherwise suggest the next improvement'
)

TAKEOVER_CONTEXT = """
You are TAKING OVER a conversation that is already in progress. Read the terminal output to learn where things
stand before acting. The original task was already given to the CLI - do not resend it.
"""

USER_PROMPT = """TERMINAL OUTPUT:
```
{output}
```

Respond with JSON only: {{"action":"wait"|"send"|"done","text":"..."}}"""


def build_system_prompt(
    snapshot: SessionSnapshot,
    guard: RepeatGuard,
    memory_context: str = "",
    skills_context: str = "",
    allow_completion: bool = False,
) -> str:
    sections = [s for s in (memory_context.strip(), skills_context.strip()) if s]
    sections.append(
        SYSTEM_PROMPT.format(
            mode="TAKEOVER" if snapshot.takeover else "NEW_TASK",
            task=snapshot.task,
            takeover_context=TAKEOVER_CONTEXT if snapshot.takeover else "",
            finished_rule=_FINISHED_ALLOW_DONE if allow_completion else _FINISHED_KEEP_GOING,
        )
    )
    sections.extend(_state_hints(snapshot, guard))
    return "\n\n".join(sections)


def _state_hints(snapshot: SessionSnapshot, guard: RepeatGuard) -> list[str]:
    hints = []
    if snapshot.task_sent:
        hints.append(
            "IMPORTANT: The task has ALREADY been sent. DO NOT send the task again. "
            "Wait, answer a question, approve a prompt, or suggest an improvement."
        )
    if guard.last_response:
        hints.append(f'Your last response was: "{guard.last_response}" - DO NOT repeat it.')

    waited = guard.waited_for(snapshot.now)
    if guard.consecutive_waits >= URGENT_AFTER_WAITS or waited > WAITING_TOO_LONG:
        hints.append(
            f"URGENT: The CLI has been WAITING for input for {int(waited)} seconds and you have "
            f"answered wait {guard.consecutive_waits} times. Do NOT wait again. "
            "Send actual input now: answer the question, approve the prompt, or give it the next step."
        )

    if guard.decision_count > 0 and guard.decision_count % REMINDER_EVERY == 0:
        hints.append(f'REMINDER: Your task is: "{snapshot.task}". Stay focused.')

    if snapshot.peers:
        lines = "\n".join(snapshot.peers)
        note = f"\n{snapshot.peer_note}" if snapshot.peer_note else ""
        hints.append(f"=== OTHER TERMINALS ===\n{lines}{note}")
    return hints


def build_user_prompt(clean_output: str) -> str:
    return USER_PROMPT.format(output=summarize_output(clean_output))
