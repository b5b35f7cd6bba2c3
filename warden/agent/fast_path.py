import re
from dataclasses import dataclass
from enum import StrEnum

from warden.agent.safety import SafetyLevel, is_dangerous
from warden.terminal.ansi import tail_lines
from warden.terminal.profiles import SPINNER_RE, CLIProfile

WAIT = "WAIT"

FAST_PATH_WINDOW = 10

_TRUST_RE = re.compile(r"trust (?:this|the files in this) (?:project|folder)|trust settings", re.IGNORECASE)
_MENU_YES_RE = re.compile(r"^\s*(?:❯|>)?\s*1\.\s*Yes\b", re.IGNORECASE | re.MULTILINE)
_PERMISSION_RE = re.compile(r"\(y/n\)|\[Y/n\]|\[y/N\]|\b(?:Allow|Proceed|Continue)\?", re.IGNORECASE)
_PRESS_ENTER_RE = re.compile(r"press enter to continue", re.IGNORECASE)


class FastPathKind(StrEnum):
    TRUST = "trust"
    WAIT = "wait"
    PERMISSION = "permission"
    ENTER = "enter"
    TASK = "task"


@dataclass(frozen=True)
class FastPathResult:
    response: str
    kind: FastPathKind
    question: str | None = None

    @property
    def is_wait(self) -> bool:
        return self.kind == FastPathKind.WAIT


def _question_context(lines: list[str]) -> str:
    for i in range(len(lines) - 1, -1, -1):
        if _PERMISSION_RE.search(lines[i]):
            return " ".join(line.strip() for line in lines[max(0, i - 1) : i + 1])
    return lines[-1].strip()


def fast_path(
    clean_text: str,
    task_sent: bool,
    task: str,
    safety_level: SafetyLevel | str,
    profile: CLIProfile,
) -> FastPathResult | None:
    """Answer prompts that never need the model.

    Rules run most specific first. ``None`` means nothing matched and the
    caller should fall through to the decision engine.
    """
    lines = tail_lines(clean_text, FAST_PATH_WINDOW)
    if not lines:
        return None
    tail = "\n".join(lines)

    if _TRUST_RE.search(tail):
        response = "" if _MENU_YES_RE.search(tail) else "y"
        return FastPathResult(response, FastPathKind.TRUST, question="Trust this project?")

    if SPINNER_RE.search(tail):
        return FastPathResult(WAIT, FastPathKind.WAIT)

    if _PERMISSION_RE.search(tail):
        question = _question_context(lines)
        if is_dangerous(question, safety_level):
            return None
        return FastPathResult("y", FastPathKind.PERMISSION, question=question)

    if _PRESS_ENTER_RE.search(tail):
        return FastPathResult("", FastPathKind.ENTER)

    if not task_sent and profile.prompt.search(tail):
        return FastPathResult(task, FastPathKind.TASK)

    return None
