import re

from warden.terminal.ansi import strip_ansi, tail_lines
from warden.terminal.profiles import CLIProfile, TerminalStatus

CLASSIFY_WINDOW = 10
READY_WINDOW = 5
COMPLETION_WINDOW = 20
COMPLETION_WORK_CHARS = 3000

SUMMARY_MAX_CHARS = 4000
SUMMARY_HEAD_LINES = 10
SUMMARY_TAIL_LINES = 30
SUMMARY_IMPORTANT_LINES = 20

_TRUST_RE = re.compile(r"trust this (?:project|folder)|trust settings|\(y\)|\(n\)|y/n", re.IGNORECASE)
_COMPLETION_QUESTION_RE = re.compile(
    r"anything else|is there anything|how can i help|what.*would you like", re.IGNORECASE
)
_WORK_DONE_RE = re.compile(r"created|wrote|updated|fixed|implemented|added|built|completed", re.IGNORECASE)
_IMPORTANT_RE = re.compile(r"error|warning|created|wrote|updated|failed|success|test|passed|TODO|FIXME", re.IGNORECASE)

_STAT_COUNTERS: tuple[tuple[str, re.Pattern], ...] = (
    ("files_written", re.compile(r"(?:Write|Edit)\([^)]+\)", re.IGNORECASE)),
    ("files_read", re.compile(r"Read\([^)]+\)", re.IGNORECASE)),
    ("errors_encountered", re.compile(r"(?:Error|error|ERROR):")),
)
_STAT_NUMBERS: tuple[tuple[str, re.Pattern], ...] = (
    ("tests_passed", re.compile(r"(\d+)\s+(?:tests?\s+)?passed", re.IGNORECASE)),
    ("tests_failed", re.compile(r"(\d+)\s+(?:tests?\s+)?failed", re.IGNORECASE)),
)


def classify(text: str, profile: CLIProfile) -> TerminalStatus:
    """Classify the tail of the terminal buffer.

    Working rules come first in every profile, so a live spinner beats a
    prompt that is still on screen. A visible prompt or confirmation means
    the CLI is waiting for us; a blank tail is idle.
    """
    lines = tail_lines(strip_ansi(text), CLASSIFY_WINDOW)
    if not lines:
        return TerminalStatus.IDLE

    tail = "\n".join(lines)
    for rule in profile.rules:
        if rule.pattern.search(tail):
            return rule.status
    if profile.prompt.search(tail):
        return TerminalStatus.WAITING
    return TerminalStatus.UNKNOWN


def has_ready_prompt(text: str, profile: CLIProfile) -> bool:
    tail = "\n".join(tail_lines(strip_ansi(text), READY_WINDOW))
    return bool(profile.prompt.search(tail)) and not _TRUST_RE.search(tail)


def extract_stats(text: str) -> dict[str, int]:
    """Return the counters visible in ``text``; absent counters are omitted."""
    stats: dict[str, int] = {}
    for name, pattern in _STAT_COUNTERS:
        if count := len(pattern.findall(text)):
            stats[name] = count
    for name, pattern in _STAT_NUMBERS:
        values = [int(v) for v in pattern.findall(text)]
        if values:
            stats[name] = max(values)
    return stats


def detect_task_completion(text: str) -> bool:
    tail = "\n".join(text.split("\n")[-COMPLETION_WINDOW:])
    if not _COMPLETION_QUESTION_RE.search(tail):
        return False
    return bool(_WORK_DONE_RE.search(text[-COMPLETION_WORK_CHARS:]))


def summarize_output(text: str, max_chars: int = SUMMARY_MAX_CHARS) -> str:
    if len(text) <= max_chars:
        return text

    lines = text.split("\n")
    if len(lines) <= SUMMARY_HEAD_LINES + SUMMARY_TAIL_LINES:
        # Few, very long lines: keep the trailing lines that fit whole
        kept: list[str] = []
        size = 0
        for line in reversed(lines):
            if size + len(line) + 1 > max_chars:
                break
            kept.append(line)
            size += len(line) + 1
        return "\n".join(reversed(kept)) if kept else text[-max_chars:]

    head = "\n".join(lines[:SUMMARY_HEAD_LINES])
    tail = "\n".join(lines[-SUMMARY_TAIL_LINES:])
    middle = lines[SUMMARY_HEAD_LINES:-SUMMARY_TAIL_LINES]

    budget = max(0, max_chars - len(head) - len(tail) - 100)
    important: list[str] = []
    size = 0
    for line in [line for line in middle if _IMPORTANT_RE.search(line)][-SUMMARY_IMPORTANT_LINES:]:
        if size + len(line) + 1 > budget:
            break
        important.append(line)
        size += len(line) + 1

    return (
        f"{head}\n\n--- [{len(middle)} lines summarized, showing errors/key events] ---\n"
        + "\n".join(important)
        + f"\n\n--- [Recent output] ---\n{tail}"
    )
