import re
from dataclasses import dataclass
from enum import StrEnum


class TerminalStatus(StrEnum):
    WORKING = "working"
    WAITING = "waiting"
    IDLE = "idle"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class PatternRule:
    pattern: re.Pattern
    status: TerminalStatus


def _rules(
    status: TerminalStatus, *patterns: str, flags: int = re.IGNORECASE | re.MULTILINE
) -> tuple[PatternRule, ...]:
    return tuple(PatternRule(re.compile(p, flags), status) for p in patterns)


_ACTIVITY_VERBS = (
    "thinking|analyzing|searching|reading|writing|running|executing|loading|processing"
    "|building|compiling|installing|fetching|creating|updating|downloading"
)

SPINNER_RE = re.compile(r"[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏]")

_COMMON_WORKING = (
    r"(?:\.\.\.|…)\s*$",
    SPINNER_RE.pattern,
    rf"^\s*(?:[✻✶✳✢·*]\s*)?(?:{_ACTIVITY_VERBS})\b",
    rf"\[(?:{_ACTIVITY_VERBS})\]",
    r"esc to interrupt",
    r"^\s*(?:\$\s*)?(?:npm|yarn|pnpm|pip|cargo|go build|make)\b",
    r"^\s*(?:Compiling|Bundling|Generating)\b",
)

_COMMON_WAITING = (
    r"\(y/n\)\s*$",
    r"\[Y/n\]\s*$",
    r"\[y/N\]\s*$",
    r"\? \(Y/n\)",
    r"\b(?:Allow|Proceed|Continue)\?",
    r"Do you want to",
    r"Press Enter to continue",
    r"trust (?:this|the files in this) (?:project|folder)",
    r"What would you like|How can I help|anything else",
)


@dataclass(frozen=True)
class CLIProfile:
    name: str
    binary: str
    prompt: re.Pattern
    rules: tuple[PatternRule, ...]


CLAUDE = CLIProfile(
    name="claude",
    binary="claude",
    prompt=re.compile(r"(?:❯|^[\s│]*>)[\s│]*$", re.MULTILINE),
    rules=(
        *_rules(
            TerminalStatus.WORKING,
            *_COMMON_WORKING,
            r"^\s*(?:⏺\s*)?(?:Tool:|(?:Read|Write|Edit|Bash|Task|Glob|Grep|WebFetch|WebSearch)\()",
            r"✓.*modules? transformed",
        ),
        *_rules(TerminalStatus.WAITING, *_COMMON_WAITING, r"✓ built in \d+"),
    ),
)

CODEX = CLIProfile(
    name="codex",
    binary="codex",
    prompt=re.compile(r"^[\s│]*[>›▌][\s│]*$", re.MULTILINE),
    rules=(
        *_rules(TerminalStatus.WORKING, *_COMMON_WORKING),
        *_rules(TerminalStatus.WAITING, *_COMMON_WAITING),
    ),
)

PROFILES: dict[str, CLIProfile] = {p.name: p for p in (CLAUDE, CODEX)}


def get_profile(name: str) -> CLIProfile:
    profile = PROFILES.get(name)
    if profile is None:
        raise ValueError(f"Unknown CLI profile: {name}. Must be one of: {', '.join(PROFILES)}")
    return profile
