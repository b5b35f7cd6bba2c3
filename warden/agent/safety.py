import re
from dataclasses import dataclass
from enum import StrEnum


class SafetyLevel(StrEnum):
    SAFE = "safe"
    MODERATE = "moderate"
    YOLO = "yolo"


class Severity(StrEnum):
    SEVERE = "severe"  # blocked at safe and moderate
    RISKY = "risky"  # blocked at safe only


@dataclass(frozen=True)
class DangerPattern:
    label: str
    pattern: re.Pattern
    severity: Severity


def _p(label: str, pattern: str, severity: Severity) -> DangerPattern:
    return DangerPattern(label, re.compile(pattern, re.IGNORECASE | re.MULTILINE), severity)


# Start of a shell command: line start or after a separator
_CMD = r"(?:^|[;&|(`]\s*|\$\(\s*)"

_RM_RECURSIVE_FORCE = (
    r"\brm\s+(?:-[a-z]*(?:r[a-z]*f|f[a-z]*r)[a-z]*"
    r"|-r\s+-f|-f\s+-r|-r\s+--force|--force\s+-r|-f\s+--recursive|--recursive\s+-f"
    r"|--recursive\s+--force|--force\s+--recursive)"
)
_TEMP_PATH = r"(?:/tmp|/var/tmp|\$\{?TMPDIR\}?)(?:/|\s|$)"

DANGER_PATTERNS: tuple[DangerPattern, ...] = (
    _p("recursive force delete", _RM_RECURSIVE_FORCE + rf"\s+(?!{_TEMP_PATH})\S", Severity.SEVERE),
    _p("filesystem format", r"\bmkfs(?:\.\w+)?\b", Severity.SEVERE),
    _p("drive format", r"\bformat\s+[a-z]:", Severity.SEVERE),
    _p("raw device write", r"\bdd\b[^\n]*\bof=/dev/", Severity.SEVERE),
    _p("device redirect", r">\s*/dev/(?:sd[a-z]|hd[a-z]|nvme\d|disk\d)", Severity.SEVERE),
    _p("fork bomb", r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:", Severity.SEVERE),
    _p("delete", r"\brm\s+(?:-[a-z]*[rf]|--(?:recursive|force)\b)", Severity.RISKY),
    _p("force push", r"\bgit\s+push\b[^\n]*?\s(?:--force(?:-with-lease)?|-f)\b", Severity.RISKY),
    _p("hard reset", r"\bgit\s+reset\s+--hard\b", Severity.RISKY),
    _p("git clean", r"\bgit\s+clean\s+-[a-z]*f", Severity.RISKY),
    _p("privilege escalation", _CMD + r"(?:sudo|doas)\s+[\w/-]|" + _CMD + r"su(?:\s|$)", Severity.RISKY),
    _p("world-writable chmod", r"\bchmod\s+(?:-R\s+)?0?777\b", Severity.RISKY),
    _p("recursive chown", r"\bchown\s+-R\b", Severity.RISKY),
    _p("pipe to shell", r"\|\s*(?:sudo\s+)?(?:ba|z|da|k)?sh\b", Severity.RISKY),
    _p("pipe to interpreter", r"\|\s*(?:sudo\s+)?(?:python[0-9.]*|perl|ruby|node)\b", Severity.RISKY),
    _p("drop database", r"\bdrop\s+(?:database|schema|table)\b", Severity.RISKY),
    _p("truncate table", r"\btruncate\s+table\b", Severity.RISKY),
    _p("delete everything", r"\bdelete\s+from\b[^\n]*\bwhere\b[^\n]*\b1\s*=\s*1\b", Severity.RISKY),
    _p("disk copy", r"\bdd\s+if=", Severity.RISKY),
)

_BLOCKED_AT: dict[SafetyLevel, frozenset[Severity]] = {
    SafetyLevel.SAFE: frozenset({Severity.SEVERE, Severity.RISKY}),
    SafetyLevel.MODERATE: frozenset({Severity.SEVERE}),
    SafetyLevel.YOLO: frozenset(),
}


def blocked_pattern(command: str, level: SafetyLevel | str) -> DangerPattern | None:
    blocked = _BLOCKED_AT[SafetyLevel(level)]
    if not blocked:
        return None
    for danger in DANGER_PATTERNS:
        if danger.severity in blocked and danger.pattern.search(command):
            return danger
    return None


def is_dangerous(command: str, level: SafetyLevel | str) -> bool:
    return blocked_pattern(command, level) is not None
