import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from warden.session.models import ActivityLog, OutputBuffer
from warden.terminal.ansi import strip_ansi

RACE_BUFFER_CAP = 60_000
RACE_LOG_CAP = 200

TEST_WEIGHT = 30
FILE_WEIGHT = 10
ERROR_PENALTY = 5
LOC_WEIGHT = 0.1

_TEST_PASS_RE = re.compile(r"(\d+)\s*(?:tests?\s+)?passed|(\d+)\s*✓|passing\s+\(|(\d+)\s*passing", re.IGNORECASE)
_ERROR_RE = re.compile(r"\berror[:\s]|exception:|traceback|✗\s|FAIL\b", re.IGNORECASE)
_FILE_CREATED_RE = re.compile(
    r"(?:created?|wrote?|written|saved?)\s+.*\.(?:ts|tsx|js|jsx|py|go|rs|java|css|html|json|md)", re.IGNORECASE
)
_CODE_LINE_RE = re.compile(r"^\s{0,4}(?:const|let|var|function|class|def |fn |pub |import |export |type |interface )")

DONE_PATTERNS: tuple[re.Pattern, ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"task (?:complete|completed|done|finished)",
        r"implementation (?:complete|done|finished)",
        r"all (?:done|complete|finished)",
        r"feature (?:complete|done|implemented)",
    )
)


class RacerStatus(StrEnum):
    WAITING = "waiting"
    RUNNING = "running"
    DONE = "done"


def calculate_score(m: "RaceMetrics") -> int:
    return (
        m.tests_passed * TEST_WEIGHT
        + m.files_created * FILE_WEIGHT
        - m.errors_hit * ERROR_PENALTY
        + math.floor(m.lines_of_code * LOC_WEIGHT)
    )


def announces_done(text: str, sent: tuple[str, ...] = ()) -> bool:
    """Whether ``text`` claims the work is finished.

    Phrases that also occur in ``sent`` are ignored, since the CLI echoes
    what was typed into it.
    """
    return any(p.search(text) and not any(p.search(s) for s in sent) for p in DONE_PATTERNS)


@dataclass
class RaceMetrics:
    session_id: str
    cli_profile: str
    status: RacerStatus = RacerStatus.WAITING
    tests_passed: int = 0
    errors_hit: int = 0
    files_created: int = 0
    lines_of_code: int = 0
    start_time: datetime | None = None
    completion_time: datetime | None = None
    output: OutputBuffer = field(default_factory=lambda: OutputBuffer(RACE_BUFFER_CAP))
    activity_log: ActivityLog = field(default_factory=lambda: ActivityLog(RACE_LOG_CAP))

    @property
    def score(self) -> int:
        return calculate_score(self)

    def ingest(self, chunk: str) -> str:
        """Buffer one output chunk and fold its signals into the counters.

        Each chunk counts at most one error and one created file; test
        passes keep the highest number seen. Returns the cleaned chunk.
        """
        self.output.append(chunk)
        clean = strip_ansi(chunk)

        if m := _TEST_PASS_RE.search(clean):
            count = next((int(g) for g in m.groups() if g is not None), None)
            self.tests_passed = max(self.tests_passed, self.tests_passed + 1 if count is None else count)
        if _ERROR_RE.search(clean):
            self.errors_hit += 1
        if _FILE_CREATED_RE.search(clean):
            self.files_created += 1
        self.lines_of_code += sum(1 for line in clean.split("\n") if _CODE_LINE_RE.match(line))
        return clean

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "cli_profile": self.cli_profile,
            "status": self.status.value,
            "score": self.score,
            "tests_passed": self.tests_passed,
            "errors_hit": self.errors_hit,
            "files_created": self.files_created,
            "lines_of_code": self.lines_of_code,
        }
