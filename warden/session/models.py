from collections import deque
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from enum import StrEnum

from warden.agent.safety import SafetyLevel
from warden.usage import Usage

OUTPUT_BUFFER_CAP = 100_000
ACTIVITY_LOG_CAP = 500


class SessionStatus(StrEnum):
    CONFIGURING = "configuring"
    AWAITING_READY = "awaiting-ready"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def is_final(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.STOPPED, SessionStatus.ERROR)


class ActivityType(StrEnum):
    START = "start"
    INPUT = "input"
    DECISION = "decision"
    FAST_PATH = "fast-path"
    WORKING = "working"
    WAITING = "waiting"
    PERMISSION = "permission"
    READY = "ready"
    ERROR = "error"
    COMPLETE = "complete"
    STOP = "stop"


@dataclass(frozen=True)
class ActivityLogEntry:
    timestamp: datetime
    type: ActivityType
    message: str
    detail: str | None = None

    def to_dict(self) -> dict:
        data = {"timestamp": self.timestamp.isoformat(), "type": self.type.value, "message": self.message}
        if self.detail:
            data["detail"] = self.detail
        return data


class ActivityLog:
    """Append-only log; once full the oldest entries fall off the front."""

    def __init__(self, cap: int = ACTIVITY_LOG_CAP):
        self._entries: deque[ActivityLogEntry] = deque(maxlen=cap)

    def add(self, type: ActivityType, message: str, detail: str | None = None) -> ActivityLogEntry:
        entry = ActivityLogEntry(timestamp=datetime.now(UTC), type=type, message=message, detail=detail)
        self._entries.append(entry)
        return entry

    def entries(self) -> list[ActivityLogEntry]:
        return list(self._entries)

    def last(self) -> ActivityLogEntry | None:
        return self._entries[-1] if self._entries else None

    def count(self, type: ActivityType) -> int:
        return sum(1 for e in self._entries if e.type == type)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)


class OutputBuffer:
    """Raw terminal text capped at ``cap`` characters, oldest dropped first."""

    def __init__(self, cap: int = OUTPUT_BUFFER_CAP):
        self.cap = cap
        self._text = ""

    def append(self, chunk: str) -> None:
        text = self._text + chunk
        self._text = text[-self.cap :] if len(text) > self.cap else text

    def mark_sent(self, message: str) -> None:
        self.append(f'\n--- AGENT SENT: "{message}" ---\n')

    def clear(self) -> None:
        self._text = ""

    @property
    def text(self) -> str:
        return self._text

    def __len__(self) -> int:
        return len(self._text)


@dataclass
class SessionStats:
    files_written: int = 0
    files_read: int = 0
    tests_passed: int = 0
    tests_failed: int = 0
    errors_encountered: int = 0
    fast_path_decisions: int = 0
    llm_decisions: int = 0

    def merge(self, parsed: dict[str, int]) -> None:
        """Fold in re-parsed counters; a counter never goes down."""
        for f in fields(self):
            if f.name in parsed:
                setattr(self, f.name, max(getattr(self, f.name), parsed[f.name]))

    def bump(self, name: str) -> None:
        setattr(self, name, getattr(self, name) + 1)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class LLMBinding:
    provider: str
    model: str
    api_key: str


@dataclass(frozen=True)
class SessionOptions:
    time_limit_minutes: int | None = None
    safety_level: SafetyLevel | None = None
    project_path: str | None = None
    takeover: bool = False
    cli_profile: str | None = None
    provider: str | None = None
    active_skills: tuple[str, ...] = ()
    # Treat a detected "anything else?" after real work as the end of the session
    complete_on_finish: bool = False


@dataclass
class Session:
    session_id: str
    task: str
    llm: LLMBinding
    time_limit_minutes: int = 0
    safety_level: SafetyLevel = SafetyLevel.SAFE
    cli_profile: str = "claude"
    project_path: str | None = None
    takeover: bool = False
    status: SessionStatus = SessionStatus.CONFIGURING
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    output: OutputBuffer = field(default_factory=OutputBuffer)
    activity_log: ActivityLog = field(default_factory=ActivityLog)
    stats: SessionStats = field(default_factory=SessionStats)
    usage: Usage = field(default_factory=Usage)
    is_idle: bool = False
    task_sent: bool = False

    @property
    def duration_seconds(self) -> int:
        end = self.end_time or datetime.now(UTC)
        return int((end - self.start_time).total_seconds())


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of a session handed to the decision engine for one cycle."""

    session_id: str
    task: str
    status: SessionStatus
    safety_level: SafetyLevel
    task_sent: bool
    takeover: bool
    project_path: str | None
    clean_output: str
    llm: LLMBinding
    now: float
    peers: tuple[str, ...] = ()
    peer_note: str | None = None
