import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import uuid4

from warden.session.models import Session


def _to_dt(v):
    return datetime.fromisoformat(v) if isinstance(v, str) else v


def _from_json(v, default):
    if isinstance(v, str):
        return json.loads(v) if v else default
    return v if v is not None else default


@dataclass
class SessionSummary:
    id: str
    task: str
    status: str
    start_time: datetime
    end_time: datetime
    duration: int
    provider: str
    model: str
    mode: str = "single"
    project_path: str | None = None
    terminal_count: int = 1
    stats: dict = field(default_factory=dict)
    usage: dict = field(default_factory=dict)
    activity_log: list[dict] = field(default_factory=list)

    def __post_init__(self):
        self.start_time = _to_dt(self.start_time)
        self.end_time = _to_dt(self.end_time)
        self.stats = _from_json(self.stats, {})
        self.usage = _from_json(self.usage, {})
        self.activity_log = _from_json(self.activity_log, [])

    @classmethod
    def from_session(cls, session: Session, mode: str = "single") -> "SessionSummary":
        end = session.end_time or datetime.now(UTC)
        return cls(
            id=f"{mode}_{session.session_id}_{uuid4().hex[:8]}",
            task=session.task,
            status=session.status.value,
            start_time=session.start_time,
            end_time=end,
            duration=session.duration_seconds,
            provider=session.llm.provider,
            model=session.llm.model,
            mode=mode,
            project_path=session.project_path,
            stats=session.stats.to_dict(),
            usage=session.usage.to_dict(),
            activity_log=[e.to_dict() for e in session.activity_log],
        )
