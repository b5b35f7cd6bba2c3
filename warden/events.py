from dataclasses import dataclass

from warden.history.models import SessionSummary
from warden.session.models import ActivityLogEntry, LLMBinding

# --- Session lifecycle ---


@dataclass(frozen=True)
class SessionStarted:
    session_id: str
    task: str
    takeover: bool


@dataclass(frozen=True)
class SessionStopped:
    summary: SessionSummary
    activity: tuple[ActivityLogEntry, ...]
    llm: LLMBinding
    project_path: str | None = None


# --- Multi-session runs ---


@dataclass(frozen=True)
class OrchestratorStopped:
    summary: SessionSummary


@dataclass(frozen=True)
class RaceFinished:
    race_id: str
    winner_id: str | None
    scores: dict[str, int]
