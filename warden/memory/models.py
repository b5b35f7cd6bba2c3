from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

MAX_CONTENT_CHARS = 200


def _parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        dt = datetime.fromisoformat(value)
        return dt if dt.tzinfo else dt.replace(tzinfo=UTC)
    raise ValueError(f"Cannot parse datetime from {type(value)}")


class LearningCategory(StrEnum):
    COMMAND = "command"
    PREFERENCE = "preference"
    PATTERN = "pattern"
    FAILURE = "failure"
    WORKFLOW = "workflow"


class LearningSource(StrEnum):
    AUTO = "auto"
    MANUAL = "manual"


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class Learning(_FrozenModel):
    id: int
    project_path: str
    category: LearningCategory
    content: str
    confidence: float
    session_count: int = 1
    source: LearningSource = LearningSource.AUTO
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _parse_dates(cls, v: Any) -> datetime | None:
        return _parse_datetime(v)


class ExtractedLearning(_FrozenModel):
    category: LearningCategory
    content: str
    confidence: float

    @field_validator("content")
    @classmethod
    def _trim_content(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("empty content")
        return v[:MAX_CONTENT_CHARS]

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, v: float) -> float:
        return min(1.0, max(0.0, v))
