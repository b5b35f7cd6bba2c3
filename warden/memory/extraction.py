import json
import re

from pydantic import ValidationError

from warden.channel import Handler
from warden.events import SessionStopped
from warden.llm.gateway import Gateway
from warden.llm.types import CompletionRequest
from warden.logging import get_logger
from warden.memory.models import ExtractedLearning
from warden.memory.store import LearningStore
from warden.session.models import ActivityLogEntry, ActivityType, LLMBinding

_logger = get_logger(__name__)

EXTRACTION_TEMPERATURE = 0.1
EXTRACTION_MAX_TOKENS = 800
MIN_LOG_ENTRIES = 5
MIN_LOG_CHARS = 50
MAX_LOG_ENTRIES = 60
MAX_LEARNINGS = 8
MIN_CONFIDENCE = 0.6

_ACTIONABLE = frozenset(
    {
        ActivityType.INPUT,
        ActivityType.DECISION,
        ActivityType.FAST_PATH,
        ActivityType.ERROR,
        ActivityType.PERMISSION,
        ActivityType.READY,
    }
)

_ARRAY_RE = re.compile(r"\[[\s\S]*\]")

EXTRACTION_PROMPT = """You analyse AI agent session logs and extract reusable project-specific knowledge.
Categories:
  command    - specific commands or scripts that worked or failed
  preference - codebase style choices (e.g. "uses TypeScript strict mode", "tabs not spaces")
  pattern    - recurring file or code structures discovered
  failure    - approaches that failed and should be avoided
  workflow   - step sequences that reliably work

Respond ONLY with a JSON array (no markdown):
[{"category":"command|preference|pattern|failure|workflow","content":"...","confidence":0.0-1.0}]

Rules:
- Max 8 entries, each content <= 120 chars
- Only include confidence >= 0.6
- Skip generic or obvious learnings
- Skip anything already well-known (e.g. "npm install installs packages")"""


def _format_log(entries: tuple[ActivityLogEntry, ...] | list[ActivityLogEntry]) -> str:
    relevant = [e for e in entries if e.type in _ACTIONABLE][-MAX_LOG_ENTRIES:]
    return "\n".join(f"[{e.type}] {e.message}" + (f" | {e.detail}" if e.detail else "") for e in relevant)


def parse_learnings(content: str | None) -> list[ExtractedLearning]:
    if not content:
        return []
    match = _ARRAY_RE.search(content)
    if not match:
        return []
    try:
        raw = json.loads(match.group(0))
    except json.JSONDecodeError:
        return []
    if not isinstance(raw, list):
        return []

    learnings = []
    for item in raw:
        try:
            learning = ExtractedLearning.model_validate(item)
        except ValidationError:
            continue
        if learning.confidence < MIN_CONFIDENCE:
            continue
        learnings.append(learning)
    return learnings[:MAX_LEARNINGS]


async def extract_learnings(
    activity: tuple[ActivityLogEntry, ...] | list[ActivityLogEntry],
    llm: LLMBinding,
    gateway: Gateway,
) -> list[ExtractedLearning]:
    if len(activity) < MIN_LOG_ENTRIES:
        return []
    log = _format_log(activity)
    if len(log) < MIN_LOG_CHARS:
        return []

    result = await gateway.complete(
        CompletionRequest(
            provider=llm.provider,
            api_key=llm.api_key,
            model=llm.model,
            system_prompt=EXTRACTION_PROMPT,
            user_prompt=f"SESSION LOG:\n{log}\n\nExtract learnings as JSON:",
            temperature=EXTRACTION_TEMPERATURE,
            max_tokens=EXTRACTION_MAX_TOKENS,
        )
    )
    if not result.success:
        _logger.warning("Learning extraction failed: %s", result.error)
        return []
    return parse_learnings(result.content)


def make_learning_handler(store: LearningStore, gateway: Gateway) -> Handler[SessionStopped]:
    async def handle(event: SessionStopped) -> None:
        if not event.project_path:
            return

        learnings = await extract_learnings(event.activity, event.llm, gateway)
        if not learnings:
            return

        _logger.info("Extracted %d learnings from session %s", len(learnings), event.summary.id)
        for learning in learnings:
            await store.add(
                project_path=event.project_path,
                category=learning.category,
                content=learning.content,
                confidence=learning.confidence,
            )

    return handle
