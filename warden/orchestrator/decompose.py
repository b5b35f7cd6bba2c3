import json
import re
from typing import Annotated

from pydantic import StringConstraints, TypeAdapter, ValidationError

from warden.llm.gateway import Gateway
from warden.llm.types import CompletionRequest
from warden.logging import get_logger
from warden.session.models import LLMBinding

_logger = get_logger(__name__)

DECOMPOSE_TEMPERATURE = 0.3
DECOMPOSE_MAX_TOKENS = 600

_ARRAY_RE = re.compile(r"\[[\s\S]*\]")

_SubTasks = TypeAdapter(list[Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]])

DECOMPOSE_PROMPT = """You are a task decomposition assistant. Break down a master task into {count} independent sub-tasks that can be worked on by separate CLI coding agents.

Each sub-task should be:
- Self-contained enough to work on independently
- Specific and actionable
- Roughly equal in scope

Respond ONLY with a JSON array of strings, one per terminal:
["sub-task 1", "sub-task 2", ...]"""


def parse_subtasks(content: str | None) -> list[str] | None:
    if not content:
        return None
    try:
        raw = json.loads(content)
    except json.JSONDecodeError:
        match = _ARRAY_RE.search(content)
        if not match:
            return None
        try:
            raw = json.loads(match.group(0))
        except json.JSONDecodeError:
            return None
    try:
        tasks = _SubTasks.validate_python(raw)
    except ValidationError:
        return None
    return tasks or None


async def decompose_task(master_task: str, count: int, llm: LLMBinding, gateway: Gateway) -> list[str] | None:
    """Ask the model to split ``master_task`` into ``count`` sub-tasks.

    Returns exactly ``count`` tasks (short answers are padded with the last
    sub-task), or None when the model could not be reached or understood.
    """
    result = await gateway.complete(
        CompletionRequest(
            provider=llm.provider,
            api_key=llm.api_key,
            model=llm.model,
            system_prompt=DECOMPOSE_PROMPT.format(count=count),
            user_prompt=f"Break this task into {count} sub-tasks:\n\n{master_task}",
            temperature=DECOMPOSE_TEMPERATURE,
            max_tokens=DECOMPOSE_MAX_TOKENS,
        )
    )
    if not result.success:
        _logger.warning("Task decomposition failed: %s", result.error)
        return None

    tasks = parse_subtasks(result.content)
    if tasks is None:
        _logger.warning("Could not parse decomposition: %r", (result.content or "")[:200])
        return None
    return [tasks[i] if i < len(tasks) else tasks[-1] for i in range(count)]
