from warden.memory.models import Learning, LearningCategory
from warden.memory.store import LearningStore

TOP_PER_CATEGORY = 5

CATEGORY_LABELS: dict[LearningCategory, str] = {
    LearningCategory.COMMAND: "COMMANDS",
    LearningCategory.PREFERENCE: "PREFERENCES",
    LearningCategory.PATTERN: "PATTERNS",
    LearningCategory.FAILURE: "AVOID (previously failed)",
    LearningCategory.WORKFLOW: "WORKFLOW",
}


def format_memory_context(grouped: dict[LearningCategory, list[Learning]]) -> str:
    if not any(grouped.values()):
        return ""
    lines = ["=== PROJECT MEMORY (learned from previous sessions, follow these) ==="]
    for category in LearningCategory:
        entries = sorted(grouped.get(category, []), key=lambda e: e.confidence, reverse=True)[:TOP_PER_CATEGORY]
        if not entries:
            continue
        lines.append(f"\n{CATEGORY_LABELS[category]}:")
        lines.extend(f"  - {e.content}" for e in entries)
    lines.append("=== END PROJECT MEMORY ===")
    return "\n".join(lines)


async def load_memory_context(store: LearningStore, project_path: str | None) -> str:
    if not project_path:
        return ""
    return format_memory_context(await store.top_by_category(project_path, TOP_PER_CATEGORY))
