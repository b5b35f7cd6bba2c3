import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import yaml

from warden.logging import get_logger

_logger = get_logger(__name__)

_FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*\n?", re.DOTALL)

PROJECT_SKILL_DIRS = (".claude/skills", ".skills")


@dataclass
class SkillMeta:
    name: str
    description: str
    path: Path
    location: str


def _parse_skill_md(content: str) -> tuple[dict, str] | None:
    m = _FRONTMATTER_RE.match(content)
    if not m:
        return None
    try:
        frontmatter = yaml.safe_load(m.group(1))
    except yaml.YAMLError:
        return None
    if not isinstance(frontmatter, dict):
        return None
    return frontmatter, content[m.end() :]


def skill_dirs(project_path: str | Path | None, global_dir: Path) -> list[tuple[Path, str]]:
    dirs: list[tuple[Path, str]] = []
    if project_path:
        dirs.extend((Path(project_path) / d, "project") for d in PROJECT_SKILL_DIRS)
    dirs.append((global_dir, "global"))
    return dirs


class SkillRegistry:
    """Skills the supervised CLI can invoke as slash commands.

    Each skill is a directory holding a SKILL.md with ``name`` and
    ``description`` in its YAML front matter. Earlier directories win on
    name clashes, so project skills shadow global ones.
    """

    def __init__(self):
        self._skills: dict[str, SkillMeta] = {}

    def load(self, dirs: list[tuple[Path, str]]) -> None:
        for path, location in dirs:
            self._scan_dir(path, location)
        if self._skills:
            _logger.info("Loaded %d skill(s): %s", len(self._skills), ", ".join(self._skills))

    def _scan_dir(self, base: Path, location: str) -> None:
        if not base.is_dir():
            return
        for skill_dir in sorted(base.iterdir()):
            if not skill_dir.is_dir():
                continue
            skill_md = skill_dir / "SKILL.md"
            if not skill_md.exists():
                continue
            try:
                content = skill_md.read_text()
            except OSError:
                _logger.warning("Failed to read %s", skill_md)
                continue
            parsed = _parse_skill_md(content)
            if not parsed:
                _logger.warning("Invalid frontmatter in %s", skill_md)
                continue
            frontmatter, _ = parsed
            name = frontmatter.get("name")
            description = frontmatter.get("description")
            if not name or not description:
                _logger.warning("Missing name or description in %s", skill_md)
                continue
            if name in self._skills:
                continue
            self._skills[name] = SkillMeta(
                name=str(name),
                description=str(description).strip(),
                path=skill_dir,
                location=location,
            )

    def get(self, name: str) -> SkillMeta | None:
        return self._skills.get(name)

    def load_body(self, name: str) -> str | None:
        meta = self._skills.get(name)
        if not meta:
            return None
        try:
            content = (meta.path / "SKILL.md").read_text()
        except OSError:
            return None
        parsed = _parse_skill_md(content)
        if not parsed:
            return None
        _, body = parsed
        return body.strip()

    def skills_context(self, active: Iterable[str] | None = None) -> str:
        """Prompt block listing the skills; ``active`` narrows it to the named ones."""
        wanted = set(active) if active is not None else None
        skills = [s for s in self._skills.values() if wanted is None or s.name in wanted]
        if not skills:
            return ""
        lines = ["AVAILABLE SKILLS (invoke with /skill-name):"]
        lines.extend(f"  /{s.name} - {s.description}" for s in skills)
        return "\n".join(lines)

    def reload(self, dirs: list[tuple[Path, str]]) -> None:
        self._skills.clear()
        self.load(dirs)

    @property
    def names(self) -> list[str]:
        return list(self._skills)

    def __len__(self) -> int:
        return len(self._skills)
