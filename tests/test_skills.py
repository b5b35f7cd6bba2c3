from pathlib import Path

from warden.skills.registry import SkillRegistry, skill_dirs


def write_skill(base: Path, dirname: str, frontmatter: str, body: str = "Do the thing.") -> None:
    skill_dir = base / dirname
    skill_dir.mkdir(parents=True)
    (skill_dir / "SKILL.md").write_text(f"---\n{frontmatter}\n---\n{body}\n")


class TestSkillDirs:
    def test_project_dirs_come_first(self, tmp_path):
        dirs = skill_dirs(tmp_path / "app", tmp_path / "global")
        assert dirs == [
            (tmp_path / "app" / ".claude" / "skills", "project"),
            (tmp_path / "app" / ".skills", "project"),
            (tmp_path / "global", "global"),
        ]

    def test_without_project(self, tmp_path):
        assert skill_dirs(None, tmp_path) == [(tmp_path, "global")]


class TestSkillRegistry:
    def test_loads_valid_skills(self, tmp_path):
        write_skill(tmp_path, "review", "name: review\ndescription: Review the current diff", body="Read the diff.")
        write_skill(tmp_path, "broken", "name: [unclosed")
        write_skill(tmp_path, "nameless", "description: No name here")
        (tmp_path / "empty").mkdir()

        registry = SkillRegistry()
        registry.load([(tmp_path, "global")])

        assert registry.names == ["review"]
        assert registry.get("review").location == "global"
        assert registry.load_body("review") == "Read the diff."
        assert registry.load_body("missing") is None

    def test_project_skills_shadow_global(self, tmp_path):
        project = tmp_path / "app"
        write_skill(project / ".claude" / "skills", "deploy", "name: deploy\ndescription: Project deploy")
        write_skill(tmp_path / "global", "deploy", "name: deploy\ndescription: Global deploy")
        write_skill(tmp_path / "global", "lint", "name: lint\ndescription: Run the linter")

        registry = SkillRegistry()
        registry.load(skill_dirs(project, tmp_path / "global"))

        assert len(registry) == 2
        assert registry.get("deploy").description == "Project deploy"
        assert registry.get("lint").location == "global"

    def test_skills_context(self, tmp_path):
        write_skill(tmp_path, "deploy", "name: deploy\ndescription: Ship it")
        write_skill(tmp_path, "lint", "name: lint\ndescription: Run the linter")
        registry = SkillRegistry()
        registry.load([(tmp_path, "global")])

        assert registry.skills_context() == (
            "AVAILABLE SKILLS (invoke with /skill-name):\n  /deploy - Ship it\n  /lint - Run the linter"
        )
        assert registry.skills_context(["lint"]).endswith("/lint - Run the linter")
        assert "deploy" not in registry.skills_context(["lint"])
        assert registry.skills_context(["missing"]) == ""

    def test_reload(self, tmp_path):
        registry = SkillRegistry()
        registry.load([(tmp_path, "global")])
        assert registry.skills_context() == ""

        write_skill(tmp_path, "deploy", "name: deploy\ndescription: Ship it")
        registry.reload([(tmp_path, "global")])
        assert registry.names == ["deploy"]
