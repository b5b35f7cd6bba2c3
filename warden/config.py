import json
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from warden.agent.safety import SafetyLevel
from warden.llm.models import PROVIDERS, Provider
from warden.logging import get_logger
from warden.terminal.profiles import PROFILES

WARDEN_DIR = Path.home() / ".warden"
SETTINGS_PATH = WARDEN_DIR / "settings.json"

_logger = get_logger(__name__)


def load_user_settings() -> dict:
    if not SETTINGS_PATH.exists():
        return {}
    try:
        return json.loads(SETTINGS_PATH.read_text())
    except (json.JSONDecodeError, OSError):
        _logger.warning("Failed to load user settings", exc_info=True)
        return {}


def save_user_settings(settings: dict) -> None:
    WARDEN_DIR.mkdir(exist_ok=True)
    SETTINGS_PATH.write_text(json.dumps(settings, indent=2))


class Config(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WARDEN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_assignment=True,
        populate_by_name=True,
    )

    # API keys are read from standard env vars via aliases
    groq_api_key: str | None = Field(default=None, alias="GROQ_API_KEY")
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    anthropic_api_key: str | None = Field(default=None, alias="ANTHROPIC_API_KEY")

    default_provider: str = Provider.GROQ.value
    groq_model: str = PROVIDERS[Provider.GROQ].default_model
    openai_model: str = PROVIDERS[Provider.OPENAI].default_model
    anthropic_model: str = PROVIDERS[Provider.ANTHROPIC].default_model

    # Seconds of terminal silence before a decision cycle
    idle_timeout: float = 5.0
    # Default session time limit in minutes, 0 = unlimited
    max_duration: int = 30
    default_safety_level: str = SafetyLevel.SAFE.value
    # Seconds to wait for the CLI's ready prompt before sending the task anyway
    ready_timeout: float = 10.0
    cli_profile: str = "claude"

    # Let the model end a standalone session with "done" instead of asking for more polish
    allow_completion: bool = False

    race_time_limit: int = 10

    log_level: str = "INFO"

    @field_validator("default_provider")
    @classmethod
    def _validate_provider(cls, v: str) -> str:
        valid = {p.value for p in Provider}
        if v not in valid:
            raise ValueError(f"Unsupported provider: {v}. Must be one of: {', '.join(sorted(valid))}")
        return v

    @field_validator("default_safety_level")
    @classmethod
    def _validate_safety_level(cls, v: str) -> str:
        valid = {level.value for level in SafetyLevel}
        if v not in valid:
            raise ValueError(f"Unsupported safety level: {v}. Must be one of: {', '.join(sorted(valid))}")
        return v

    @field_validator("cli_profile")
    @classmethod
    def _validate_cli_profile(cls, v: str) -> str:
        if v not in PROFILES:
            raise ValueError(f"Unknown CLI profile: {v}. Must be one of: {', '.join(PROFILES)}")
        return v

    @field_validator("idle_timeout")
    @classmethod
    def _validate_idle_timeout(cls, v: float) -> float:
        if not 1 <= v <= 120:
            raise ValueError(f"idle_timeout must be 1-120 seconds, got {v}")
        return v

    @field_validator("max_duration", "race_time_limit")
    @classmethod
    def _validate_minutes(cls, v: int) -> int:
        if not 0 <= v <= 24 * 60:
            raise ValueError(f"time limit must be 0-1440 minutes, got {v}")
        return v

    def api_key_for(self, provider: str) -> str | None:
        match Provider(provider):
            case Provider.GROQ:
                return self.groq_api_key
            case Provider.OPENAI:
                return self.openai_api_key
            case Provider.ANTHROPIC:
                return self.anthropic_api_key

    def model_for(self, provider: str) -> str:
        match Provider(provider):
            case Provider.GROQ:
                return self.groq_model
            case Provider.OPENAI:
                return self.openai_model
            case Provider.ANTHROPIC:
                return self.anthropic_model

    @property
    def db_dir(self) -> Path:
        return WARDEN_DIR

    @property
    def history_db_path(self) -> Path:
        return self.db_dir / "history.db"

    @property
    def memory_db_path(self) -> Path:
        return self.db_dir / "memory.db"

    @property
    def skills_dir(self) -> Path:
        return self.db_dir / "skills"


PERSIST_KEYS = frozenset(
    {
        "default_provider",
        "groq_model",
        "openai_model",
        "anthropic_model",
        "idle_timeout",
        "max_duration",
        "default_safety_level",
        "ready_timeout",
        "cli_profile",
        "allow_completion",
        "race_time_limit",
    }
)


def get_config() -> Config:
    settings = load_user_settings()
    # Build config: init args (settings.json) > env vars > defaults
    overrides = {k: settings[k] for k in PERSIST_KEYS if k in settings}
    return Config(**overrides)  # type: ignore - pydantic handles validation
