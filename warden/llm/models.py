from dataclasses import dataclass
from enum import StrEnum


class Provider(StrEnum):
    GROQ = "groq"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


GROQ_BASE_URL = "https://api.groq.com/openai/v1"


@dataclass(frozen=True)
class ProviderInfo:
    provider: Provider
    default_model: str
    api_key_env: str
    base_url: str | None = None


PROVIDERS: dict[Provider, ProviderInfo] = {
    Provider.GROQ: ProviderInfo(
        Provider.GROQ,
        default_model="llama-3.3-70b-versatile",
        api_key_env="GROQ_API_KEY",
        base_url=GROQ_BASE_URL,
    ),
    Provider.OPENAI: ProviderInfo(
        Provider.OPENAI,
        default_model="gpt-4o-mini",
        api_key_env="OPENAI_API_KEY",
    ),
    Provider.ANTHROPIC: ProviderInfo(
        Provider.ANTHROPIC,
        default_model="claude-3-5-haiku-latest",
        api_key_env="ANTHROPIC_API_KEY",
    ),
}


def get_provider(name: str) -> ProviderInfo:
    try:
        return PROVIDERS[Provider(name)]
    except ValueError:
        raise ValueError(f"Unknown provider: {name}. Must be one of: {', '.join(PROVIDERS)}") from None
