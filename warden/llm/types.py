from dataclasses import dataclass

from warden.usage import Usage

DEFAULT_MAX_TOKENS = 200


@dataclass(frozen=True)
class CompletionRequest:
    provider: str
    api_key: str
    model: str
    system_prompt: str
    user_prompt: str
    temperature: float = 0.2
    max_tokens: int = DEFAULT_MAX_TOKENS


@dataclass(frozen=True)
class CompletionResult:
    success: bool
    content: str | None = None
    error: str | None = None
    usage: Usage | None = None

    @classmethod
    def ok(cls, content: str, usage: Usage | None = None) -> "CompletionResult":
        return cls(success=True, content=content, usage=usage)

    @classmethod
    def failed(cls, error: str) -> "CompletionResult":
        return cls(success=False, error=error)
