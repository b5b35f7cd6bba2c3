from abc import ABC, abstractmethod

from warden.usage import Usage


class CompletionClient(ABC):
    @abstractmethod
    async def complete(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> tuple[str, Usage]: ...

    @abstractmethod
    async def close(self) -> None: ...
