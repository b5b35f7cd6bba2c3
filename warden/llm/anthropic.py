import anthropic

from warden.llm.base import CompletionClient
from warden.usage import Usage

DEFAULT_MAX_TOKENS = 1024


class AnthropicClient(CompletionClient):
    def __init__(self, api_key: str | None = None):
        self._client = anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)

    async def complete(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> tuple[str, Usage]:
        request: dict = {
            "model": model,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
        }
        if temperature is not None:
            request["temperature"] = temperature

        response = await self._client.messages.create(**request)
        content = "".join(block.text for block in response.content if block.type == "text")
        usage = Usage(
            prompt_tokens=response.usage.input_tokens,
            completion_tokens=response.usage.output_tokens,
        )
        return content.strip(), usage

    async def close(self) -> None:
        await self._client.close()
