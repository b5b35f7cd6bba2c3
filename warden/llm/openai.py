import openai

from warden.llm.base import CompletionClient
from warden.usage import Usage


class OpenAIClient(CompletionClient):
    """Chat completions for OpenAI and OpenAI-compatible endpoints (Groq)."""

    def __init__(self, base_url: str | None = None, api_key: str | None = None):
        self._client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

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
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        optional = {"temperature": temperature, "max_tokens": max_tokens}
        request.update({k: v for k, v in optional.items() if v is not None})

        response = await self._client.chat.completions.create(**request)
        content = response.choices[0].message.content or ""
        usage = Usage()
        if response.usage:
            usage = Usage(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
            )
        return content.strip(), usage

    async def close(self) -> None:
        await self._client.close()
