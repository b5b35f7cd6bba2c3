import asyncio
from unittest.mock import AsyncMock

import pytest

from warden.errors import GatewayError
from warden.llm import router
from warden.llm.anthropic import AnthropicClient
from warden.llm.gateway import LLMGateway
from warden.llm.models import get_provider
from warden.llm.openai import OpenAIClient
from warden.llm.retry import complete_with_retry
from warden.llm.types import CompletionRequest, CompletionResult
from warden.usage import Usage


def request(provider: str = "groq", api_key: str = "test-key") -> CompletionRequest:
    return CompletionRequest(
        provider=provider,
        api_key=api_key,
        model="test-model",
        system_prompt="system",
        user_prompt="user",
    )


class FakeClient:
    def __init__(self, result=None, error: Exception | None = None, delay: float = 0.0):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = []

    async def complete(self, **kwargs):
        self.calls.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result

    async def close(self) -> None:
        pass


class TestGateway:
    @pytest.mark.asyncio
    async def test_success(self, monkeypatch):
        client = FakeClient(result=("hello", Usage(prompt_tokens=3, completion_tokens=2)))
        monkeypatch.setattr(router, "get_client", lambda provider, api_key: client)

        result = await LLMGateway().complete(request())

        assert result.success
        assert result.content == "hello"
        assert result.usage.total_tokens == 5
        assert client.calls[0]["temperature"] == 0.2
        assert client.calls[0]["max_tokens"] == 200

    @pytest.mark.asyncio
    async def test_missing_key(self):
        result = await LLMGateway().complete(request(api_key=""))
        assert not result.success
        assert "No API key" in result.error

    @pytest.mark.asyncio
    async def test_provider_error_becomes_result(self, monkeypatch):
        client = FakeClient(error=RuntimeError("401 invalid key"))
        monkeypatch.setattr(router, "get_client", lambda provider, api_key: client)

        result = await LLMGateway().complete(request())

        assert not result.success
        assert result.error == "401 invalid key"

    @pytest.mark.asyncio
    async def test_timeout(self, monkeypatch):
        client = FakeClient(result=("late", Usage()), delay=1.0)
        monkeypatch.setattr(router, "get_client", lambda provider, api_key: client)

        result = await LLMGateway(timeout=0.05).complete(request())

        assert not result.success
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_unknown_provider(self):
        result = await LLMGateway().complete(request(provider="mistral"))
        assert not result.success
        assert "Unknown provider" in result.error


class TestRouter:
    @pytest.mark.asyncio
    async def test_clients_are_cached_per_key(self):
        try:
            groq = router.get_client("groq", "k1")
            assert isinstance(groq, OpenAIClient)
            assert router.get_client("groq", "k1") is groq
            assert router.get_client("groq", "k2") is not groq
            assert isinstance(router.get_client("anthropic", "k1"), AnthropicClient)
        finally:
            await router.close()

    def test_groq_uses_openai_compatible_endpoint(self):
        assert get_provider("groq").base_url == "https://api.groq.com/openai/v1"


class TestRetry:
    @pytest.mark.asyncio
    async def test_retries_unsuccessful_results(self):
        gateway = AsyncMock()
        gateway.complete.side_effect = [CompletionResult.failed("busy"), CompletionResult.ok("fine")]
        retries = []

        result = await complete_with_retry(
            gateway, request(), attempts=3, backoff=0, on_retry=lambda n, d, e: retries.append(n)
        )

        assert result.content == "fine"
        assert retries == [1]

    @pytest.mark.asyncio
    async def test_raises_after_last_attempt(self):
        gateway = AsyncMock()
        gateway.complete.return_value = CompletionResult.failed("down")

        with pytest.raises(GatewayError, match="down"):
            await complete_with_retry(gateway, request(), attempts=2, backoff=0)
        assert gateway.complete.await_count == 2
