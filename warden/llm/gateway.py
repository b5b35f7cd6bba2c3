import asyncio
from typing import Protocol

from warden.llm import router
from warden.llm.types import CompletionRequest, CompletionResult
from warden.logging import get_logger

_logger = get_logger(__name__)

REQUEST_TIMEOUT = 15.0


class Gateway(Protocol):
    async def complete(self, request: CompletionRequest) -> CompletionResult: ...


class LLMGateway:
    """Single-shot completions with a hard timeout.

    Never raises for provider trouble: timeouts, HTTP errors and bad keys all
    come back as ``CompletionResult(success=False)``. Retrying is the caller's
    business.
    """

    def __init__(self, timeout: float = REQUEST_TIMEOUT):
        self.timeout = timeout

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        if not request.api_key:
            return CompletionResult.failed(f"No API key configured for {request.provider}")
        try:
            client = router.get_client(request.provider, request.api_key)
            content, usage = await asyncio.wait_for(
                client.complete(
                    model=request.model,
                    system_prompt=request.system_prompt,
                    user_prompt=request.user_prompt,
                    temperature=request.temperature,
                    max_tokens=request.max_tokens,
                ),
                timeout=self.timeout,
            )
        except TimeoutError:
            return CompletionResult.failed(f"Request timed out after {self.timeout:g} seconds")
        except Exception as e:
            _logger.warning("Completion via %s failed", request.provider, exc_info=True)
            return CompletionResult.failed(str(e) or type(e).__name__)
        return CompletionResult.ok(content, usage)

    async def close(self) -> None:
        await router.close()
