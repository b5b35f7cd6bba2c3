from collections.abc import Callable

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_incrementing

from warden.errors import GatewayError
from warden.llm.gateway import Gateway
from warden.llm.types import CompletionRequest, CompletionResult
from warden.logging import get_logger

_logger = get_logger(__name__)

MAX_ATTEMPTS = 3
BACKOFF_STEP = 1.0

type RetryHook = Callable[[int, float, BaseException], None]


async def complete_with_retry(
    gateway: Gateway,
    request: CompletionRequest,
    attempts: int = MAX_ATTEMPTS,
    backoff: float = BACKOFF_STEP,
    on_retry: RetryHook | None = None,
) -> CompletionResult:
    """Call the gateway, retrying failures with linear backoff (attempt x ``backoff``).

    Raises the last error once the attempts are used up.
    """

    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception()
        delay = state.next_action.sleep if state.next_action else 0.0
        _logger.warning(
            "LLM call failed (attempt %d/%d), retrying in %.1fs: %s",
            state.attempt_number,
            attempts,
            delay,
            exc,
        )
        if on_retry:
            on_retry(state.attempt_number, delay, exc)

    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(Exception),
        stop=stop_after_attempt(attempts),
        wait=wait_incrementing(start=backoff, increment=backoff),
        before_sleep=_before_sleep,
        reraise=True,
    ):
        with attempt:
            result = await gateway.complete(request)
            if not result.success:
                raise GatewayError(result.error or "unsuccessful completion")
    return result
