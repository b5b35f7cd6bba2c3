from warden.llm.anthropic import AnthropicClient
from warden.llm.base import CompletionClient
from warden.llm.models import Provider, get_provider
from warden.llm.openai import OpenAIClient

_clients: dict[tuple[str, str], CompletionClient] = {}


def get_client(provider: str, api_key: str) -> CompletionClient:
    info = get_provider(provider)
    cache_key = (info.provider.value, api_key)
    if cache_key not in _clients:
        match info.provider:
            case Provider.ANTHROPIC:
                _clients[cache_key] = AnthropicClient(api_key=api_key)
            case Provider.OPENAI | Provider.GROQ:
                _clients[cache_key] = OpenAIClient(base_url=info.base_url, api_key=api_key)
            case _:
                raise ValueError(f"Unknown provider: {provider}")
    return _clients[cache_key]


async def close() -> None:
    for client in _clients.values():
        await client.close()
    _clients.clear()
