import asyncio

import httpx

from ai_gateway.config import FailoverConfig
from ai_gateway.errors import AllProvidersFailedError
from ai_gateway.manager import ProviderManager
from ai_gateway.providers import AnthropicProvider, OpenAIProvider
from ai_gateway.streaming import StreamHandler
from ai_gateway.types import CompletionOptions, ImagePart, Message


def _offline(request: httpx.Request) -> httpx.Response:
    return httpx.Response(503, text="offline")


async def main() -> None:
    transport = httpx.MockTransport(_offline)
    manager = ProviderManager(
        adapters={
            "anthropic": AnthropicProvider(api_key="DUMMY", transport=transport, max_retries=0),
            "openai": OpenAIProvider(api_key="DUMMY", transport=transport, max_retries=0),
        },
        failover=FailoverConfig(providers=["anthropic", "openai"]),
    )

    # claude-3-5-haiku is text-only, so this fails before any request is sent
    options = CompletionOptions(
        model="claude-3-5-haiku-20241022",
        messages=[Message(role="user", content=[ImagePart(url="https://example.com/exhibit.png")])],
    )

    try:
        await manager.complete(options)
    except AllProvidersFailedError as e:
        print("Expected error:", type(e).__name__, e)

    manager.reset_provider("anthropic")
    manager.reset_provider("openai")
    handler = StreamHandler(
        on_chunk=lambda chunk: print("chunk:", chunk.type, chunk.error or chunk.delta or ""),
        on_complete=lambda result: print("done:", result.content),
        on_error=lambda exc: print("stream error:", exc),
    )
    try:
        await manager.stream(options.model_copy(update={"model": "gpt-4o-mini"}), handler)
    except AllProvidersFailedError:
        pass

    for status in manager.get_all_provider_statuses():
        print(status.provider, "available" if status.available else f"down: {status.error}")
    await manager.aclose()


if __name__ == "__main__":
    asyncio.run(main())
