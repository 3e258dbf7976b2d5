"""Adapter contract and the httpx plumbing shared by vendor adapters."""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Coroutine
from contextlib import aclosing
from typing import Any, TypeVar, cast

import httpx

from ai_gateway.config import ProviderConfig
from ai_gateway.errors import (
    ConfigurationError,
    ProviderError,
    StreamCallbackError,
    StreamCancelledError,
    UnsupportedFeatureError,
)
from ai_gateway.pricing import ModelInfo, calculate_cost, find_model
from ai_gateway.retry import retry_async
from ai_gateway.streaming import StreamAssembler, StreamEvent, StreamHandler
from ai_gateway.types import CompletionOptions, CompletionResult, ImagePart, Message, StreamChunk, Usage

P = TypeVar("P", bound="HTTPProvider")


class BaseProvider(ABC):
    """Capability contract every adapter implements."""

    name: str
    models: tuple[ModelInfo, ...] = ()

    def model_info(self, model: str) -> ModelInfo | None:
        """Return the catalog entry for a model served by this provider."""
        return find_model(self.models, model)

    def calculate_cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        """Price usage from this provider's static table."""
        return calculate_cost(self.models, model, prompt_tokens, completion_tokens)

    @abstractmethod
    async def complete(self, options: CompletionOptions) -> CompletionResult:
        """Run a completion. Vendor failures come back as ``finish_reason='error'``."""
        raise NotImplementedError

    @abstractmethod
    async def stream(
        self,
        options: CompletionOptions,
        handler: StreamHandler,
        *,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """Stream a completion, reporting through exactly one of on_complete/on_error."""
        raise NotImplementedError

    @abstractmethod
    async def validate_config(self) -> bool:
        """Issue one minimal request and report whether it succeeded."""
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release network resources."""

    def _error_result(self, options: CompletionOptions, exc: BaseException) -> CompletionResult:
        return CompletionResult(
            content="",
            usage=Usage(),
            model=options.model,
            provider=self.name,
            finish_reason="error",
            error=str(exc) or type(exc).__name__,
        )


def ensure_capabilities(options: CompletionOptions, info: ModelInfo | None) -> None:
    """Fail fast if the request asks for features the model lacks."""

    if info is None:
        return
    if options.tools and not info.supports_tools:
        raise UnsupportedFeatureError("tools")
    if not info.supports_vision and any(_has_image(m) for m in options.messages):
        raise UnsupportedFeatureError("vision")


def _has_image(message: Message) -> bool:
    if isinstance(message.content, str):
        return False
    return any(isinstance(part, ImagePart) for part in message.content)


class HTTPProvider(BaseProvider):
    """Adapter talking to a vendor's JSON/SSE HTTP API through httpx.

    Subclasses supply the wire translation hooks; request dispatch, retries,
    SSE parsing and error normalization live here.
    """

    default_base_url: str
    validation_model: str
    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str | None = None,
        timeout_s: float = 60.0,
        max_retries: int = 2,
        retry_delay_s: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError(f"{self.name}: an API key is required")
        self._client = httpx.AsyncClient(
            base_url=base_url or self.default_base_url,
            timeout=timeout_s,
            transport=transport,
        )
        self._headers = self._build_headers(api_key)
        self._max_retries = max_retries
        self._retry_delay_s = retry_delay_s

    @classmethod
    def from_config(cls: type[P], config: ProviderConfig, **kwargs: Any) -> P:
        """Build an adapter from decrypted per-vendor settings."""
        return cls(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout_s=config.timeout_s,
            max_retries=config.max_retries,
            **kwargs,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def complete(self, options: CompletionOptions) -> CompletionResult:
        try:
            ensure_capabilities(options, self.model_info(options.model))
            path = self._request_path(options, stream=False)
            payload = self._build_payload(options, stream=False)
            data = await retry_async(
                lambda: self._post_json(path, payload),
                max_retries=self._max_retries,
                initial_delay_s=self._retry_delay_s,
            )
            return self._parse_response(data, options)
        except Exception as exc:
            self._logger.warning("%s completion error: %s", self.name, exc)
            return self._error_result(options, exc)

    async def stream(
        self,
        options: CompletionOptions,
        handler: StreamHandler,
        *,
        cancel: asyncio.Event | None = None,
    ) -> None:
        assembler = StreamAssembler(
            provider=self.name,
            model=options.model,
            handler=handler,
            cost=self.calculate_cost,
        )
        try:
            ensure_capabilities(options, self.model_info(options.model))
            if cancel is not None and cancel.is_set():
                raise StreamCancelledError(self.name)
            await self._until_cancelled(self._consume(options, assembler), cancel)
            result = await assembler.finish()
        except StreamCallbackError:
            # the caller's own callback failed; not a vendor failure
            raise
        except Exception as exc:
            self._logger.warning("%s streaming error: %s", self.name, exc)
            await handler.chunk(StreamChunk(type="error", error=str(exc)))
            await handler.error(exc)
            return
        await handler.complete(result)

    async def _consume(self, options: CompletionOptions, assembler: StreamAssembler) -> None:
        async with aclosing(self._stream_events(options)) as events:
            async for event in events:
                await assembler.feed(event)

    async def _until_cancelled(self, reading: Coroutine[Any, Any, None], cancel: asyncio.Event | None) -> None:
        """Run ``reading`` but abandon it as soon as ``cancel`` is set.

        Cancelling the reader task unwinds ``aclosing`` and the httpx stream
        context, which closes the vendor response even while it is stalled.
        """
        if cancel is None:
            await reading
            return

        reader = asyncio.ensure_future(reading)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({reader, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (reader, waiter):
                if not task.done():
                    task.cancel()
            await asyncio.wait({reader, waiter})

        if reader.cancelled():
            raise StreamCancelledError(self.name)
        reader.result()

    async def validate_config(self) -> bool:
        options = CompletionOptions(
            model=self.validation_model,
            messages=[Message(role="user", content="test")],
            max_tokens=10,
        )
        try:
            await self._post_json(
                self._request_path(options, stream=False),
                self._build_payload(options, stream=False),
            )
        except Exception as exc:
            self._logger.warning("%s config validation failed: %s", self.name, exc)
            return False
        return True

    @abstractmethod
    def _build_headers(self, api_key: str) -> dict[str, str]:
        raise NotImplementedError

    @abstractmethod
    def _request_path(self, options: CompletionOptions, *, stream: bool) -> str:
        raise NotImplementedError

    @abstractmethod
    def _build_payload(self, options: CompletionOptions, *, stream: bool) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def _parse_response(self, data: dict[str, Any], options: CompletionOptions) -> CompletionResult:
        raise NotImplementedError

    @abstractmethod
    def _translate_stream(self, payloads: AsyncIterator[dict[str, Any]]) -> AsyncIterator[StreamEvent]:
        """Map decoded vendor stream payloads onto ``StreamEvent``s."""
        raise NotImplementedError

    async def _post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.post(path, headers=self._headers, json=payload)
        return self._json_or_error(response)

    async def _stream_events(self, options: CompletionOptions) -> AsyncIterator[StreamEvent]:
        payload = self._build_payload(options, stream=True)
        async with self._client.stream(
            "POST",
            self._request_path(options, stream=True),
            headers=self._headers,
            json=payload,
        ) as response:
            if response.status_code >= 400:
                body = await response.aread()
                raise ProviderError(
                    self.name,
                    body.decode() or response.reason_phrase,
                    status_code=response.status_code,
                )
            async with aclosing(self._translate_stream(self._iter_sse(response))) as events:
                async for event in events:
                    yield event

    async def _iter_sse(self, response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
        async for line in response.aiter_lines():
            line = line.strip()
            # Only "data:" lines carry payloads; "event:" names are repeated in the JSON.
            if not line.startswith("data:"):
                continue

            data_str = line[len("data:") :].strip()
            if data_str == "[DONE]":
                return

            try:
                event = json.loads(data_str)
            except json.JSONDecodeError:
                self._logger.debug("Skipping non-JSON streaming chunk: %s", data_str)
                continue
            if isinstance(event, dict):
                yield event

    def _json_or_error(self, response: httpx.Response) -> dict[str, Any]:
        if response.status_code >= 400:
            raise ProviderError(
                self.name,
                response.text or response.reason_phrase,
                status_code=response.status_code,
            )
        return cast(dict[str, Any], response.json())
