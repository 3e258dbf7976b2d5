"""Streaming reconstruction shared by all adapters.

Adapters translate vendor stream payloads into the small ``StreamEvent``
vocabulary below. ``StreamAssembler`` turns those events into unified
``StreamChunk`` callbacks and a final ``CompletionResult``.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel

from ai_gateway.errors import StreamCallbackError, ToolArgumentsError
from ai_gateway.types import CompletionResult, FinishReason, StreamChunk, ToolCall, Usage

logger = logging.getLogger(__name__)

EventType = Literal[
    "text_delta",
    "tool_call_start",
    "tool_call_delta",
    "block_stop",
    "usage",
    "finish",
    "done",
]


class StreamEvent(BaseModel):
    """Vendor-neutral structural event emitted by adapter stream translators."""

    type: EventType
    text: str | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    finish_reason: FinishReason | None = None
    raw: dict[str, Any] | None = None


Callback = Callable[[Any], Awaitable[None] | None]


async def _invoke(callback: Callback | None, arg: Any, name: str) -> None:
    if callback is None:
        return
    try:
        outcome = callback(arg)
        if inspect.isawaitable(outcome):
            await outcome
    except StreamCallbackError:
        raise
    except Exception as exc:
        raise StreamCallbackError(name, exc) from exc


@dataclass
class StreamHandler:
    """Caller callbacks. Each may be a plain function or a coroutine function."""

    on_chunk: Callback | None = None
    on_complete: Callback | None = None
    on_error: Callback | None = None

    async def chunk(self, chunk: StreamChunk) -> None:
        await _invoke(self.on_chunk, chunk, "on_chunk")

    async def complete(self, result: CompletionResult) -> None:
        await _invoke(self.on_complete, result, "on_complete")

    async def error(self, exc: BaseException) -> None:
        await _invoke(self.on_error, exc, "on_error")


class StreamState(str, Enum):
    IDLE = "idle"
    TEXT = "text-accumulating"
    TOOL_OPEN = "tool-open"
    TOOL_ACCUMULATING = "tool-accumulating"
    TOOL_CLOSED = "tool-closed"


@dataclass
class _PendingToolCall:
    id: str
    name: str
    buffer: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)


class StreamAssembler:
    """Per-stream state machine from ``StreamEvent`` to unified chunks."""

    def __init__(
        self,
        *,
        provider: str,
        model: str,
        handler: StreamHandler,
        cost: Callable[[str, int, int], float],
    ) -> None:
        self.provider = provider
        self.model = model
        self.state = StreamState.IDLE
        self._handler = handler
        self._cost = cost
        self._content: list[str] = []
        self._tool_calls: list[ToolCall] = []
        self._pending: _PendingToolCall | None = None
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._finish_reason: FinishReason | None = None

    @property
    def content(self) -> str:
        return "".join(self._content)

    async def feed(self, event: StreamEvent) -> None:
        """Advance the state machine by one vendor event."""
        if event.type == "text_delta":
            if not event.text:
                return
            self._content.append(event.text)
            if self._pending is None:
                self.state = StreamState.TEXT
            await self._handler.chunk(StreamChunk(type="content", delta=event.text))
        elif event.type == "tool_call_start":
            if self._pending is not None:
                await self._close_tool()
            self._pending = _PendingToolCall(
                id=event.tool_call_id or str(uuid4()),
                name=event.tool_name or "",
            )
            self.state = StreamState.TOOL_OPEN
        elif event.type == "tool_call_delta":
            if self._pending is None:
                logger.debug("Dropping argument fragment with no open tool call")
                return
            self._pending.buffer += event.text or ""
            self.state = StreamState.TOOL_ACCUMULATING
            try:
                parsed = json.loads(self._pending.buffer)
            except json.JSONDecodeError:
                # still partial
                return
            if isinstance(parsed, dict):
                self._pending.arguments = parsed
        elif event.type == "block_stop":
            if self._pending is not None:
                await self._close_tool()
            self.state = StreamState.IDLE
        elif event.type == "usage":
            if event.prompt_tokens is not None:
                self._prompt_tokens = event.prompt_tokens
            if event.completion_tokens is not None:
                self._completion_tokens = event.completion_tokens
        elif event.type == "finish":
            self._finish_reason = event.finish_reason

    async def finish(self) -> CompletionResult:
        """Close the stream: emit the terminal ``done`` chunk and build the result."""
        if self._pending is not None:
            await self._close_tool()
            self.state = StreamState.IDLE

        usage = Usage.from_counts(
            self._prompt_tokens,
            self._completion_tokens,
            self._cost(self.model, self._prompt_tokens, self._completion_tokens),
        )
        if self._tool_calls:
            finish_reason: FinishReason = "tool_calls"
        else:
            finish_reason = self._finish_reason or "stop"

        await self._handler.chunk(StreamChunk(type="done", usage=usage))
        return CompletionResult(
            content=self.content,
            tool_calls=list(self._tool_calls) or None,
            usage=usage,
            model=self.model,
            provider=self.provider,
            finish_reason=finish_reason,
        )

    async def _close_tool(self) -> None:
        pending = self._pending
        assert pending is not None
        self._pending = None

        raw = pending.buffer.strip()
        if raw:
            try:
                arguments = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise ToolArgumentsError(self.provider, pending.name, raw) from exc
            if not isinstance(arguments, dict):
                raise ToolArgumentsError(self.provider, pending.name, raw)
        else:
            arguments = pending.arguments

        tool_call = ToolCall(id=pending.id, name=pending.name, arguments=arguments)
        self._tool_calls.append(tool_call)
        self.state = StreamState.TOOL_CLOSED
        await self._handler.chunk(StreamChunk(type="tool_call", tool_call=tool_call))
