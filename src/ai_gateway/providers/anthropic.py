"""Anthropic provider implementation."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from ai_gateway.errors import ProviderError
from ai_gateway.pricing import AI_MODELS
from ai_gateway.providers.base import HTTPProvider
from ai_gateway.streaming import StreamEvent
from ai_gateway.types import (
    CompletionOptions,
    CompletionResult,
    ContentPart,
    FinishReason,
    ImagePart,
    Message,
    ToolCall,
    ToolChoice,
    ToolDef,
    Usage,
    split_system,
)

_DEFAULT_BASE_URL = "https://api.anthropic.com"
_MESSAGES_PATH = "/v1/messages"
_API_VERSION = "2023-06-01"
_DEFAULT_MAX_TOKENS = 4096

_STOP_REASONS: dict[str, FinishReason] = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "tool_use": "tool_calls",
    "max_tokens": "length",
}


class AnthropicProvider(HTTPProvider):
    """Async wrapper for the Anthropic Messages API."""

    name = "anthropic"
    models = AI_MODELS["anthropic"]
    default_base_url = _DEFAULT_BASE_URL
    validation_model = "claude-3-5-haiku-20241022"
    _logger = logging.getLogger(__name__)

    def _build_headers(self, api_key: str) -> dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

    def _request_path(self, options: CompletionOptions, *, stream: bool) -> str:
        return _MESSAGES_PATH

    def _build_payload(self, options: CompletionOptions, *, stream: bool) -> dict[str, Any]:
        system_text, msgs = split_system(options.messages)

        payload: dict[str, Any] = {
            "model": options.model,
            "max_tokens": options.max_tokens or _DEFAULT_MAX_TOKENS,
            "messages": self._serialize_messages(msgs),
        }

        if system_text:
            payload["system"] = system_text
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.top_p is not None:
            payload["top_p"] = options.top_p
        if options.stop_sequences:
            payload["stop_sequences"] = options.stop_sequences
        if options.tools:
            payload.update(self._serialize_tools(options.tools, options.tool_choice))
        if stream:
            payload["stream"] = True
        return payload

    def _serialize_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Build the messages list.

        Anthropic requires strict user/assistant alternation, so consecutive
        same-role messages (typically several tool results) are merged.
        """
        out: list[dict[str, Any]] = []
        for m in messages:
            if m.role == "tool":
                entry = {
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": m.tool_call_id or "",
                            "content": m.text(),
                        }
                    ],
                }
            elif m.role == "assistant" and m.tool_calls:
                blocks = self._serialize_content(m.content) if m.text() else []
                blocks.extend(
                    {"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments}
                    for tc in m.tool_calls
                )
                entry = {"role": "assistant", "content": blocks}
            elif m.role in ("user", "assistant"):
                content = m.content if isinstance(m.content, str) else self._serialize_content(m.content)
                entry = {"role": m.role, "content": content}
            else:
                raise ProviderError(self.name, f"Unsupported role: {m.role}")
            _append_message(out, entry)
        return out

    @staticmethod
    def _serialize_content(content: str | list[ContentPart]) -> list[dict[str, Any]]:
        if isinstance(content, str):
            return [{"type": "text", "text": content}]
        blocks: list[dict[str, Any]] = []
        for part in content:
            if isinstance(part, ImagePart):
                if part.url is not None:
                    source = {"type": "url", "url": part.url}
                else:
                    source = {"type": "base64", "media_type": part.mime_type, "data": part.data}
                blocks.append({"type": "image", "source": source})
            else:
                blocks.append({"type": "text", "text": part.text})
        return blocks

    @staticmethod
    def _serialize_tools(tools: list[ToolDef], tool_choice: ToolChoice | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "tools": [
                {
                    "name": t.name,
                    "description": t.description,
                    "input_schema": t.parameters,
                }
                for t in tools
            ]
        }

        if tool_choice == "auto":
            payload["tool_choice"] = {"type": "auto"}
        elif tool_choice == "required":
            payload["tool_choice"] = {"type": "any"}
        elif tool_choice is not None:
            payload["tool_choice"] = {"type": "tool", "name": tool_choice.name}

        return payload

    def _parse_response(self, data: dict[str, Any], options: CompletionOptions) -> CompletionResult:
        parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in data.get("content") or []:
            if block.get("type") == "text":
                parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                tool_calls.append(
                    ToolCall(id=block["id"], name=block["name"], arguments=block.get("input") or {})
                )

        usage = data.get("usage") or {}
        prompt_tokens = usage.get("input_tokens", 0)
        completion_tokens = usage.get("output_tokens", 0)
        finish_reason = _STOP_REASONS.get(data.get("stop_reason") or "", "stop")
        if tool_calls:
            finish_reason = "tool_calls"

        return CompletionResult(
            content="".join(parts),
            tool_calls=tool_calls or None,
            usage=Usage.from_counts(
                prompt_tokens,
                completion_tokens,
                self.calculate_cost(options.model, prompt_tokens, completion_tokens),
            ),
            model=options.model,
            provider=self.name,
            finish_reason=finish_reason,
        )

    async def _translate_stream(self, payloads: AsyncIterator[dict[str, Any]]) -> AsyncIterator[StreamEvent]:
        async for event in payloads:
            kind = event.get("type")
            if kind == "message_start":
                usage = (event.get("message") or {}).get("usage") or {}
                yield StreamEvent(
                    type="usage",
                    prompt_tokens=usage.get("input_tokens"),
                    completion_tokens=usage.get("output_tokens"),
                    raw=event,
                )
            elif kind == "content_block_start":
                block = event.get("content_block") or {}
                if block.get("type") == "tool_use":
                    yield StreamEvent(
                        type="tool_call_start",
                        tool_call_id=block.get("id"),
                        tool_name=block.get("name"),
                        raw=event,
                    )
            elif kind == "content_block_delta":
                delta = event.get("delta") or {}
                if delta.get("type") == "text_delta":
                    yield StreamEvent(type="text_delta", text=delta.get("text", ""), raw=event)
                elif delta.get("type") == "input_json_delta":
                    yield StreamEvent(type="tool_call_delta", text=delta.get("partial_json", ""), raw=event)
            elif kind == "content_block_stop":
                yield StreamEvent(type="block_stop", raw=event)
            elif kind == "message_delta":
                usage = event.get("usage") or {}
                yield StreamEvent(
                    type="usage",
                    prompt_tokens=usage.get("input_tokens"),
                    completion_tokens=usage.get("output_tokens"),
                    raw=event,
                )
                stop_reason = (event.get("delta") or {}).get("stop_reason")
                if stop_reason:
                    yield StreamEvent(type="finish", finish_reason=_STOP_REASONS.get(stop_reason, "stop"))
            elif kind == "message_stop":
                yield StreamEvent(type="done", raw=event)
            elif kind == "error":
                error = event.get("error") or {}
                raise ProviderError(self.name, error.get("message") or "stream error")


def _append_message(messages: list[dict[str, Any]], entry: dict[str, Any]) -> None:
    if not messages or messages[-1]["role"] != entry["role"]:
        messages.append(entry)
        return
    previous = messages[-1]
    previous["content"] = _as_blocks(previous["content"]) + _as_blocks(entry["content"])


def _as_blocks(content: str | list[dict[str, Any]]) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return list(content)
