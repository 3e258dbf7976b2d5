"""OpenAI provider implementation."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from ai_gateway.errors import ProviderError, ToolArgumentsError
from ai_gateway.pricing import AI_MODELS
from ai_gateway.providers.base import HTTPProvider
from ai_gateway.streaming import StreamEvent
from ai_gateway.types import (
    CompletionOptions,
    CompletionResult,
    FinishReason,
    ImagePart,
    Message,
    ToolCall,
    ToolChoice,
    ToolDef,
    Usage,
    split_system,
)

_DEFAULT_BASE_URL = "https://api.openai.com/v1"
_CHAT_PATH = "/chat/completions"

_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool_calls",
    "function_call": "tool_calls",
}


class OpenAIProvider(HTTPProvider):
    """Async wrapper for the OpenAI Chat Completions API."""

    name = "openai"
    models = AI_MODELS["openai"]
    default_base_url = _DEFAULT_BASE_URL
    validation_model = "gpt-4o-mini"
    _logger = logging.getLogger(__name__)

    def _build_headers(self, api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _request_path(self, options: CompletionOptions, *, stream: bool) -> str:
        return _CHAT_PATH

    def _build_payload(self, options: CompletionOptions, *, stream: bool) -> dict[str, Any]:
        system_text, msgs = split_system(options.messages)
        messages = [self._serialize_message(m) for m in msgs]
        if system_text:
            messages.insert(0, {"role": "system", "content": system_text})

        payload: dict[str, Any] = {"model": options.model, "messages": messages}

        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.max_tokens is not None:
            payload["max_tokens"] = options.max_tokens
        if options.top_p is not None:
            payload["top_p"] = options.top_p
        if options.stop_sequences:
            payload["stop"] = options.stop_sequences
        if options.tools:
            payload.update(self._serialize_tools(options.tools, options.tool_choice))
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    @staticmethod
    def _serialize_message(message: Message) -> dict[str, Any]:
        if message.role == "tool":
            return {
                "role": "tool",
                "tool_call_id": message.tool_call_id or "",
                "content": message.text(),
            }
        if message.role == "assistant":
            entry: dict[str, Any] = {"role": "assistant", "content": message.text()}
            if message.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                    }
                    for tc in message.tool_calls
                ]
            return entry
        if isinstance(message.content, str):
            return {"role": message.role, "content": message.content}

        content: list[dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, ImagePart):
                url = part.url if part.url is not None else f"data:{part.mime_type};base64,{part.data}"
                content.append({"type": "image_url", "image_url": {"url": url}})
            else:
                content.append({"type": "text", "text": part.text})
        return {"role": message.role, "content": content}

    @staticmethod
    def _serialize_tools(tools: list[ToolDef], tool_choice: ToolChoice | None) -> dict[str, Any]:
        tool_payload = [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.parameters,
                },
            }
            for t in tools
        ]

        payload: dict[str, Any] = {"tools": tool_payload}

        if tool_choice in ("auto", "required"):
            payload["tool_choice"] = tool_choice
        elif tool_choice is not None:
            payload["tool_choice"] = {
                "type": "function",
                "function": {"name": tool_choice.name},
            }

        return payload

    def _raise_for_error(self, data: dict[str, Any]) -> None:
        """Raise for an ``error`` object delivered inside a 200 body or stream chunk."""
        error = data.get("error")
        if not error:
            return
        if not isinstance(error, dict):
            raise ProviderError(self.name, str(error))
        code = error.get("code")
        raise ProviderError(
            self.name,
            error.get("message") or "unknown error",
            status_code=code if isinstance(code, int) else None,
        )

    def _parse_response(self, data: dict[str, Any], options: CompletionOptions) -> CompletionResult:
        self._raise_for_error(data)
        choices = data.get("choices", [])
        choice = choices[0] if choices else {}
        message = choice.get("message") or {}
        text = message.get("content") or ""

        tool_calls: list[ToolCall] = []
        for raw_call in message.get("tool_calls") or []:
            function = raw_call.get("function") or {}
            raw_args = function.get("arguments") or ""
            try:
                arguments = json.loads(raw_args) if raw_args.strip() else {}
            except json.JSONDecodeError as exc:
                raise ToolArgumentsError(self.name, function.get("name", ""), raw_args) from exc
            tool_calls.append(ToolCall(id=raw_call["id"], name=function.get("name", ""), arguments=arguments))

        usage = data.get("usage") or {}
        prompt_tokens = usage.get("prompt_tokens", 0)
        completion_tokens = usage.get("completion_tokens", 0)
        finish_reason = _FINISH_REASONS.get(choice.get("finish_reason") or "", "stop")
        if tool_calls:
            finish_reason = "tool_calls"

        return CompletionResult(
            content=text,
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
        # Tool calls arrive interleaved by index; only one is open at a time.
        open_index: int | None = None
        async for event in payloads:
            # OpenRouter reports upstream failures mid-stream this way
            self._raise_for_error(event)
            usage = event.get("usage")
            if usage:
                yield StreamEvent(
                    type="usage",
                    prompt_tokens=usage.get("prompt_tokens"),
                    completion_tokens=usage.get("completion_tokens"),
                    raw=event,
                )

            choices = event.get("choices") or []
            if not choices:
                continue
            choice = choices[0]
            delta = choice.get("delta") or {}

            content = delta.get("content")
            if isinstance(content, str) and content:
                yield StreamEvent(type="text_delta", text=content, raw=event)

            for call in delta.get("tool_calls") or []:
                index = call.get("index", 0)
                function = call.get("function") or {}
                if index != open_index:
                    if open_index is not None:
                        yield StreamEvent(type="block_stop")
                    open_index = index
                    yield StreamEvent(
                        type="tool_call_start",
                        tool_call_id=call.get("id"),
                        tool_name=function.get("name"),
                        raw=event,
                    )
                if function.get("arguments"):
                    yield StreamEvent(type="tool_call_delta", text=function["arguments"], raw=event)

            finish_reason = choice.get("finish_reason")
            if finish_reason:
                if open_index is not None:
                    yield StreamEvent(type="block_stop")
                    open_index = None
                yield StreamEvent(type="finish", finish_reason=_FINISH_REASONS.get(finish_reason, "stop"))
