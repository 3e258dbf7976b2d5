"""Google Gemini provider implementation."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from uuid import uuid4

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

_DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"
_API_PREFIX = "/v1beta/models"

_FINISH_REASONS: dict[str, FinishReason] = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
}

_SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


class GoogleProvider(HTTPProvider):
    """Async wrapper for the Gemini generateContent API."""

    name = "google"
    models = AI_MODELS["google"]
    default_base_url = _DEFAULT_BASE_URL
    validation_model = "gemini-1.5-flash"
    _logger = logging.getLogger(__name__)

    def _build_headers(self, api_key: str) -> dict[str, str]:
        return {
            "x-goog-api-key": api_key,
            "Content-Type": "application/json",
        }

    def _request_path(self, options: CompletionOptions, *, stream: bool) -> str:
        if stream:
            return f"{_API_PREFIX}/{options.model}:streamGenerateContent?alt=sse"
        return f"{_API_PREFIX}/{options.model}:generateContent"

    def _build_payload(self, options: CompletionOptions, *, stream: bool) -> dict[str, Any]:
        system_text, msgs = split_system(options.messages)

        payload: dict[str, Any] = {
            "contents": self._serialize_contents(msgs),
            "safetySettings": [{"category": c, "threshold": "BLOCK_NONE"} for c in _SAFETY_CATEGORIES],
        }
        if system_text:
            payload["systemInstruction"] = {"parts": [{"text": system_text}]}

        generation: dict[str, Any] = {}
        if options.temperature is not None:
            generation["temperature"] = options.temperature
        if options.max_tokens is not None:
            generation["maxOutputTokens"] = options.max_tokens
        if options.top_p is not None:
            generation["topP"] = options.top_p
        if options.stop_sequences:
            generation["stopSequences"] = options.stop_sequences
        if generation:
            payload["generationConfig"] = generation

        if options.tools:
            payload.update(self._serialize_tools(options.tools, options.tool_choice))
        return payload

    @staticmethod
    def _serialize_contents(messages: list[Message]) -> list[dict[str, Any]]:
        # Gemini keys tool results by function name, not by call id.
        names_by_id: dict[str, str] = {}
        contents: list[dict[str, Any]] = []
        for m in messages:
            if m.role == "tool":
                name = m.name or names_by_id.get(m.tool_call_id or "", "unknown")
                contents.append(
                    {
                        "role": "user",
                        "parts": [{"functionResponse": {"name": name, "response": {"content": m.text()}}}],
                    }
                )
                continue

            parts: list[dict[str, Any]] = []
            if isinstance(m.content, str):
                if m.content:
                    parts.append({"text": m.content})
            else:
                for part in m.content:
                    if isinstance(part, ImagePart):
                        if part.data is not None:
                            parts.append({"inlineData": {"mimeType": part.mime_type, "data": part.data}})
                        else:
                            parts.append({"text": f"[Image: {part.url}]"})
                    else:
                        parts.append({"text": part.text})
            for tc in m.tool_calls or []:
                names_by_id[tc.id] = tc.name
                parts.append({"functionCall": {"name": tc.name, "args": tc.arguments}})

            contents.append({"role": "model" if m.role == "assistant" else "user", "parts": parts})
        return contents

    @staticmethod
    def _serialize_tools(tools: list[ToolDef], tool_choice: ToolChoice | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "tools": [
                {
                    "functionDeclarations": [
                        {"name": t.name, "description": t.description, "parameters": t.parameters} for t in tools
                    ]
                }
            ]
        }
        if tool_choice == "auto":
            payload["toolConfig"] = {"functionCallingConfig": {"mode": "AUTO"}}
        elif tool_choice == "required":
            payload["toolConfig"] = {"functionCallingConfig": {"mode": "ANY"}}
        elif tool_choice is not None:
            payload["toolConfig"] = {
                "functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": [tool_choice.name]}
            }
        return payload

    def _parse_response(self, data: dict[str, Any], options: CompletionOptions) -> CompletionResult:
        candidates = data.get("candidates") or []
        candidate = candidates[0] if candidates else {}
        parts = (candidate.get("content") or {}).get("parts") or []

        texts: list[str] = []
        tool_calls: list[ToolCall] = []
        for part in parts:
            if "text" in part:
                texts.append(part["text"])
            elif "functionCall" in part:
                call = part["functionCall"]
                tool_calls.append(ToolCall(id=str(uuid4()), name=call.get("name", ""), arguments=call.get("args") or {}))

        metadata = data.get("usageMetadata") or {}
        prompt_tokens = metadata.get("promptTokenCount", 0)
        completion_tokens = metadata.get("candidatesTokenCount", 0)
        finish_reason = _FINISH_REASONS.get(candidate.get("finishReason") or "", "stop")
        if tool_calls:
            finish_reason = "tool_calls"

        return CompletionResult(
            content="".join(texts),
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
            candidates = event.get("candidates") or []
            candidate = candidates[0] if candidates else {}
            for part in (candidate.get("content") or {}).get("parts") or []:
                if "text" in part:
                    yield StreamEvent(type="text_delta", text=part["text"], raw=event)
                elif "functionCall" in part:
                    # Gemini delivers whole calls, so open/feed/close in one go.
                    call = part["functionCall"]
                    yield StreamEvent(type="tool_call_start", tool_call_id=str(uuid4()), tool_name=call.get("name"))
                    yield StreamEvent(type="tool_call_delta", text=json.dumps(call.get("args") or {}))
                    yield StreamEvent(type="block_stop")

            metadata = event.get("usageMetadata")
            if metadata:
                yield StreamEvent(
                    type="usage",
                    prompt_tokens=metadata.get("promptTokenCount"),
                    completion_tokens=metadata.get("candidatesTokenCount"),
                    raw=event,
                )

            reason = candidate.get("finishReason")
            if reason:
                yield StreamEvent(type="finish", finish_reason=_FINISH_REASONS.get(reason, "stop"))
