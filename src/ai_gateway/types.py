"""Vendor-neutral request/response models shared by every adapter."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

Role = Literal["system", "user", "assistant", "tool"]
FinishReason = Literal["stop", "length", "tool_calls", "error"]
ChunkType = Literal["content", "tool_call", "done", "error", "restart"]


class TextPart(BaseModel):
    """Plain text segment of a multi-part message."""

    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    """Image referenced by URL or carried inline as base64."""

    type: Literal["image"] = "image"
    url: str | None = None
    data: str | None = None
    mime_type: str | None = None

    @model_validator(mode="after")
    def _check_source(self) -> ImagePart:
        if (self.url is None) == (self.data is None):
            raise ValueError("image part needs exactly one of 'url' or 'data'")
        if self.data is not None and not self.mime_type:
            raise ValueError("inline image data requires 'mime_type'")
        return self


ContentPart = Annotated[TextPart | ImagePart, Field(discriminator="type")]


class ToolCall(BaseModel):
    """Function invocation requested by a model. ``id`` is the vendor's correlation key."""

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    """Single chat message."""

    role: Role
    content: str | list[ContentPart] = ""
    tool_call_id: str | None = None
    # tool name for vendors that key tool results by name instead of id
    name: str | None = None
    tool_calls: list[ToolCall] | None = None

    def text(self) -> str:
        """Return the textual content, dropping non-text parts."""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))


def split_system(messages: list[Message]) -> tuple[str | None, list[Message]]:
    """Hoist system messages out of the sequence into one side-channel prompt."""
    system_parts: list[str] = []
    rest: list[Message] = []
    for m in messages:
        if m.role == "system":
            system_parts.append(m.text())
        else:
            rest.append(m)
    return ("\n".join(system_parts) if system_parts else None, rest)


class ToolDef(BaseModel):
    """JSON-schema tool definition."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class NamedToolChoice(BaseModel):
    """Force the model to call one specific tool."""

    name: str


ToolChoice = Literal["auto", "required"] | NamedToolChoice


class CompletionOptions(BaseModel):
    """Normalized request shared by all providers."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    messages: list[Message]
    model: str
    temperature: float | None = None
    top_p: float | None = None
    stop_sequences: list[str] | None = None
    max_tokens: int | None = None
    tools: list[ToolDef] | None = None
    tool_choice: ToolChoice | None = None
    user_id: str | None = None
    # billing tags carried through to the usage record
    purpose: str | None = None
    metadata: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _unique_tool_names(self) -> CompletionOptions:
        if self.tools:
            names = [t.name for t in self.tools]
            if len(names) != len(set(names)):
                raise ValueError("tool names must be unique within a request")
        return self


class Usage(BaseModel):
    """Token counts with locally derived cost in USD."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0

    @classmethod
    def from_counts(cls, prompt_tokens: int, completion_tokens: int, cost: float = 0.0) -> Usage:
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            cost=cost,
        )


class CompletionResult(BaseModel):
    """Unified completion outcome."""

    content: str = ""
    tool_calls: list[ToolCall] | None = None
    usage: Usage = Field(default_factory=Usage)
    model: str
    provider: str
    finish_reason: FinishReason = "stop"
    error: str | None = None

    @model_validator(mode="after")
    def _check_error_shape(self) -> CompletionResult:
        if self.finish_reason == "error" and (not self.error or self.content):
            raise ValueError("error results need an error message and empty content")
        return self


class StreamChunk(BaseModel):
    """Incremental unit forwarded to stream callers."""

    type: ChunkType
    delta: str | None = None
    tool_call: ToolCall | None = None
    usage: Usage | None = None
    error: str | None = None
    # set on restart chunks: the provider the stream resumes on
    provider: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderStatus(BaseModel):
    """Availability derived from the most recent attempt against a provider."""

    provider: str
    available: bool
    last_checked: datetime = Field(default_factory=_utcnow)
    error: str | None = None
    latency_ms: float | None = None
    attempt: int = 0


class UsageRecord(BaseModel):
    """One accounting entry per successfully completed call."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    provider: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost: float
    purpose: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=_utcnow)
