"""Gateway configuration and the inbound request shape."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ai_gateway.types import CompletionOptions, Message, ToolChoice, ToolDef


class ProviderConfig(BaseModel):
    """Decrypted per-vendor credentials and client settings."""

    model_config = ConfigDict(populate_by_name=True)

    api_key: str = Field(alias="apiKey")
    base_url: str | None = Field(default=None, alias="baseURL")
    max_retries: int = Field(default=2, ge=0, alias="maxRetries")
    timeout_ms: int = Field(default=60_000, gt=0, alias="timeoutMs")

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000


class FailoverConfig(BaseModel):
    """Explicit provider order plus per-provider substitute models."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    providers: list[str]
    # used when a provider's catalog does not know the requested model
    fallback_models: dict[str, str] = Field(default_factory=dict)


class GatewayRequest(BaseModel):
    """JSON body handed over by the HTTP route."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    messages: list[Message]
    model: str
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stop_sequences: list[str] | None = None
    tools: list[ToolDef] | None = None
    tool_choice: ToolChoice | None = None
    provider: str | None = None
    purpose: str | None = None
    metadata: dict[str, Any] | None = None

    def to_options(self, user_id: str | None = None) -> tuple[CompletionOptions, str | None]:
        """Split the body into completion options and the preferred provider."""
        options = CompletionOptions(
            messages=self.messages,
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            top_p=self.top_p,
            stop_sequences=self.stop_sequences,
            tools=self.tools,
            tool_choice=self.tool_choice,
            user_id=user_id,
            purpose=self.purpose,
            metadata=self.metadata,
        )
        return options, self.provider
