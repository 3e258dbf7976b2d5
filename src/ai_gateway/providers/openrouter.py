"""OpenRouter provider: OpenAI wire format behind a different base URL."""

from __future__ import annotations

import logging
from typing import Any

from ai_gateway.pricing import AI_MODELS
from ai_gateway.providers.openai import OpenAIProvider

_DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
_DEFAULT_REFERER = "http://localhost:3000"
_DEFAULT_TITLE = "Law Transcribed"


class OpenRouterProvider(OpenAIProvider):
    """Routes OpenAI-style chat completions to models from many vendors."""

    name = "openrouter"
    models = AI_MODELS["openrouter"]
    default_base_url = _DEFAULT_BASE_URL
    validation_model = "openai/gpt-4o-mini"
    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        *,
        referer: str = _DEFAULT_REFERER,
        title: str = _DEFAULT_TITLE,
        **kwargs: Any,
    ) -> None:
        self._referer = referer
        self._title = title
        super().__init__(**kwargs)

    def _build_headers(self, api_key: str) -> dict[str, str]:
        headers = super()._build_headers(api_key)
        # attribution headers OpenRouter uses for app rankings
        headers["HTTP-Referer"] = self._referer
        headers["X-Title"] = self._title
        return headers
