"""OpenRouter provider implementation using the openai SDK."""

from __future__ import annotations

import logging
import os
from typing import Final

from openai import AsyncOpenAI

from coursegen.ai.backoff import retry_with_backoff
from coursegen.ai.providers.base import AIModel, ModelResponse, Provider, SimpleModelResponse

_OPENROUTER_BASE_URL: Final[str] = "https://openrouter.ai/api/v1"


class OpenRouterModel(AIModel):
  """OpenRouter chat-completions client."""

  provider = "openrouter"

  def __init__(self, name: str, api_key: str | None = None, base_url: str | None = None, *, timeout_seconds: float = 120.0) -> None:
    self.name: str = name
    self._timeout = timeout_seconds

    api_key = api_key or os.getenv("OPENROUTER_API_KEY")
    if not api_key:
      raise ValueError("OPENROUTER_API_KEY environment variable is required")

    # OpenRouter uses the OpenAI-compatible API; we add optional attribution headers.
    default_headers = {}
    referer = os.getenv("OPENROUTER_HTTP_REFERER")
    if referer:
      default_headers["HTTP-Referer"] = referer
    title = os.getenv("OPENROUTER_TITLE")
    if title:
      default_headers["X-Title"] = title

    # Retries are owned by retry_with_backoff and the worker, not the SDK.
    self._client = AsyncOpenAI(api_key=api_key, base_url=base_url or _OPENROUTER_BASE_URL, default_headers=default_headers or None, max_retries=0, timeout=timeout_seconds)

  async def generate(self, prompt: str) -> ModelResponse:
    """Generate a text response from OpenRouter."""
    logger = logging.getLogger("coursegen.ai.providers.openrouter")
    response = await retry_with_backoff(self._client.chat.completions.create, model=self.name, messages=[{"role": "user", "content": prompt}], timeout=self._timeout)

    content = response.choices[0].message.content or ""
    logger.debug("OpenRouter %s response:\n%s", self.name, content)
    usage = None
    if response.usage:
      usage = {"prompt_tokens": response.usage.prompt_tokens, "completion_tokens": response.usage.completion_tokens, "total_tokens": response.usage.total_tokens}

    return SimpleModelResponse(content=content, usage=usage)


class OpenRouterProvider(Provider):
  """OpenRouter provider."""

  def __init__(self, api_key: str | None = None, base_url: str | None = None, *, timeout_seconds: float = 120.0) -> None:
    self.name: str = "openrouter"
    self._api_key = api_key
    self._base_url = base_url
    self._timeout = timeout_seconds

  def get_model(self, model: str) -> AIModel:
    """Return an OpenRouter model client."""
    return OpenRouterModel(model, api_key=self._api_key, base_url=self._base_url, timeout_seconds=self._timeout)
