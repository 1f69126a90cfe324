"""Gemini provider implementation using the google-genai SDK."""

from __future__ import annotations

import logging
import os

from google import genai

from coursegen.ai.backoff import retry_with_backoff
from coursegen.ai.providers.base import AIModel, ModelResponse, Provider, SimpleModelResponse


class GeminiModel(AIModel):
  """Gemini model client; used as the high-reliability emergency model by default."""

  provider = "gemini"

  def __init__(self, name: str, api_key: str | None = None, *, timeout_seconds: float = 120.0) -> None:
    self.name: str = name
    self._timeout = timeout_seconds

    api_key = api_key or os.getenv("GEMINI_API_KEY")
    if not api_key:
      raise ValueError("GEMINI_API_KEY environment variable is required")

    self._client = genai.Client(api_key=api_key)

  async def generate(self, prompt: str) -> ModelResponse:
    """Generate a text response from Gemini."""
    logger = logging.getLogger("coursegen.ai.providers.gemini")

    # Use the async client to avoid blocking the asyncio event loop.
    response = await retry_with_backoff(self._client.aio.models.generate_content, model=self.name, contents=prompt, timeout=self._timeout)

    logger.debug("Gemini %s response:\n%s", self.name, response.text)
    usage = None
    if response.usage_metadata:
      usage = {"prompt_tokens": response.usage_metadata.prompt_token_count or 0, "completion_tokens": response.usage_metadata.candidates_token_count or 0, "total_tokens": response.usage_metadata.total_token_count or 0}
    return SimpleModelResponse(content=response.text or "", usage=usage)


class GeminiProvider(Provider):
  """Gemini provider."""

  def __init__(self, api_key: str | None = None, *, timeout_seconds: float = 120.0) -> None:
    self.name: str = "gemini"
    self._api_key = api_key
    self._timeout = timeout_seconds

  def get_model(self, model: str) -> AIModel:
    return GeminiModel(model, api_key=self._api_key, timeout_seconds=self._timeout)
