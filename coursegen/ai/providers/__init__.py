"""Provider implementations and the model-id factory."""

from __future__ import annotations

from coursegen.ai.providers.base import AIModel, ModelResponse, Provider, SimpleModelResponse
from coursegen.ai.providers.gemini import GeminiModel, GeminiProvider
from coursegen.ai.providers.openrouter import OpenRouterModel, OpenRouterProvider
from coursegen.config import Settings

_GEMINI_PREFIX = "gemini-"


class ModelFactory:
  """Resolve model identifiers to cached provider clients.

  Bare `gemini-*` ids go to the Gemini SDK; everything else (vendor/model ids) goes through OpenRouter.
  """

  def __init__(self, settings: Settings) -> None:
    self._gemini = GeminiProvider(api_key=settings.gemini_api_key, timeout_seconds=settings.llm_timeout_seconds)
    self._openrouter = OpenRouterProvider(api_key=settings.openrouter_api_key, timeout_seconds=settings.llm_timeout_seconds)
    self._cache: dict[str, AIModel] = {}

  def provider_for(self, model_id: str) -> Provider:
    if model_id.startswith(_GEMINI_PREFIX):
      return self._gemini
    return self._openrouter

  def get(self, model_id: str) -> AIModel:
    model = self._cache.get(model_id)
    if model is None:
      model = self.provider_for(model_id).get_model(model_id)
      self._cache[model_id] = model
    return model


__all__ = ["AIModel", "GeminiModel", "GeminiProvider", "ModelFactory", "ModelResponse", "OpenRouterModel", "OpenRouterProvider", "Provider", "SimpleModelResponse"]
