"""Embedding clients used by the quality gate."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Sequence
from typing import Protocol

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


class EmbeddingClient(Protocol):
  """Batch text embedding contract; vectors are returned in input order."""

  async def embed(self, texts: Sequence[str]) -> list[list[float]]:
    """Embed every text in one request."""


class OpenAIEmbeddingClient:
  """OpenAI embeddings adapter bounded by a per-call timeout."""

  def __init__(self, *, model: str = "text-embedding-3-small", api_key: str | None = None, timeout_seconds: float = 120.0) -> None:
    api_key = api_key or os.getenv("OPENAI_API_KEY")
    if not api_key:
      raise ValueError("OPENAI_API_KEY environment variable is required")
    self._model = model
    self._timeout = timeout_seconds
    self._client = AsyncOpenAI(api_key=api_key, max_retries=0, timeout=timeout_seconds)

  async def embed(self, texts: Sequence[str]) -> list[list[float]]:
    if not texts:
      return []
    # The API rejects empty strings; a single space embeds to a neutral vector.
    inputs = [text if text.strip() else " " for text in texts]
    response = await asyncio.wait_for(self._client.embeddings.create(model=self._model, input=inputs), timeout=self._timeout)
    ordered = sorted(response.data, key=lambda item: item.index)
    logger.debug("Embedded %d texts with %s", len(inputs), self._model)
    return [list(item.embedding) for item in ordered]
