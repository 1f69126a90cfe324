"""Shared error classification for LLM, embedding and database failures."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import httpx
import openai
from google.genai import errors as genai_errors

from coursegen.utils.db_retry import classify_db_failure

_TRANSIENT_HINTS: tuple[str, ...] = (
  "rate limit",
  "too many requests",
  "429",
  "resource exhausted",
  "quota exceeded",
  "timeout",
  "timed out",
  "connection reset",
  "connection refused",
  "service unavailable",
  "bad gateway",
  "gateway timeout",
  "temporarily unavailable",
  "overloaded",
)

_PROVIDER_HINTS: tuple[str, ...] = (
  "unsupported model",
  "model not found",
  "no such model",
  "model is not available",
  "api key",
  "unauthorized",
  "forbidden",
  "openrouter",
  "gemini",
) + _TRANSIENT_HINTS

_OUTPUT_HINTS: tuple[str, ...] = (
  "invalid json",
  "failed to parse",
  "parse json",
  "expecting value",
  "schema",
  "validation",
)

_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
  asyncio.TimeoutError,
  TimeoutError,
  ConnectionError,
  httpx.TimeoutException,
  httpx.TransportError,
  openai.APIConnectionError,
  openai.APITimeoutError,
  openai.RateLimitError,
  openai.InternalServerError,
  genai_errors.ServerError,
)


def _match_hint(message: str, hints: Iterable[str]) -> bool:
  """Return True when any hint appears in the message."""
  return any(hint in message for hint in hints)


def is_provider_error(exc: BaseException) -> bool:
  """Return True when an exception indicates a provider or model availability failure."""
  if isinstance(exc, openai.APIError | genai_errors.APIError):
    return True
  return _match_hint(str(exc).lower(), _PROVIDER_HINTS)


def is_output_error(exc: BaseException) -> bool:
  """Return True when an exception indicates invalid output formatting."""
  return _match_hint(str(exc).lower(), _OUTPUT_HINTS)


def is_transient_error(exc: BaseException) -> bool:
  """Return True for network/timeout/rate-limit failures worth retrying with backoff."""
  if isinstance(exc, _TRANSIENT_TYPES):
    return True
  if isinstance(exc, genai_errors.ClientError) and getattr(exc, "code", None) == 429:
    return True
  if isinstance(exc, Exception) and classify_db_failure(exc).retryable:
    return True
  return _match_hint(str(exc).lower(), _TRANSIENT_HINTS)
