"""Per-call timeout and rate-limit backoff for outbound model calls."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

_RATE_LIMIT_MARKERS = ("429", "too many requests", "resource exhausted", "quota exceeded", "rate limit")


def _is_rate_limited(exc: BaseException) -> bool:
  message = str(exc).lower()
  return getattr(exc, "status_code", None) == 429 or getattr(exc, "code", None) == 429 or any(marker in message for marker in _RATE_LIMIT_MARKERS)


async def retry_with_backoff(func: Callable[..., Awaitable[T]], *args: object, delays: Sequence[float] = (2.0, 8.0, 20.0), timeout: float | None = None, **kwargs: object) -> T:
  """
  Execute a model call, retrying only 429/quota errors with jittered delays.

  Every attempt is bounded by `timeout`; a timeout propagates as asyncio.TimeoutError so the
  worker can classify it as transient.
  """
  for attempt, delay in enumerate(delays, start=1):
    try:
      return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
    except Exception as exc:
      if not _is_rate_limited(exc):
        raise
      sleep_for = delay + random.uniform(0, delay / 4)
      logger.warning("Rate limited (attempt %d/%d): %s. Retrying in %.1fs", attempt, len(delays), exc, sleep_for)
      await asyncio.sleep(sleep_for)

  # Final attempt
  return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
