from __future__ import annotations

import random


def compute_backoff_seconds(attempt: int, *, base_seconds: float = 2.0, max_seconds: float = 300.0, jitter: bool = True) -> float:
  """Exponential backoff for the attempt that just failed (1-based), capped at max_seconds."""
  if attempt < 1:
    raise ValueError("attempt must be >= 1")
  delay = min(max_seconds, base_seconds * (2 ** (attempt - 1)))
  if jitter:
    delay += random.uniform(0, delay / 4)
  return round(min(max_seconds, delay), 3)
