"""Job specification and claimed-job records shared by the initializer and the worker."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

JobOutcome = Literal["succeeded", "failed", "cancelled"]


@dataclass(frozen=True)
class JobSpec:
  """One unit of work to enqueue in the outbox."""

  queue_name: str
  job_data: dict[str, Any] = field(default_factory=dict)
  job_options: dict[str, Any] = field(default_factory=dict)

  @property
  def priority(self) -> int:
    return int(self.job_options.get("priority", 0))

  def max_attempts(self, default: int) -> int:
    """Resolve the retry budget from job options with a settings fallback."""
    attempts = int(self.job_options.get("attempts", default))
    if attempts <= 0:
      raise ValueError(f"job_options.attempts must be positive for queue {self.queue_name}")
    return attempts


@dataclass(frozen=True)
class ClaimedJob:
  """Outbox entry claimed by a worker under a lease."""

  outbox_id: str
  queue_name: str
  entity_id: str
  job_data: dict[str, Any]
  job_options: dict[str, Any]
  attempts: int
  max_attempts: int
  claimed_by: str
  lease_until: datetime
  created_at: datetime
  processed_at: datetime | None = None

  @property
  def attempts_exhausted(self) -> bool:
    return self.attempts >= self.max_attempts
