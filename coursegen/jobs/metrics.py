"""Process-local job metrics: durations, outcomes and repair-layer usage per queue."""

from __future__ import annotations

import math
from collections import Counter, deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
  from coursegen.jobs.worker import JobRunResult

# Durations kept per queue for percentiles; older samples fall off.
_MAX_SAMPLES = 1000

# Layers that replace the model which produced the output.
FALLBACK_LAYERS = frozenset({"model_escalation", "emergency_fallback"})


def percentile(sorted_values: Sequence[float], p: float) -> float:
  """Nearest-rank percentile of already sorted values; 0 when there are none."""
  if not sorted_values:
    return 0.0
  index = max(0, min(len(sorted_values) - 1, math.ceil(p * len(sorted_values)) - 1))
  return sorted_values[index]


@dataclass
class QueueMetrics:
  outcomes: Counter[str] = field(default_factory=Counter)
  durations: deque[float] = field(default_factory=lambda: deque(maxlen=_MAX_SAMPLES))
  repair_layers: Counter[str] = field(default_factory=Counter)
  generations: int = 0
  fallbacks: int = 0

  def snapshot(self) -> dict[str, Any]:
    ordered = sorted(self.durations)
    return {
      "processed": sum(self.outcomes.values()),
      "outcomes": dict(self.outcomes),
      "duration_seconds": {
        "samples": len(ordered),
        "p50": round(percentile(ordered, 0.50), 6),
        "p95": round(percentile(ordered, 0.95), 6),
        "max": round(ordered[-1], 6) if ordered else 0.0,
      },
      "repair_layers": dict(self.repair_layers),
      "generations": self.generations,
      "model_fallbacks": self.fallbacks,
      "fallback_rate": round(self.fallbacks / self.generations, 6) if self.generations else 0.0,
    }


@dataclass
class WorkerMetrics:
  """Aggregates JobRunResults so operators can see how long stages take and how often repair kicks in."""

  queues: dict[str, QueueMetrics] = field(default_factory=dict)

  def record(self, result: JobRunResult) -> None:
    queue = self.queues.setdefault(result.queue_name, QueueMetrics())
    queue.outcomes[result.outcome] += 1
    if result.duration_seconds is not None:
      queue.durations.append(result.duration_seconds)
    queue.generations += result.generations
    for layer in result.repair_layers:
      queue.repair_layers[layer] += 1
      if layer in FALLBACK_LAYERS:
        queue.fallbacks += 1

  def snapshot(self) -> dict[str, Any]:
    outcomes: Counter[str] = Counter()
    for queue in self.queues.values():
      outcomes.update(queue.outcomes)
    return {
      "processed": sum(outcomes.values()),
      "outcomes": dict(outcomes),
      "queues": {name: queue.snapshot() for name, queue in sorted(self.queues.items())},
    }


# Shared with the API process when the worker runs embedded.
WORKER_METRICS = WorkerMetrics()
