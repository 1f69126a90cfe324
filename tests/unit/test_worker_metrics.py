"""Unit tests for the process-local job metrics."""

from __future__ import annotations

import pytest

from coursegen.jobs.metrics import WorkerMetrics, percentile
from coursegen.jobs.worker import JobRunResult


def _result(queue: str, outcome: str, duration: float, *, layers: tuple[str, ...] = (), generations: int = 1) -> JobRunResult:
  return JobRunResult("outbox-1", "course-1", queue, outcome=outcome, duration_seconds=duration, repair_layers=layers, generations=generations)


def test_percentile_uses_nearest_rank() -> None:
  values = [float(value) for value in range(1, 21)]
  assert percentile(values, 0.50) == 10.0
  assert percentile(values, 0.95) == 19.0
  assert percentile([], 0.95) == 0.0


def test_metrics_aggregate_per_queue() -> None:
  metrics = WorkerMetrics()
  metrics.record(_result("summarization", "succeeded", 1.0))
  metrics.record(_result("summarization", "succeeded", 3.0, layers=("auto_repair",)))
  metrics.record(_result("summarization", "retry_scheduled", 2.0, generations=0))
  metrics.record(_result("lesson-content", "succeeded", 9.0, layers=("model_escalation", "auto_repair"), generations=2))

  snapshot = metrics.snapshot()
  assert snapshot["processed"] == 4
  assert snapshot["outcomes"] == {"succeeded": 3, "retry_scheduled": 1}

  summarization = snapshot["queues"]["summarization"]
  assert summarization["duration_seconds"] == {"samples": 3, "p50": 2.0, "p95": 3.0, "max": 3.0}
  assert summarization["repair_layers"] == {"auto_repair": 1}
  assert summarization["fallback_rate"] == 0.0

  lessons = snapshot["queues"]["lesson-content"]
  assert lessons["model_fallbacks"] == 1
  assert lessons["fallback_rate"] == pytest.approx(0.5)


def test_empty_metrics_snapshot() -> None:
  assert WorkerMetrics().snapshot() == {"processed": 0, "outcomes": {}, "queues": {}}
