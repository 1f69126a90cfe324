"""Long-running worker process: adaptive polling, parallel claim loops and periodic maintenance."""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coursegen.ai.providers import ModelFactory
from coursegen.ai.repair import RepairCascade, RepairLayer
from coursegen.config import Settings, get_settings
from coursegen.core.database import dispose_engine, require_session_factory
from coursegen.core.logging import initialize_logging
from coursegen.fsm.pipeline import COURSE_PIPELINE, FINALIZATION_QUEUE
from coursegen.jobs.dispatch import StageHandlerRegistry
from coursegen.jobs.worker import JobRunResult, JobWorker
from coursegen.quality.embeddings import OpenAIEmbeddingClient
from coursegen.quality.gate import QualityGate, QualityPolicy
from coursegen.services.maintenance import cleanup_expired_idempotency_keys, cleanup_processed_outbox, requeue_expired_leases
from coursegen.services.model_routing import ModelRouter
from coursegen.stages.handlers import AnalysisHandler, DocumentProcessingHandler, FinalizeHandler, InlineDocumentConverter, LessonContentHandler, StructureGenerationHandler, SummarizationHandler
from coursegen.storage.postgres_generation_repo import PostgresGenerationRepository

logger = logging.getLogger(__name__)


@dataclass
class WorkerHealth:
  """Process-local liveness and throughput counters."""

  started_at: float = field(default_factory=time.monotonic)
  last_activity: float | None = None
  last_job_at: datetime | None = None
  counts: dict[str, int] = field(default_factory=dict)
  loop_errors: int = 0
  running: bool = False

  def touch(self) -> None:
    self.last_activity = time.monotonic()

  def record(self, result: JobRunResult) -> None:
    self.touch()
    self.last_job_at = datetime.now(UTC)
    self.counts[result.outcome] = self.counts.get(result.outcome, 0) + 1

  def record_error(self) -> None:
    self.touch()
    self.loop_errors += 1

  def snapshot(self, window_seconds: int) -> dict[str, Any]:
    idle_for = None if self.last_activity is None else round(time.monotonic() - self.last_activity, 3)
    return {
      "alive": self.running and idle_for is not None and idle_for <= window_seconds,
      "running": self.running,
      "seconds_since_activity": idle_for,
      "last_job_at": self.last_job_at.isoformat() if self.last_job_at else None,
      "processed": sum(self.counts.values()),
      "succeeded": self.counts.get("succeeded", 0),
      "failed": self.counts.get("failed", 0),
      "retried": self.counts.get("retry_scheduled", 0),
      "cancelled": self.counts.get("cancelled", 0),
      "loop_errors": self.loop_errors,
      "uptime_seconds": round(time.monotonic() - self.started_at, 3),
    }


# Shared with the API process when the worker runs embedded.
WORKER_HEALTH = WorkerHealth()


class WorkerRunner:
  """Run `concurrency` claim loops over one JobWorker until shutdown is requested."""

  def __init__(
    self,
    worker: JobWorker,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    concurrency: int = 10,
    poll_min_seconds: float = 1.0,
    poll_max_seconds: float = 30.0,
    poll_multiplier: float = 1.5,
    error_sleep_seconds: float = 5.0,
    maintenance_interval_seconds: float = 300.0,
    outbox_retention_days: int = 30,
    health: WorkerHealth | None = None,
  ) -> None:
    self._worker = worker
    self._session_factory = session_factory
    self._concurrency = concurrency
    self._poll_min = poll_min_seconds
    self._poll_max = poll_max_seconds
    self._poll_multiplier = poll_multiplier
    self._error_sleep = error_sleep_seconds
    self._maintenance_interval = maintenance_interval_seconds
    self._retention_days = outbox_retention_days
    self.health = health or WORKER_HEALTH
    self._shutdown = asyncio.Event()

  def request_shutdown(self) -> None:
    if not self._shutdown.is_set():
      logger.info("Shutdown requested for %s; finishing in-flight jobs", self._worker.worker_id)
    self._shutdown.set()

  def install_signal_handlers(self) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
      loop.add_signal_handler(sig, self.request_shutdown)

  async def run_forever(self) -> None:
    logger.info("Worker %s starting with %d claim loops", self._worker.worker_id, self._concurrency)
    self.health.running = True
    self.health.touch()
    maintenance = asyncio.create_task(self._maintenance_loop())
    try:
      await asyncio.gather(*(self._claim_loop(index) for index in range(self._concurrency)))
    finally:
      maintenance.cancel()
      await asyncio.gather(maintenance, return_exceptions=True)
      self.health.running = False
      logger.info("Worker %s stopped", self._worker.worker_id)

  async def _sleep(self, seconds: float) -> None:
    """Sleep unless shutdown arrives first."""
    try:
      await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
    except TimeoutError:
      pass

  def next_interval(self, current: float, *, found_work: bool) -> float:
    """Reset to the minimum after work; otherwise back off multiplicatively up to the maximum."""
    if found_work:
      return self._poll_min
    return min(self._poll_max, current * self._poll_multiplier)

  async def _claim_loop(self, index: int) -> None:
    interval = self._poll_min
    while not self._shutdown.is_set():
      try:
        result = await self._worker.run_once()
      except Exception:  # noqa: BLE001
        # The claimed entry keeps its lease until expiry, then any loop reclaims it.
        logger.error("Worker loop %d iteration failed", index, exc_info=True)
        self.health.record_error()
        await self._sleep(self._error_sleep)
        continue

      if result is None:
        self.health.touch()
        await self._sleep(interval)
        interval = self.next_interval(interval, found_work=False)
        continue
      self.health.record(result)
      interval = self.next_interval(interval, found_work=True)

  async def _maintenance_loop(self) -> None:
    while not self._shutdown.is_set():
      try:
        async with self._session_factory() as session:
          await requeue_expired_leases(session, repo=self._worker.repo)
        async with self._session_factory() as session:
          await cleanup_expired_idempotency_keys(session)
        async with self._session_factory() as session:
          await cleanup_processed_outbox(session, retention_days=self._retention_days)
      except Exception:  # noqa: BLE001
        logger.warning("Maintenance pass failed", exc_info=True)
      await self._sleep(self._maintenance_interval)


def build_worker(settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> JobWorker:
  """Wire the production worker from settings."""
  repo = PostgresGenerationRepository(session_factory, default_max_attempts=settings.worker_max_attempts)
  stage_names = tuple(stage.name for stage in COURSE_PIPELINE.stages)
  registry = StageHandlerRegistry(
    {
      "document-processing": DocumentProcessingHandler(InlineDocumentConverter()),
      "summarization": SummarizationHandler(),
      "structure-analysis": AnalysisHandler(),
      "structure-generation": StructureGenerationHandler(),
      "lesson-content": LessonContentHandler(),
      FINALIZATION_QUEUE: FinalizeHandler(stage_names),
    }
  )
  gate = None
  if settings.openai_api_key:
    embeddings = OpenAIEmbeddingClient(model=settings.embedding_model, api_key=settings.openai_api_key, timeout_seconds=settings.llm_timeout_seconds)
    gate = QualityGate(embeddings, QualityPolicy.from_settings(settings))
  else:
    logger.warning("OPENAI_API_KEY is not set; the quality gate is disabled for this worker")
  return JobWorker(
    repo=repo,
    registry=registry,
    cascade=RepairCascade(),
    router=ModelRouter.from_settings(settings),
    models=ModelFactory(settings),
    gate=gate,
    queues=settings.worker_queues,
    lease_seconds=settings.worker_lease_seconds,
    backoff_base_seconds=settings.worker_backoff_base_seconds,
    backoff_max_seconds=settings.worker_backoff_max_seconds,
    enabled_layers=tuple(RepairLayer(layer) for layer in settings.repair_enabled_layers),
    max_retries=settings.repair_max_retries,
  )


def build_runner(settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> WorkerRunner:
  return WorkerRunner(
    build_worker(settings, session_factory),
    session_factory=session_factory,
    concurrency=settings.worker_concurrency,
    poll_min_seconds=settings.worker_poll_min_seconds,
    poll_max_seconds=settings.worker_poll_max_seconds,
    poll_multiplier=settings.worker_poll_multiplier,
    error_sleep_seconds=settings.worker_error_sleep_seconds,
    maintenance_interval_seconds=settings.maintenance_interval_seconds,
    outbox_retention_days=settings.outbox_retention_days,
  )


async def _run() -> None:
  settings = get_settings()
  initialize_logging(settings, process_name="worker")
  runner = build_runner(settings, require_session_factory())
  runner.install_signal_handlers()
  try:
    await runner.run_forever()
  finally:
    await dispose_engine()


def main() -> None:
  asyncio.run(_run())


if __name__ == "__main__":
  main()
