"""Outbox consumer: claims one entry, runs its stage handler and advances the course state."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from coursegen.ai.repair import ALL_LAYERS, RepairCascade, RepairExhausted, RepairLayer
from coursegen.fsm.pipeline import CANCELLED, COMPLETED, COURSE_PIPELINE, FINALIZATION_QUEUE, FINALIZING, Initiator, Pipeline, StageDefinition
from coursegen.fsm.validator import InvalidTransition, is_terminal
from coursegen.jobs.backoff import compute_backoff_seconds
from coursegen.jobs.dispatch import StageHandlerRegistry
from coursegen.jobs.metrics import WORKER_METRICS, WorkerMetrics
from coursegen.jobs.models import ClaimedJob, JobSpec
from coursegen.quality.gate import QualityGate, QualityGateFailed
from coursegen.schema.guards import AuditLogViolation
from coursegen.services.model_routing import ModelRouter
from coursegen.stages.base import GenerationCancelled, ModelSource, PermanentStageError, StageContext
from coursegen.storage.generation_repo import CourseStateRecord, iso_timestamp
from coursegen.storage.postgres_generation_repo import DuplicatePendingJob, LeaseLostError, PostgresGenerationRepository

logger = logging.getLogger(__name__)

# Errors that retrying the same job cannot fix.
_PERMANENT_ERRORS: tuple[type[BaseException], ...] = (GenerationCancelled, InvalidTransition, PermanentStageError, QualityGateFailed, DuplicatePendingJob, AuditLogViolation, ValueError)


@dataclass(frozen=True)
class JobRunResult:
  """What happened to one claimed entry."""

  outbox_id: str
  entity_id: str
  queue_name: str
  outcome: str
  state: str | None = None
  error: str | None = None
  backoff_seconds: float | None = None
  duration_seconds: float | None = None
  # Repair layers that produced accepted outputs, one entry per repaired generation.
  repair_layers: tuple[str, ...] = ()
  generations: int = 0


class JobWorker:
  """Process claimed outbox entries one at a time."""

  def __init__(
    self,
    *,
    repo: PostgresGenerationRepository,
    registry: StageHandlerRegistry,
    cascade: RepairCascade,
    router: ModelRouter,
    models: ModelSource,
    gate: QualityGate | None = None,
    pipeline: Pipeline = COURSE_PIPELINE,
    worker_id: str | None = None,
    queues: Sequence[str] | None = None,
    lease_seconds: int = 600,
    backoff_base_seconds: float = 2.0,
    backoff_max_seconds: float = 300.0,
    enabled_layers: tuple[RepairLayer, ...] = ALL_LAYERS,
    max_retries: int = 2,
    pricing_table: dict[str, Any] | None = None,
    metrics: WorkerMetrics | None = None,
  ) -> None:
    self._repo = repo
    self._registry = registry
    self._cascade = cascade
    self._router = router
    self._models = models
    self._gate = gate
    self._pipeline = pipeline
    self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:12]}"
    self._queues = tuple(queues or pipeline.queue_names())
    self._lease_seconds = lease_seconds
    self._backoff_base = backoff_base_seconds
    self._backoff_max = backoff_max_seconds
    self._enabled_layers = enabled_layers
    self._max_retries = max_retries
    self._pricing_table = pricing_table
    self._metrics = metrics if metrics is not None else WORKER_METRICS

  @property
  def repo(self) -> PostgresGenerationRepository:
    return self._repo

  async def run_once(self, queues: Sequence[str] | None = None) -> JobRunResult | None:
    """Claim and process one due entry; returns None when nothing is due."""
    job = await self._repo.claim_next(queues=tuple(queues or self._queues), worker_id=self.worker_id, lease_seconds=self._lease_seconds)
    if job is None:
      return None
    logger.info("Claimed outbox entry %s (%s) for course %s, attempt %d/%d", job.outbox_id, job.queue_name, job.entity_id, job.attempts, job.max_attempts)
    return await self.process(job)

  async def process(self, job: ClaimedJob) -> JobRunResult:
    started = time.monotonic()
    result = await self._process(job)
    result = replace(result, duration_seconds=round(time.monotonic() - started, 6))
    self._metrics.record(result)
    return result

  async def _process(self, job: ClaimedJob) -> JobRunResult:
    stage = self._pipeline.stage_for_queue(job.queue_name)
    try:
      record = await self._begin(job, stage)
      if record is None:
        return JobRunResult(job.outbox_id, job.entity_id, job.queue_name, outcome="cancelled")
      handler = self._registry.resolve(job.queue_name)
      ctx = self._build_context(job, record, stage)
      async with self._lease_heartbeat(job):
        output = await handler.run(ctx)
      return await self._complete(job, stage, ctx, output)
    except LeaseLostError as exc:
      # Another worker owns the entry now; it is responsible for the outcome.
      logger.warning("Lease lost for outbox entry %s: %s", job.outbox_id, exc)
      return JobRunResult(job.outbox_id, job.entity_id, job.queue_name, outcome="lease_lost", error=str(exc))
    except Exception as exc:  # noqa: BLE001
      return await self._handle_failure(job, stage, exc)

  async def _begin(self, job: ClaimedJob, stage: StageDefinition | None) -> CourseStateRecord | None:
    """Lock the course, drop jobs for ended courses and enter the stage's first in-progress state."""
    async with self._repo.session_factory() as session:
      async with session.begin():
        course = await self._repo.lock_course(session, job.entity_id)
        if course is None:
          raise PermanentStageError(f"Course {job.entity_id} does not exist")
        state = course.generation_status
        if is_terminal(state):
          logger.info("Course %s is %s; consuming %s entry %s as cancelled", job.entity_id, state, job.queue_name, job.outbox_id)
          await self._repo.consume_entry(session, job, outcome="cancelled", error=f"course is {state}")
          return None

        if stage is None:
          if state != FINALIZING:
            raise InvalidTransition(state, COMPLETED, f"Finalization job found course {job.entity_id} in {state}")
        elif state == stage.init_state:
          await self._repo.transition(session, course, stage.in_progress_states[0], initiated_by=Initiator.WORKER, event_data={"outbox_id": job.outbox_id, "attempt": job.attempts})
        elif state not in stage.in_progress_states:
          # In-progress means a retry of this same stage; anything else is out of order.
          raise InvalidTransition(state, stage.in_progress_states[0], f"Job for {job.queue_name} found course {job.entity_id} in {state}")
        return self._repo.course_to_record(course)

  def _build_context(self, job: ClaimedJob, record: CourseStateRecord, stage: StageDefinition | None) -> StageContext:
    return StageContext(
      job=job,
      course=record,
      stage=stage,
      repo=self._repo,
      cascade=self._cascade,
      gate=self._gate,
      router=self._router,
      models=self._models,
      enabled_layers=self._enabled_layers,
      max_retries=self._max_retries,
    )

  async def _complete(self, job: ClaimedJob, stage: StageDefinition | None, ctx: StageContext, output: dict[str, Any]) -> JobRunResult:
    """Consume the entry, store the output, write _complete and enqueue the next job in one transaction."""
    entry = {"output": output, **ctx.result_metadata(self._pricing_table), "outbox_id": job.outbox_id, "attempts": job.attempts, "completed_at": iso_timestamp(datetime.now(UTC))}
    event_data = {"outbox_id": job.outbox_id, "queue_name": job.queue_name}
    async with self._repo.session_factory() as session:
      async with session.begin():
        course = await self._repo.lock_course(session, job.entity_id)
        if course is None:
          raise PermanentStageError(f"Course {job.entity_id} does not exist")

        if stage is None:
          course.stage_results = {**(course.stage_results or {}), "finalization": entry}
          await self._repo.transition(session, course, COMPLETED, initiated_by=Initiator.WORKER, event_data=event_data)
          await self._repo.consume_entry(session, job, outcome="succeeded")
        else:
          current = course.generation_status
          if current in stage.in_progress_states:
            for state in stage.in_progress_states[stage.in_progress_states.index(current) + 1 :]:
              await self._repo.transition(session, course, state, initiated_by=Initiator.WORKER, event_data=event_data)
          await self._repo.transition(session, course, stage.complete_state, initiated_by=Initiator.WORKER, event_data=event_data)
          course.stage_results = {**(course.stage_results or {}), stage.name: entry}
          await self._repo.consume_entry(session, job, outcome="succeeded")

          next_stage = self._pipeline.next_stage(stage)
          next_options = {key: job.job_options[key] for key in ("priority", "attempts") if key in job.job_options}
          next_data = {"course_id": job.entity_id, "metadata": job.job_data.get("metadata") or {}}
          if next_stage is not None:
            await self._repo.transition(session, course, next_stage.init_state, initiated_by=Initiator.WORKER, event_data=event_data)
            spec = JobSpec(queue_name=next_stage.queue_name, job_data=next_data, job_options=next_options)
          else:
            await self._repo.transition(session, course, FINALIZING, initiated_by=Initiator.WORKER, event_data=event_data)
            spec = JobSpec(queue_name=FINALIZATION_QUEUE, job_data=next_data, job_options=next_options)
          await self._repo.enqueue(session, course, [spec], initiated_by=Initiator.WORKER)
        final_state = course.generation_status

    logger.info("Outbox entry %s succeeded; course %s now %s", job.outbox_id, job.entity_id, final_state)
    layers = tuple(entry["layer_used"] for entry in ctx.repair_log if entry.get("layer_used"))
    return JobRunResult(job.outbox_id, job.entity_id, job.queue_name, outcome="succeeded", state=final_state, repair_layers=layers, generations=ctx.generations)

  @staticmethod
  def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, RepairExhausted):
      return exc.all_transient
    return not isinstance(exc, _PERMANENT_ERRORS)

  async def _handle_failure(self, job: ClaimedJob, stage: StageDefinition | None, exc: BaseException) -> JobRunResult:
    error = f"{type(exc).__name__}: {exc}"
    if self._is_retryable(exc) and not job.attempts_exhausted:
      backoff = compute_backoff_seconds(job.attempts, base_seconds=self._backoff_base, max_seconds=self._backoff_max)
      logger.warning("Outbox entry %s failed (attempt %d/%d); retrying in %.1fs: %s", job.outbox_id, job.attempts, job.max_attempts, backoff, error)
      try:
        await self._repo.release_for_retry(job=job, error=error, backoff_seconds=backoff)
      except LeaseLostError as lease_exc:
        logger.warning("Lease lost before retry of outbox entry %s: %s", job.outbox_id, lease_exc)
        return JobRunResult(job.outbox_id, job.entity_id, job.queue_name, outcome="lease_lost", error=str(lease_exc))
      return JobRunResult(job.outbox_id, job.entity_id, job.queue_name, outcome="retry_scheduled", error=error, backoff_seconds=backoff)
    try:
      return await self._finalize_failure(job, stage, exc, error)
    except LeaseLostError as lease_exc:
      # The entry was consumed elsewhere (lease reclaimed, or the course restarted); nothing here is ours to fail.
      logger.warning("Lease lost before failing outbox entry %s (%s): %s", job.outbox_id, error, lease_exc)
      return JobRunResult(job.outbox_id, job.entity_id, job.queue_name, outcome="lease_lost", error=str(lease_exc))

  async def _finalize_failure(self, job: ClaimedJob, stage: StageDefinition | None, exc: BaseException, error: str) -> JobRunResult:
    """Fail the course and consume the entry, or settle as cancelled when the course ended or moved on."""
    stage_name = stage.name if stage else job.queue_name
    async with self._repo.session_factory() as session:
      async with session.begin():
        course = await self._repo.lock_course(session, job.entity_id)
        if course is None or is_terminal(course.generation_status):
          state = course.generation_status if course else None
          outcome = "cancelled" if state in (None, CANCELLED) else "failed"
          if isinstance(exc, InvalidTransition):
            logger.warning("Stale write for course %s rejected (%s); course is %s", job.entity_id, exc, state)
          await self._repo.consume_entry(session, job, outcome=outcome, error=error)
          return JobRunResult(job.outbox_id, job.entity_id, job.queue_name, outcome=outcome, state=state, error=error)

        state = course.generation_status
        if not self._pipeline.queue_acts_on(job.queue_name, state):
          # A newer run owns the course; this job's failure must not touch it.
          logger.warning("Outbox entry %s (%s) is stale; course %s is %s: %s", job.outbox_id, stage_name, job.entity_id, state, error)
          await self._repo.consume_entry(session, job, outcome="cancelled", error=error)
          return JobRunResult(job.outbox_id, job.entity_id, job.queue_name, outcome="cancelled", state=state, error=error)

        base_data = {"outbox_id": job.outbox_id, "queue_name": job.queue_name, "stage": stage_name, "attempt": job.attempts, "max_attempts": job.max_attempts}
        if isinstance(exc, RepairExhausted):
          self._repo.append_event(session, entity_id=job.entity_id, event_type="repair_exhausted", initiated_by=Initiator.WORKER, event_data={**base_data, **exc.to_event_data()})
        elif isinstance(exc, QualityGateFailed):
          self._repo.append_event(session, entity_id=job.entity_id, event_type="quality_gate_failed", initiated_by=Initiator.WORKER, event_data={**base_data, "report": exc.report.to_dict()})
        await self._repo.fail_course(session, course, error_message=error, error_stage=stage_name, initiated_by=Initiator.WORKER, event_data={"outbox_id": job.outbox_id})
        await self._repo.consume_entry(session, job, outcome="failed", error=error)
        self._repo.append_event(session, entity_id=job.entity_id, event_type="job_failed", initiated_by=Initiator.WORKER, event_data={**base_data, "error": error, "error_type": type(exc).__name__})

    logger.error("Outbox entry %s failed permanently; course %s failed at %s: %s", job.outbox_id, job.entity_id, stage_name, error, exc_info=exc)
    return JobRunResult(job.outbox_id, job.entity_id, job.queue_name, outcome="failed", state="failed", error=error)

  @asynccontextmanager
  async def _lease_heartbeat(self, job: ClaimedJob) -> AsyncIterator[None]:
    """Keep extending the lease while a long handler runs."""
    interval = max(1.0, self._lease_seconds / 3)

    async def _beat() -> None:
      while True:
        await asyncio.sleep(interval)
        try:
          held = await self._repo.extend_lease(job=job, lease_seconds=self._lease_seconds)
        except Exception:  # noqa: BLE001
          logger.warning("Lease extension failed for outbox entry %s", job.outbox_id, exc_info=True)
          continue
        if not held:
          logger.warning("Outbox entry %s is no longer held by %s", job.outbox_id, job.claimed_by)
          return

    task = asyncio.create_task(_beat())
    try:
      yield
    finally:
      task.cancel()
      await asyncio.gather(task, return_exceptions=True)
