"""Integration tests for the outbox worker: stage advancement, retries, failures and cancellation."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import anyio
import pytest
from sqlalchemy import select

from coursegen.ai.repair import RepairAttempt, RepairCascade, RepairExhausted, RepairLayer
from coursegen.fsm.pipeline import CANCELLED, COMPLETED, COURSE_PIPELINE, FAILED, FINALIZATION_QUEUE, FINALIZING, Initiator
from coursegen.fsm.validator import InvalidTransition
from coursegen.jobs.dispatch import StageHandlerRegistry
from coursegen.jobs.models import JobSpec
from coursegen.jobs.worker import JobWorker
from coursegen.schema.courses import Course
from coursegen.schema.guards import AuditLogViolation
from coursegen.schema.outbox import FsmEvent
from coursegen.services.model_routing import ModelRouter
from coursegen.stages.base import PermanentStageError, StageContext
from coursegen.stages.handlers import FinalizeHandler
from coursegen.storage.postgres_generation_repo import LeaseLostError
from tests.fakes import FakeModelSource

STAGE_NAMES = tuple(stage.name for stage in COURSE_PIPELINE.stages)


class RecordingHandler:
  """Stage handler double: runs an optional side effect and returns a small output."""

  def __init__(self, name: str, effect: Callable[[StageContext], Awaitable[None]] | None = None) -> None:
    self.name = name
    self.effect = effect
    self.calls = 0

  async def run(self, ctx: StageContext) -> dict[str, Any]:
    self.calls += 1
    if self.effect is not None:
      await self.effect(ctx)
    return {"stage": self.name, "call": self.calls}


def _handlers(**overrides: RecordingHandler) -> dict[str, Any]:
  handlers: dict[str, Any] = {stage.queue_name: RecordingHandler(stage.name) for stage in COURSE_PIPELINE.stages}
  handlers.update(overrides)
  handlers[FINALIZATION_QUEUE] = FinalizeHandler(STAGE_NAMES)
  return handlers


def _worker(repo, handlers: dict[str, Any]) -> JobWorker:
  return JobWorker(
    repo=repo,
    registry=StageHandlerRegistry(handlers),
    cascade=RepairCascade(),
    router=ModelRouter(),
    models=FakeModelSource(),
    worker_id="worker-test",
    backoff_base_seconds=0.01,
    backoff_max_seconds=0.01,
  )


async def _drain(worker: JobWorker, limit: int = 20) -> list:
  results = []
  for _ in range(limit):
    result = await worker.run_once()
    if result is None:
      break
    results.append(result)
  return results


def _fail_times(times: int, exc_factory: Callable[[], BaseException]) -> Callable[[StageContext], Awaitable[None]]:
  remaining = {"count": times}

  async def _effect(_ctx: StageContext) -> None:
    if remaining["count"] > 0:
      remaining["count"] -= 1
      raise exc_factory()

  return _effect


@pytest.mark.anyio
async def test_worker_advances_course_through_every_stage(start_course, repo) -> None:
  """Each success writes _complete, the next _init and the next job together; finalization completes."""
  await start_course("course-1")
  results = await _drain(_worker(repo, _handlers()))

  assert [result.queue_name for result in results] == [*COURSE_PIPELINE.queue_names()]
  assert all(result.outcome == "succeeded" for result in results)
  record = await repo.get_course_state("course-1")
  assert record.state == COMPLETED
  assert set(record.stage_results) == {*STAGE_NAMES, "finalization"}
  assert record.stage_results["summarization"]["output"] == {"stage": "summarization", "call": 1}
  assert record.stage_results["finalization"]["output"]["estimated_cost"] == 0.0

  expected: list[tuple[str | None, str]] = [(None, "stage_2_init")]
  for stage in COURSE_PIPELINE.stages:
    following = COURSE_PIPELINE.next_stage(stage)
    expected += [(stage.init_state, stage.in_progress_states[0]), (stage.in_progress_states[0], stage.complete_state), (stage.complete_state, following.init_state if following else FINALIZING)]
  expected.append((FINALIZING, COMPLETED))
  transitions = [(event.old_state, event.new_state) for event in await repo.list_events("course-1", event_type="state_transition")]
  assert transitions == expected
  assert await repo.list_outbox("course-1", pending_only=True) == []


@pytest.mark.anyio
async def test_next_job_carries_priority_forward(start_course, repo) -> None:
  await start_course("course-1", priority=7)
  await _worker(repo, _handlers()).run_once()
  pending = await repo.list_outbox("course-1", pending_only=True)
  assert [entry.queue_name for entry in pending] == ["summarization"]
  assert pending[0].job_options == {"priority": 7}
  assert pending[0].job_data["course_id"] == "course-1"


@pytest.mark.anyio
async def test_higher_priority_jobs_are_claimed_first(start_course, repo) -> None:
  await start_course("course-low", priority=0)
  await start_course("course-high", priority=10)
  result = await _worker(repo, _handlers()).run_once()
  assert result.entity_id == "course-high"


@pytest.mark.anyio
async def test_transient_failure_is_retried_with_backoff(start_course, repo) -> None:
  await start_course("course-1")
  flaky = RecordingHandler("document_processing", _fail_times(1, lambda: RuntimeError("upstream 503 service unavailable")))
  worker = _worker(repo, _handlers(**{"document-processing": flaky}))

  first = await worker.run_once()
  assert first.outcome == "retry_scheduled"
  assert 0 < first.backoff_seconds <= 0.01
  assert (await repo.get_course_state("course-1")).state == "stage_2_processing"

  await anyio.sleep(0.05)
  second = await worker.run_once()
  assert second.outcome == "succeeded"
  assert (await repo.get_course_state("course-1")).state == "stage_3_init"
  retries = await repo.list_events("course-1", event_type="job_retry_scheduled")
  assert [event.event_data["attempt"] for event in retries] == [1]
  entry = next(entry for entry in await repo.list_outbox("course-1") if entry.queue_name == "document-processing")
  assert entry.attempts == 2
  assert entry.outcome == "succeeded"


@pytest.mark.anyio
async def test_exhausted_retries_fail_the_course(start_course, repo) -> None:
  await start_course("course-1")
  broken = RecordingHandler("document_processing", _fail_times(10, lambda: RuntimeError("connection reset")))
  worker = _worker(repo, _handlers(**{"document-processing": broken}))

  outcomes = []
  for _ in range(3):
    result = await worker.run_once()
    outcomes.append(result.outcome)
    await anyio.sleep(0.05)
  assert outcomes == ["retry_scheduled", "retry_scheduled", "failed"]
  assert await worker.run_once() is None

  record = await repo.get_course_state("course-1")
  assert record.state == FAILED
  assert record.error_stage == "document_processing"
  assert "connection reset" in record.error_message
  failed = await repo.list_events("course-1", event_type="job_failed")
  assert failed[0].event_data["attempt"] == 3


@pytest.mark.anyio
async def test_permanent_error_fails_without_retry(start_course, repo) -> None:
  await start_course("course-1")
  bad_input = RecordingHandler("document_processing", _fail_times(1, lambda: PermanentStageError("document has neither text nor url")))
  result = await _worker(repo, _handlers(**{"document-processing": bad_input})).run_once()
  assert result.outcome == "failed"
  assert (await repo.get_course_state("course-1")).state == FAILED
  assert await repo.list_events("course-1", event_type="job_retry_scheduled") == []


@pytest.mark.anyio
async def test_repair_exhaustion_records_attempts_before_failing(start_course, repo) -> None:
  await start_course("course-1")
  attempts = [RepairAttempt(layer=RepairLayer.AUTO_REPAIR, attempt=1, model=None, succeeded=False, error="invalid JSON"), RepairAttempt(layer=RepairLayer.CRITIQUE_REVISE, attempt=1, model="primary", succeeded=False, error="sections: too short")]
  exhausted = RecordingHandler("document_processing", _fail_times(1, lambda: RepairExhausted(attempts)))
  result = await _worker(repo, _handlers(**{"document-processing": exhausted})).run_once()
  assert result.outcome == "failed"
  event_types = [event.event_type for event in await repo.list_events("course-1")]
  assert event_types.index("repair_exhausted") < event_types.index("job_failed")
  repair_event = (await repo.list_events("course-1", event_type="repair_exhausted"))[0]
  assert [attempt["layer"] for attempt in repair_event.event_data["attempts"]] == ["auto_repair", "critique_revise"]


@pytest.mark.anyio
async def test_transient_repair_exhaustion_is_retried(start_course, repo) -> None:
  await start_course("course-1")
  attempts = [RepairAttempt(layer=RepairLayer.CRITIQUE_REVISE, attempt=1, model="primary", succeeded=False, error="TimeoutError", transient=True)]
  flaky = RecordingHandler("document_processing", _fail_times(1, lambda: RepairExhausted(attempts)))
  result = await _worker(repo, _handlers(**{"document-processing": flaky})).run_once()
  assert result.outcome == "retry_scheduled"


@pytest.mark.anyio
async def test_unknown_queue_fails_permanently(start_course, repo) -> None:
  await start_course("course-1")
  result = await _worker(repo, {}).run_once()
  assert result.outcome == "failed"
  assert "Unsupported queue" in result.error


@pytest.mark.anyio
async def test_cancel_during_stage_stops_the_worker(start_course, repo, service) -> None:
  """The handler notices the cancellation at its next check; nothing further is written or queued."""
  await start_course("course-1")

  async def _cancel_then_check(ctx: StageContext) -> None:
    await service.cancel(course_id="course-1", organization_id="org-1", user_id="user-1", reason="changed my mind")
    await ctx.ensure_not_cancelled()

  handler = RecordingHandler("document_processing", _cancel_then_check)
  result = await _worker(repo, _handlers(**{"document-processing": handler})).run_once()

  assert result.outcome == "cancelled"
  record = await repo.get_course_state("course-1")
  assert record.state == CANCELLED
  assert record.stage_results == {}
  entries = await repo.list_outbox("course-1")
  assert [(entry.queue_name, entry.outcome) for entry in entries] == [("document-processing", "cancelled")]
  assert await repo.list_events("course-1", event_type="job_failed") == []


@pytest.mark.anyio
async def test_completion_after_cancel_is_rejected(start_course, repo, service) -> None:
  """A handler that finishes after a cancel cannot move the course out of cancelled."""
  await start_course("course-1")

  async def _cancel_only(_ctx: StageContext) -> None:
    await service.cancel(course_id="course-1", organization_id="org-1", user_id="user-1")

  handler = RecordingHandler("document_processing", _cancel_only)
  result = await _worker(repo, _handlers(**{"document-processing": handler})).run_once()

  assert result.outcome == "cancelled"
  record = await repo.get_course_state("course-1")
  assert record.state == CANCELLED
  assert record.stage_results == {}
  transitions = [event.new_state for event in await repo.list_events("course-1", event_type="state_transition")]
  assert "stage_2_complete" not in transitions
  assert await repo.list_outbox("course-1", pending_only=True) == []


@pytest.mark.anyio
async def test_cancel_consumes_queued_jobs(start_course, repo, service) -> None:
  await start_course("course-1")
  record = await service.cancel(course_id="course-1", organization_id="org-1", user_id="user-1")
  assert record.state == CANCELLED
  assert await repo.list_outbox("course-1", pending_only=True) == []
  assert await _worker(repo, _handlers()).run_once() is None

  # Cancelling twice is a no-op: same state, no new transition event.
  transitions = await repo.list_events("course-1", event_type="state_transition")
  assert (await service.cancel(course_id="course-1", organization_id="org-1", user_id="user-1")).state == CANCELLED
  assert len(await repo.list_events("course-1", event_type="state_transition")) == len(transitions)


@pytest.mark.anyio
async def test_transition_to_the_current_state_writes_no_event(start_course, repo) -> None:
  await start_course("course-1")
  before = await repo.list_events("course-1")
  async with repo.session_factory() as session:
    async with session.begin():
      course = await repo.lock_course(session, "course-1")
      assert await repo.transition(session, course, "stage_2_init", initiated_by=Initiator.WORKER) is None
      version = course.version

  assert len(await repo.list_events("course-1")) == len(before)
  record = await repo.get_course_state("course-1")
  assert record.state == "stage_2_init"
  assert record.version == version


@pytest.mark.anyio
async def test_stale_worker_cannot_fail_a_restarted_course(start_course, repo, service) -> None:
  """A job from the cancelled run that finishes after a restart leaves the new run untouched."""
  await start_course("course-1")

  async def _cancel_and_restart(_ctx: StageContext) -> None:
    await service.cancel(course_id="course-1", organization_id="org-1", user_id="user-1")
    await start_course("course-1", key="restart-key-0001", restart=True)

  handler = RecordingHandler("summarization", _cancel_and_restart)
  worker = _worker(repo, _handlers(summarization=handler))
  assert (await worker.run_once()).outcome == "succeeded"
  result = await worker.run_once()

  assert result.queue_name == "summarization"
  assert result.outcome == "lease_lost"
  record = await repo.get_course_state("course-1")
  assert record.state == "stage_2_init"
  assert record.error_message is None
  assert [entry.queue_name for entry in await repo.list_outbox("course-1", pending_only=True)] == ["document-processing"]
  stale = next(entry for entry in await repo.list_outbox("course-1") if entry.queue_name == "summarization")
  assert stale.outcome == "cancelled"
  assert await repo.list_events("course-1", event_type="job_failed") == []


@pytest.mark.anyio
async def test_out_of_order_job_is_dropped_without_failing_the_course(start_course, repo) -> None:
  await start_course("course-1")
  async with repo.session_factory() as session:
    async with session.begin():
      course = await repo.lock_course(session, "course-1")
      await repo.enqueue(session, course, [JobSpec(queue_name="summarization", job_data={"course_id": "course-1"}, job_options={"priority": 5})], initiated_by=Initiator.WORKER)

  result = await _worker(repo, _handlers()).run_once()

  assert result.queue_name == "summarization"
  assert result.outcome == "cancelled"
  assert result.state == "stage_2_init"
  assert (await repo.get_course_state("course-1")).state == "stage_2_init"
  assert [entry.queue_name for entry in await repo.list_outbox("course-1", pending_only=True)] == ["document-processing"]
  assert await repo.list_events("course-1", event_type="job_failed") == []


@pytest.mark.anyio
async def test_expired_lease_is_reclaimed_and_old_holder_loses_it(start_course, repo) -> None:
  await start_course("course-1")
  first = await repo.claim_next(queues=("document-processing",), worker_id="worker-a", lease_seconds=0)
  second = await repo.claim_next(queues=("document-processing",), worker_id="worker-b", lease_seconds=600)
  assert first is not None and second is not None
  assert second.outbox_id == first.outbox_id
  assert second.attempts == 2
  assert await repo.claim_next(queues=("document-processing",), worker_id="worker-c", lease_seconds=600) is None

  async with repo.session_factory() as session:
    with pytest.raises(LeaseLostError):
      await repo.consume_entry(session, first, outcome="succeeded")
    await session.rollback()


@pytest.mark.anyio
async def test_audit_events_cannot_be_modified_or_deleted(start_course, session_factory) -> None:
  await start_course("course-1")
  async with session_factory() as session:
    event = (await session.execute(select(FsmEvent).limit(1))).scalar_one()
    event.event_type = "rewritten"
    with pytest.raises(AuditLogViolation):
      await session.flush()
    await session.rollback()

  async with session_factory() as session:
    event = (await session.execute(select(FsmEvent).limit(1))).scalar_one()
    await session.delete(event)
    with pytest.raises(AuditLogViolation):
      await session.flush()
    await session.rollback()


@pytest.mark.anyio
async def test_direct_state_writes_are_validated_on_flush(start_course, session_factory) -> None:
  """Writes that bypass the repository still go through the transition table."""
  await start_course("course-1")
  async with session_factory() as session:
    course = await session.get(Course, "course-1")
    course.generation_status = "stage_4_init"
    with pytest.raises(InvalidTransition):
      await session.flush()
    await session.rollback()


@pytest.mark.anyio
async def test_worker_events_are_attributed_to_the_worker(start_course, repo) -> None:
  await start_course("course-1")
  await _worker(repo, _handlers()).run_once()
  events = await repo.list_events("course-1")
  created_by = {(event.event_type, event.new_state): event.created_by for event in events}
  assert created_by[("state_transition", "stage_2_init")] == Initiator.API.value
  assert created_by[("state_transition", "stage_2_complete")] == Initiator.WORKER.value
