"""Integration tests for idempotent, atomic initialize-and-enqueue."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from coursegen.fsm.pipeline import CANCELLED, PENDING, Initiator
from coursegen.fsm.validator import EntityNotFound, InvalidTransition, StaleStateError
from coursegen.jobs.models import JobSpec
from coursegen.schema.outbox import FsmEvent, IdempotencyKey, JobOutbox
from coursegen.services.generation import InitializeRequest, initialize_and_enqueue
from coursegen.services.idempotency import IdempotencyKeyReuseError, canonical_json
from coursegen.storage.postgres_generation_repo import DuplicatePendingJob


async def _count(session_factory, model) -> int:
  async with session_factory() as session:
    return int((await session.execute(select(func.count()).select_from(model))).scalar_one())


@pytest.mark.anyio
async def test_initialize_creates_state_job_and_audit_events(start_course, repo) -> None:
  """A new course lands at stage 2 with exactly one queued job and matching audit events."""
  result = await start_course("course-1")
  assert result["state"]["state"] == "stage_2_init"
  assert result["state"]["created_by"] == "API"
  assert [entry["queue_name"] for entry in result["outbox_entries"]] == ["document-processing"]
  assert result["outbox_entries"][0]["job_data"] == {"course_id": "course-1"}

  record = await repo.get_course_state("course-1")
  assert record.state == "stage_2_init"
  assert record.generation_metadata == {"topic": "Intro to Python"}
  events = await repo.list_events("course-1")
  assert [(event.event_type, event.old_state, event.new_state) for event in events] == [("state_transition", None, "stage_2_init"), ("job_created", None, None)]
  assert all(event.created_by == "API" for event in events)


@pytest.mark.anyio
async def test_replay_returns_byte_identical_result_without_new_writes(start_course, session_factory) -> None:
  first = await start_course("course-1", key="replay-key-0001")
  second = await start_course("course-1", key="replay-key-0001")
  assert canonical_json(first) == canonical_json(second)
  assert await _count(session_factory, JobOutbox) == 1
  assert await _count(session_factory, FsmEvent) == 2
  assert await _count(session_factory, IdempotencyKey) == 1


@pytest.mark.anyio
async def test_concurrent_requests_with_one_key_compute_once(service, session_factory) -> None:
  """Racing callers with the same key all observe the single recorded result."""
  request = service.start_request(entity_id="course-race", user_id="user-1", organization_id="org-1", idempotency_key="race-key-0001", create_if_missing=True, title="Race")
  results = await asyncio.gather(*(service.initialize(request) for _ in range(5)))
  assert len({canonical_json(result) for result in results}) == 1
  assert await _count(session_factory, JobOutbox) == 1
  assert await _count(session_factory, IdempotencyKey) == 1


@pytest.mark.anyio
async def test_reusing_a_key_with_a_different_payload_is_rejected(start_course) -> None:
  await start_course("course-1", key="shared-key-0001")
  with pytest.raises(IdempotencyKeyReuseError):
    await start_course("course-1", key="shared-key-0001", priority=5)


@pytest.mark.anyio
async def test_missing_course_without_create_flag_raises(service, session_factory) -> None:
  request = service.start_request(entity_id="ghost", user_id="user-1", organization_id="org-1", idempotency_key="ghost-key-0001")
  with pytest.raises(EntityNotFound):
    await service.initialize(request)
  # Failures are never cached: the key is free for a corrected retry.
  assert await _count(session_factory, IdempotencyKey) == 0


@pytest.mark.anyio
async def test_other_organization_cannot_see_course(start_course) -> None:
  await start_course("course-1")
  with pytest.raises(EntityNotFound):
    await start_course("course-1", key="other-org-key-1", organization_id="org-2")


@pytest.mark.anyio
async def test_failed_enqueue_rolls_back_every_write(repo, store, session_factory) -> None:
  """Duplicate queue names abort the transaction after the course row was staged."""
  spec = JobSpec(queue_name="document-processing", job_data={"course_id": "course-atomic"})
  request = InitializeRequest(
    entity_id="course-atomic",
    user_id="user-1",
    organization_id="org-1",
    idempotency_key="atomic-key-0001",
    initiated_by=Initiator.API,
    initial_state="stage_2_init",
    job_specs=(spec, spec),
    create_if_missing=True,
  )

  async def _compute(session):
    return await initialize_and_enqueue(session, request, repo=repo)

  with pytest.raises(ValueError):
    await store.resolve(request.idempotency_key, "test", _compute)
  assert await repo.get_course_state("course-atomic") is None
  assert await _count(session_factory, FsmEvent) == 0
  assert await _count(session_factory, JobOutbox) == 0
  assert await _count(session_factory, IdempotencyKey) == 0


@pytest.mark.anyio
async def test_initialize_rejects_illegal_transition(start_course, service) -> None:
  await start_course("course-1")
  await service.cancel(course_id="course-1", organization_id="org-1", user_id="user-1")
  # A cancelled course only accepts a restart.
  with pytest.raises(InvalidTransition):
    await start_course("course-1", key="again-key-0001")


@pytest.mark.anyio
async def test_restart_passes_through_pending(start_course, service, repo) -> None:
  await start_course("course-1")
  await service.cancel(course_id="course-1", organization_id="org-1", user_id="user-1")
  result = await start_course("course-1", key="restart-key-0001", restart=True)
  assert result["state"]["state"] == "stage_2_init"
  transitions = [(event.old_state, event.new_state) for event in await repo.list_events("course-1", event_type="state_transition")]
  assert transitions[-3:] == [("stage_2_init", CANCELLED), (CANCELLED, PENDING), (PENDING, "stage_2_init")]


@pytest.mark.anyio
async def test_second_pending_job_for_same_queue_is_rejected(start_course, repo) -> None:
  await start_course("course-1")
  async with repo.session_factory() as session:
    course = await repo.lock_course(session, "course-1")
    with pytest.raises(DuplicatePendingJob):
      await repo.enqueue(session, course, [JobSpec(queue_name="document-processing")], initiated_by=Initiator.API)
    await session.rollback()


@pytest.mark.anyio
async def test_stale_writer_is_rejected(start_course, repo, session_factory) -> None:
  await start_course("course-1")
  async with session_factory() as stale_session:
    stale = await repo.lock_course(stale_session, "course-1")
    await stale_session.commit()

    async with session_factory() as session:
      async with session.begin():
        fresh = await repo.lock_course(session, "course-1")
        await repo.transition(session, fresh, "stage_2_processing", initiated_by=Initiator.WORKER)

    with pytest.raises(StaleStateError):
      await repo.transition(stale_session, stale, "stage_2_processing", initiated_by=Initiator.WORKER)
    await stale_session.rollback()


@pytest.mark.anyio
async def test_keys_shorter_than_minimum_are_rejected(store) -> None:
  async def _compute(_session):
    return {}

  with pytest.raises(ValueError):
    await store.resolve("short", "test", _compute)
