"""Course generation lifecycle: idempotent initialize, cancellation and read models."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from coursegen.fsm.pipeline import CANCELLED, COURSE_PIPELINE, PENDING, Initiator, Pipeline
from coursegen.fsm.validator import EntityNotFound, is_terminal
from coursegen.jobs.models import JobSpec
from coursegen.services.idempotency import IdempotencyStore, fingerprint
from coursegen.storage.generation_repo import CourseStateRecord, FsmEventRecord, OutboxEntryRecord, iso_timestamp
from coursegen.storage.postgres_generation_repo import PostgresGenerationRepository

logger = logging.getLogger(__name__)

INITIALIZE_SCOPE = "course_generation:initialize"


@dataclass(frozen=True)
class InitializeRequest:
  """Inputs of the atomic initialize operation."""

  entity_id: str
  user_id: str
  organization_id: str
  idempotency_key: str
  initiated_by: Initiator
  initial_state: str
  job_specs: tuple[JobSpec, ...] = ()
  metadata: dict[str, Any] = field(default_factory=dict)
  create_if_missing: bool = False
  title: str | None = None
  language: str = "en"
  restart: bool = False

  def fingerprint_payload(self) -> dict[str, Any]:
    """Everything that defines the request except the key itself."""
    return {
      "entity_id": self.entity_id,
      "user_id": self.user_id,
      "organization_id": self.organization_id,
      "initiated_by": self.initiated_by.value,
      "initial_state": self.initial_state,
      "job_specs": [{"queue_name": spec.queue_name, "job_data": spec.job_data, "job_options": spec.job_options} for spec in self.job_specs],
      "metadata": self.metadata,
      "create_if_missing": self.create_if_missing,
      "title": self.title,
      "language": self.language,
      "restart": self.restart,
    }


async def initialize_and_enqueue(session: AsyncSession, request: InitializeRequest, *, repo: PostgresGenerationRepository) -> dict[str, Any]:
  """Write the initial state, the outbox entries and the audit events in the caller's transaction.

  Nothing is committed here: the surrounding transaction (owned by the idempotency store) commits
  all writes together or rolls every one of them back.
  """
  course = await repo.lock_course(session, request.entity_id)
  if course is None:
    if not request.create_if_missing:
      raise EntityNotFound(request.entity_id)
    course = await repo.create_course(
      session,
      course_id=request.entity_id,
      organization_id=request.organization_id,
      user_id=request.user_id,
      initial_state=request.initial_state,
      title=request.title,
      language=request.language,
      metadata=request.metadata,
      initiated_by=request.initiated_by,
    )
  else:
    # Tenant scope: a course is invisible outside its organization.
    if course.organization_id != request.organization_id:
      raise EntityNotFound(request.entity_id)
    if request.restart and is_terminal(course.generation_status) and request.initial_state != PENDING:
      # Entries still leased to workers of the previous run belong to no run once the course restarts.
      stale = await repo.consume_unclaimed_for_entity(session, course.id, outcome="cancelled", include_leased=True)
      if stale:
        logger.info("Restart of course %s consumed %d entries left by the previous run", course.id, stale)
      await repo.transition(session, course, PENDING, initiated_by=request.initiated_by, user_id=request.user_id, event_data={"reason": "restart"})
    await repo.transition(session, course, request.initial_state, initiated_by=request.initiated_by, user_id=request.user_id, event_data={"reason": "initialize"})
    if request.metadata:
      course.generation_metadata = {**(course.generation_metadata or {}), **request.metadata}
    if request.title:
      course.title = request.title

  rows = await repo.enqueue(session, course, request.job_specs, initiated_by=request.initiated_by, user_id=request.user_id)
  await session.flush()

  return {
    "state": {"entity_id": course.id, "state": course.generation_status, "version": int(course.version), "created_by": request.initiated_by.value, "created_at": iso_timestamp(datetime.now(UTC))},
    "outbox_entries": [repo.outbox_to_record(row).to_payload() for row in rows],
  }


class GenerationService:
  """Entry points used by the API layer and by workers that re-initialize courses."""

  def __init__(self, *, repo: PostgresGenerationRepository, store: IdempotencyStore, pipeline: Pipeline = COURSE_PIPELINE) -> None:
    self._repo = repo
    self._store = store
    self._pipeline = pipeline

  async def initialize(self, request: InitializeRequest) -> dict[str, Any]:
    """Idempotently run initialize_and_enqueue for the request's key."""

    async def _compute(session: AsyncSession) -> dict[str, Any]:
      return await initialize_and_enqueue(session, request, repo=self._repo)

    result = await self._store.resolve(request.idempotency_key, INITIALIZE_SCOPE, _compute, request_fingerprint=fingerprint(request.fingerprint_payload()), entity_id=request.entity_id)
    logger.info("Initialize resolved for course %s (state=%s)", request.entity_id, result["state"]["state"])
    return result

  def start_request(
    self,
    *,
    entity_id: str,
    user_id: str,
    organization_id: str,
    idempotency_key: str,
    initiated_by: Initiator = Initiator.API,
    job_data: dict[str, Any] | None = None,
    priority: int = 0,
    metadata: dict[str, Any] | None = None,
    create_if_missing: bool = False,
    title: str | None = None,
    language: str = "en",
    restart: bool = False,
  ) -> InitializeRequest:
    """Build the request that puts a course at the first stage with its first job queued."""
    first = self._pipeline.first
    spec = JobSpec(queue_name=first.queue_name, job_data={"course_id": entity_id, **(job_data or {})}, job_options={"priority": priority})
    return InitializeRequest(
      entity_id=entity_id,
      user_id=user_id,
      organization_id=organization_id,
      idempotency_key=idempotency_key,
      initiated_by=initiated_by,
      initial_state=first.init_state,
      job_specs=(spec,),
      metadata=dict(metadata or {}),
      create_if_missing=create_if_missing,
      title=title,
      language=language,
      restart=restart,
    )

  async def cancel(self, *, course_id: str, organization_id: str, user_id: str | None, initiated_by: Initiator = Initiator.API, reason: str | None = None) -> CourseStateRecord:
    """Move the course to cancelled and consume every entry no worker currently holds."""
    async with self._repo.session_factory() as session:
      async with session.begin():
        course = await self._repo.lock_course(session, course_id)
        if course is None or course.organization_id != organization_id:
          raise EntityNotFound(course_id)
        already_cancelled = course.generation_status == CANCELLED
        await self._repo.transition(session, course, CANCELLED, initiated_by=initiated_by, user_id=user_id, event_data={"reason": reason or "user_request"})
        consumed = 0 if already_cancelled else await self._repo.consume_unclaimed_for_entity(session, course_id, outcome="cancelled")
    logger.info("Course %s cancelled (%d queued jobs consumed)", course_id, consumed)
    return await self.get_status(course_id, organization_id=organization_id)

  async def get_status(self, course_id: str, *, organization_id: str | None = None) -> CourseStateRecord:
    record = await self._repo.get_course_state(course_id)
    if record is None or (organization_id is not None and record.organization_id != organization_id):
      raise EntityNotFound(course_id)
    return record

  async def list_events(self, course_id: str, *, organization_id: str | None = None, limit: int = 500) -> list[FsmEventRecord]:
    await self.get_status(course_id, organization_id=organization_id)
    return await self._repo.list_events(course_id, limit=limit)

  async def list_pending_jobs(self, course_id: str) -> Sequence[OutboxEntryRecord]:
    return await self._repo.list_outbox(course_id, pending_only=True)
