"""Postgres-backed repository for generation state, outbox entries and audit events using SQLAlchemy."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from coursegen.core.database import get_session_factory
from coursegen.fsm.pipeline import CANCELLED, COURSE_PIPELINE, FAILED, PENDING, Initiator, Pipeline
from coursegen.fsm.validator import StaleStateError, is_terminal, validate_transition
from coursegen.jobs.models import ClaimedJob, JobOutcome, JobSpec
from coursegen.schema.courses import Course
from coursegen.schema.outbox import FsmEvent, JobOutbox
from coursegen.storage.generation_repo import CourseStateRecord, FsmEventRecord, OutboxEntryRecord, as_utc

logger = logging.getLogger(__name__)

_MAX_ERROR_CHARS = 4000


def _utcnow() -> datetime:
  return datetime.now(UTC)


class DuplicatePendingJob(RuntimeError):
  """Raised when an entity already has an unprocessed entry for the same queue."""


class LeaseLostError(RuntimeError):
  """Raised when a worker touches an outbox entry it no longer holds."""


class PostgresGenerationRepository:
  """Persist course state, outbox entries and FSM events to Postgres using SQLAlchemy."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None, *, default_max_attempts: int = 5, pipeline: Pipeline = COURSE_PIPELINE) -> None:
    self._session_factory = session_factory or get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")
    self._default_max_attempts = default_max_attempts
    self._pipeline = pipeline

  @property
  def session_factory(self) -> async_sessionmaker[AsyncSession]:
    return self._session_factory

  # In-session primitives. Callers own the transaction so several writes commit together.

  async def lock_course(self, session: AsyncSession, course_id: str) -> Course | None:
    """Load the course row with a row lock, refreshing any identity-mapped copy."""
    stmt = select(Course).where(Course.id == course_id).with_for_update().execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one_or_none()

  async def create_course(self, session: AsyncSession, *, course_id: str, organization_id: str, user_id: str, initial_state: str, title: str | None, language: str, metadata: dict[str, Any], initiated_by: Initiator) -> Course:
    """Insert a new course directly in its initial state and record the creation transition."""
    validate_transition(None, initial_state)
    now = _utcnow()
    course = Course(
      id=course_id,
      organization_id=organization_id,
      user_id=user_id,
      title=title,
      language=language,
      generation_status=initial_state,
      generation_metadata=dict(metadata),
      stage_results={},
      created_at=now,
      updated_at=now,
    )
    session.add(course)
    self.append_event(session, entity_id=course_id, event_type="state_transition", old_state=None, new_state=initial_state, initiated_by=initiated_by, user_id=user_id, event_data={"reason": "created"})
    await self._flush(session, old_state=None, new_state=initial_state)
    return course

  async def transition(self, session: AsyncSession, course: Course, new_state: str, *, initiated_by: Initiator, user_id: str | None = None, event_data: dict[str, Any] | None = None) -> FsmEvent | None:
    """Validate and write a state change plus its audit event; self-transitions are no-ops."""
    old_state = course.generation_status
    validate_transition(old_state, new_state)
    if old_state == new_state:
      return None

    course.generation_status = new_state
    if new_state == PENDING:
      # A restart clears the retained terminal error.
      course.error_message = None
      course.error_stage = None
    event = self.append_event(session, entity_id=course.id, event_type="state_transition", old_state=old_state, new_state=new_state, initiated_by=initiated_by, user_id=user_id, event_data=event_data)
    await self._flush(session, old_state=old_state, new_state=new_state)
    logger.info("Course %s transitioned %s -> %s (%s)", course.id, old_state, new_state, initiated_by.value)
    return event

  async def fail_course(self, session: AsyncSession, course: Course, *, error_message: str, error_stage: str | None, initiated_by: Initiator, event_data: dict[str, Any] | None = None) -> FsmEvent | None:
    """Move the course to failed while retaining the error and stage identifier."""
    validate_transition(course.generation_status, FAILED)
    course.error_message = error_message[:_MAX_ERROR_CHARS]
    course.error_stage = error_stage
    payload = {"error": error_message[:_MAX_ERROR_CHARS], "stage": error_stage, **(event_data or {})}
    return await self.transition(session, course, FAILED, initiated_by=initiated_by, event_data=payload)

  async def enqueue(self, session: AsyncSession, course: Course, specs: Sequence[JobSpec], *, initiated_by: Initiator, user_id: str | None = None) -> list[JobOutbox]:
    """Insert one outbox entry per job spec in the caller's transaction."""
    queue_names = [spec.queue_name for spec in specs]
    if len(set(queue_names)) != len(queue_names):
      raise ValueError("job_specs must target distinct queues")

    now = _utcnow()
    rows: list[JobOutbox] = []
    for spec in specs:
      row = JobOutbox(
        outbox_id=str(uuid.uuid4()),
        entity_id=course.id,
        queue_name=spec.queue_name,
        job_data=dict(spec.job_data),
        job_options=dict(spec.job_options),
        priority=spec.priority,
        max_attempts=spec.max_attempts(self._default_max_attempts),
        attempts=0,
        available_at=now,
        created_at=now,
      )
      session.add(row)
      rows.append(row)
      self.append_event(session, entity_id=course.id, event_type="job_created", initiated_by=initiated_by, user_id=user_id, event_data={"outbox_id": row.outbox_id, "queue_name": row.queue_name, "priority": row.priority})

    try:
      await session.flush()
    except IntegrityError as exc:
      raise DuplicatePendingJob(f"Course {course.id} already has an unprocessed job for one of: {', '.join(queue_names)}") from exc
    return rows

  def append_event(self, session: AsyncSession, *, entity_id: str, event_type: str, initiated_by: Initiator, old_state: str | None = None, new_state: str | None = None, user_id: str | None = None, event_data: dict[str, Any] | None = None) -> FsmEvent:
    """Stage an append-only audit event in the caller's transaction."""
    event = FsmEvent(event_id=str(uuid.uuid4()), entity_id=entity_id, event_type=event_type, old_state=old_state, new_state=new_state, created_by=initiated_by.value, user_id=user_id, event_data=dict(event_data or {}), created_at=_utcnow())
    session.add(event)
    return event

  async def consume_entry(self, session: AsyncSession, job: ClaimedJob, *, outcome: JobOutcome, error: str | None = None) -> None:
    """Mark a claimed entry processed; fails when the lease moved to another worker."""
    stmt = select(JobOutbox).where(JobOutbox.outbox_id == job.outbox_id).with_for_update().execution_options(populate_existing=True)
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is None or row.processed_at is not None or row.claimed_by != job.claimed_by:
      raise LeaseLostError(f"Outbox entry {job.outbox_id} is no longer held by {job.claimed_by}")
    row.processed_at = _utcnow()
    row.outcome = outcome
    row.lease_until = None
    if error is not None:
      row.last_error = error[:_MAX_ERROR_CHARS]
    await session.flush()

  async def consume_unclaimed_for_entity(self, session: AsyncSession, entity_id: str, *, outcome: JobOutcome, include_leased: bool = False) -> int:
    """Consume entries no worker currently holds; in-flight entries are left to their worker unless include_leased."""
    now = _utcnow()
    conditions = [JobOutbox.entity_id == entity_id, JobOutbox.processed_at.is_(None)]
    if not include_leased:
      conditions.append(or_(JobOutbox.claimed_by.is_(None), JobOutbox.lease_until.is_(None), JobOutbox.lease_until <= now))
    stmt = (
      update(JobOutbox)
      .where(*conditions)
      .values(processed_at=now, outcome=outcome, claimed_by=None, lease_until=None)
      .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return int(result.rowcount or 0)

  async def fail_abandoned_entry(self, session: AsyncSession, row: JobOutbox, *, now: datetime) -> JobOutcome:
    """Consume an entry whose worker vanished on its last attempt and fail the course it was running."""
    stage = self._pipeline.stage_for_queue(row.queue_name)
    stage_name = stage.name if stage else row.queue_name
    previous_worker = row.claimed_by
    error = f"LeaseExpired: lease held by {previous_worker} expired on attempt {row.attempts}/{row.max_attempts}"
    course = await self.lock_course(session, row.entity_id)
    outcome: JobOutcome = "failed"
    if course is None or course.generation_status == CANCELLED:
      outcome = "cancelled"
    elif not is_terminal(course.generation_status):
      if self._pipeline.queue_acts_on(row.queue_name, course.generation_status):
        await self.fail_course(session, course, error_message=error, error_stage=stage_name, initiated_by=Initiator.QUEUE, event_data={"outbox_id": row.outbox_id})
      else:
        outcome = "cancelled"

    row.processed_at = now
    row.outcome = outcome
    row.last_error = error
    row.claimed_by = None
    row.lease_until = None
    if outcome == "failed" and course is not None:
      self.append_event(
        session,
        entity_id=row.entity_id,
        event_type="job_failed",
        initiated_by=Initiator.QUEUE,
        event_data={"outbox_id": row.outbox_id, "queue_name": row.queue_name, "stage": stage_name, "attempt": row.attempts, "max_attempts": row.max_attempts, "error": error, "error_type": "LeaseExpired", "reason": "lease_expired", "previous_worker": previous_worker},
      )
    await session.flush()
    logger.error("Outbox entry %s abandoned on its last attempt; consumed as %s (course %s): %s", row.outbox_id, outcome, row.entity_id, error)
    return outcome

  async def _flush(self, session: AsyncSession, *, old_state: str | None, new_state: str) -> None:
    try:
      await session.flush()
    except StaleDataError as exc:
      raise StaleStateError(old_state, new_state, f"Stale state write {old_state} -> {new_state}; the course was modified concurrently") from exc

  # Session-owning operations.

  async def claim_next(self, *, queues: Sequence[str], worker_id: str, lease_seconds: int) -> ClaimedJob | None:
    """Atomically claim the next due entry, skipping rows locked by other workers."""
    now = _utcnow()
    async with self._session_factory() as session:
      async with session.begin():
        stmt = (
          select(JobOutbox)
          .where(JobOutbox.processed_at.is_(None), JobOutbox.queue_name.in_(list(queues)), JobOutbox.available_at <= now, or_(JobOutbox.lease_until.is_(None), JobOutbox.lease_until <= now))
          .order_by(JobOutbox.priority.desc(), JobOutbox.created_at.asc())
          .with_for_update(skip_locked=True)
          .limit(1)
        )
        while True:
          row = (await session.execute(stmt)).scalar_one_or_none()
          if row is None:
            return None
          if int(row.attempts or 0) < row.max_attempts:
            break
          # The last allowed attempt died holding the lease; claiming again would exceed the budget.
          await self.fail_abandoned_entry(session, row, now=now)
        if row.claimed_by is not None:
          logger.warning("Reclaiming outbox entry %s after lease held by %s expired", row.outbox_id, row.claimed_by)
        row.claimed_by = worker_id
        row.lease_until = now + timedelta(seconds=lease_seconds)
        row.attempts = int(row.attempts or 0) + 1
        row.last_attempt_at = now
        claimed = self._to_claimed(row)
    return claimed

  async def extend_lease(self, *, job: ClaimedJob, lease_seconds: int) -> bool:
    """Push the lease forward while a long-running handler is still working."""
    async with self._session_factory() as session:
      async with session.begin():
        stmt = update(JobOutbox).where(JobOutbox.outbox_id == job.outbox_id, JobOutbox.claimed_by == job.claimed_by, JobOutbox.processed_at.is_(None)).values(lease_until=_utcnow() + timedelta(seconds=lease_seconds)).execution_options(synchronize_session=False)
        result = await session.execute(stmt)
    return bool(result.rowcount)

  async def release_for_retry(self, *, job: ClaimedJob, error: str, backoff_seconds: float) -> None:
    """Return a claimed entry to the queue after a backoff and record the retry."""
    now = _utcnow()
    async with self._session_factory() as session:
      async with session.begin():
        stmt = (
          update(JobOutbox)
          .where(JobOutbox.outbox_id == job.outbox_id, JobOutbox.claimed_by == job.claimed_by, JobOutbox.processed_at.is_(None))
          .values(claimed_by=None, lease_until=None, available_at=now + timedelta(seconds=backoff_seconds), last_error=error[:_MAX_ERROR_CHARS])
          .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if not result.rowcount:
          raise LeaseLostError(f"Outbox entry {job.outbox_id} is no longer held by {job.claimed_by}")
        event_data = {"outbox_id": job.outbox_id, "queue_name": job.queue_name, "attempt": job.attempts, "max_attempts": job.max_attempts, "backoff_seconds": backoff_seconds, "error": error[:_MAX_ERROR_CHARS]}
        self.append_event(session, entity_id=job.entity_id, event_type="job_retry_scheduled", initiated_by=Initiator.WORKER, event_data=event_data)

  async def record_event(self, *, entity_id: str, event_type: str, initiated_by: Initiator, event_data: dict[str, Any] | None = None, user_id: str | None = None) -> None:
    """Append a standalone audit event that does not accompany a state change."""
    async with self._session_factory() as session:
      async with session.begin():
        self.append_event(session, entity_id=entity_id, event_type=event_type, initiated_by=initiated_by, user_id=user_id, event_data=event_data)

  async def get_course_state(self, course_id: str) -> CourseStateRecord | None:
    async with self._session_factory() as session:
      course = await session.get(Course, course_id)
      if course is None:
        return None
      return self.course_to_record(course)

  async def list_events(self, course_id: str, *, event_type: str | None = None, limit: int = 500) -> list[FsmEventRecord]:
    """Return audit events in insertion order."""
    async with self._session_factory() as session:
      stmt = select(FsmEvent).where(FsmEvent.entity_id == course_id)
      if event_type is not None:
        stmt = stmt.where(FsmEvent.event_type == event_type)
      stmt = stmt.order_by(FsmEvent.id.asc()).limit(limit)
      rows = (await session.execute(stmt)).scalars().all()
      return [self._event_to_record(row) for row in rows]

  async def list_outbox(self, course_id: str, *, pending_only: bool = False) -> list[OutboxEntryRecord]:
    async with self._session_factory() as session:
      stmt = select(JobOutbox).where(JobOutbox.entity_id == course_id)
      if pending_only:
        stmt = stmt.where(JobOutbox.processed_at.is_(None))
      stmt = stmt.order_by(JobOutbox.created_at.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [self.outbox_to_record(row) for row in rows]

  @staticmethod
  def _to_claimed(row: JobOutbox) -> ClaimedJob:
    return ClaimedJob(
      outbox_id=row.outbox_id,
      queue_name=row.queue_name,
      entity_id=row.entity_id,
      job_data=dict(row.job_data or {}),
      job_options=dict(row.job_options or {}),
      attempts=int(row.attempts),
      max_attempts=int(row.max_attempts),
      claimed_by=str(row.claimed_by),
      lease_until=as_utc(row.lease_until) if row.lease_until else _utcnow(),
      created_at=as_utc(row.created_at),
      processed_at=row.processed_at,
    )

  @staticmethod
  def course_to_record(course: Course) -> CourseStateRecord:
    return CourseStateRecord(
      entity_id=course.id,
      organization_id=course.organization_id,
      user_id=course.user_id,
      state=course.generation_status,
      version=int(course.version),
      language=course.language,
      error_message=course.error_message,
      error_stage=course.error_stage,
      created_at=as_utc(course.created_at),
      updated_at=as_utc(course.updated_at),
      stage_results=dict(course.stage_results or {}),
      generation_metadata=dict(course.generation_metadata or {}),
      title=course.title,
    )

  @staticmethod
  def outbox_to_record(row: JobOutbox) -> OutboxEntryRecord:
    return OutboxEntryRecord(
      outbox_id=row.outbox_id,
      entity_id=row.entity_id,
      queue_name=row.queue_name,
      job_data=dict(row.job_data or {}),
      job_options=dict(row.job_options or {}),
      attempts=int(row.attempts or 0),
      max_attempts=int(row.max_attempts),
      last_error=row.last_error,
      outcome=row.outcome,
      created_at=as_utc(row.created_at),
      processed_at=as_utc(row.processed_at) if row.processed_at else None,
    )

  @staticmethod
  def _event_to_record(row: FsmEvent) -> FsmEventRecord:
    return FsmEventRecord(
      event_id=row.event_id,
      entity_id=row.entity_id,
      event_type=row.event_type,
      old_state=row.old_state,
      new_state=row.new_state,
      created_by=row.created_by,
      user_id=row.user_id,
      event_data=dict(row.event_data or {}),
      created_at=as_utc(row.created_at),
    )
