"""Maintenance tasks for idempotency records and the outbox."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from coursegen.fsm.pipeline import Initiator
from coursegen.schema.outbox import FsmEvent, IdempotencyKey, JobOutbox
from coursegen.storage.postgres_generation_repo import PostgresGenerationRepository

logger = logging.getLogger(__name__)


async def cleanup_expired_idempotency_keys(session: AsyncSession, *, now: datetime | None = None) -> int:
  """Delete idempotency records past their TTL.

  Expired keys are also purged lazily on reuse; this bounds storage for keys that are never replayed.
  """
  cutoff = now or datetime.now(UTC)
  result = await session.execute(sa.delete(IdempotencyKey).where(IdempotencyKey.expires_at <= cutoff))
  await session.commit()
  deleted = int(result.rowcount or 0)
  if deleted:
    logger.info("Deleted %d expired idempotency keys", deleted)
  return deleted


async def cleanup_processed_outbox(session: AsyncSession, *, retention_days: int, now: datetime | None = None) -> int:
  """Delete consumed outbox entries older than the retention window; unprocessed entries are never touched."""
  if retention_days <= 0:
    raise ValueError("retention_days must be positive")
  cutoff = (now or datetime.now(UTC)) - timedelta(days=retention_days)
  result = await session.execute(sa.delete(JobOutbox).where(JobOutbox.processed_at.is_not(None), JobOutbox.processed_at < cutoff))
  await session.commit()
  deleted = int(result.rowcount or 0)
  if deleted:
    logger.info("Deleted %d processed outbox entries older than %d days", deleted, retention_days)
  return deleted


async def requeue_expired_leases(session: AsyncSession, *, repo: PostgresGenerationRepository, limit: int = 100, now: datetime | None = None) -> int:
  """Release entries whose worker died mid-job so any worker can claim them again.

  The claim query already treats expired leases as claimable; clearing them keeps `claimed_by`
  honest for operators and lets cancellation consume the entries. An entry that died on its last
  allowed attempt is not requeued: its course fails and the entry is consumed.
  """
  current = now or datetime.now(UTC)
  stmt = (
    sa.select(JobOutbox)
    .where(JobOutbox.processed_at.is_(None), JobOutbox.claimed_by.is_not(None), JobOutbox.lease_until.is_not(None), JobOutbox.lease_until <= current)
    .order_by(JobOutbox.lease_until.asc())
    .limit(limit)
    .with_for_update(skip_locked=True)
  )
  rows = (await session.execute(stmt)).scalars().all()
  requeued = 0
  for row in rows:
    if int(row.attempts or 0) >= row.max_attempts:
      await repo.fail_abandoned_entry(session, row, now=current)
      continue
    session.add(
      FsmEvent(
        event_id=str(uuid.uuid4()),
        entity_id=row.entity_id,
        event_type="job_retry_scheduled",
        created_by=Initiator.QUEUE.value,
        event_data={"outbox_id": row.outbox_id, "queue_name": row.queue_name, "reason": "lease_expired", "previous_worker": row.claimed_by, "attempt": row.attempts},
        created_at=current,
        old_state=None,
        new_state=None,
        user_id=None,
      )
    )
    row.claimed_by = None
    row.lease_until = None
    row.available_at = current
    requeued += 1
  await session.commit()
  if requeued:
    logger.warning("Requeued %d outbox entries with expired leases", requeued)
  return len(rows)
