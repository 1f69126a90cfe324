from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from coursegen.fsm.pipeline import FAILED
from coursegen.services.maintenance import cleanup_expired_idempotency_keys, cleanup_processed_outbox, requeue_expired_leases


@pytest.mark.anyio
async def test_requeue_expired_leases_releases_dead_worker_entries(start_course, repo, session_factory) -> None:
  await start_course("course-1")
  claimed = await repo.claim_next(queues=("document-processing",), worker_id="worker-dead", lease_seconds=0)
  assert claimed is not None

  async with session_factory() as session:
    assert await requeue_expired_leases(session, repo=repo) == 1

  events = await repo.list_events("course-1", event_type="job_retry_scheduled")
  assert events[0].event_data["reason"] == "lease_expired"
  assert events[0].event_data["previous_worker"] == "worker-dead"
  assert events[0].created_by == "QUEUE"

  reclaimed = await repo.claim_next(queues=("document-processing",), worker_id="worker-live", lease_seconds=600)
  assert reclaimed.outbox_id == claimed.outbox_id
  assert reclaimed.attempts == 2


@pytest.mark.anyio
async def test_requeue_ignores_live_leases(start_course, repo, session_factory) -> None:
  await start_course("course-1")
  await repo.claim_next(queues=("document-processing",), worker_id="worker-a", lease_seconds=600)
  async with session_factory() as session:
    assert await requeue_expired_leases(session, repo=repo) == 0


@pytest.mark.anyio
async def test_cleanup_processed_outbox_keeps_pending_and_recent_entries(start_course, service, repo, session_factory) -> None:
  await start_course("course-1")
  await start_course("course-2")
  await service.cancel(course_id="course-1", organization_id="org-1", user_id="user-1")

  async with session_factory() as session:
    assert await cleanup_processed_outbox(session, retention_days=30) == 0
  async with session_factory() as session:
    assert await cleanup_processed_outbox(session, retention_days=30, now=datetime.now(UTC) + timedelta(days=31)) == 1

  assert await repo.list_outbox("course-1") == []
  assert len(await repo.list_outbox("course-2", pending_only=True)) == 1


@pytest.mark.anyio
async def test_cleanup_processed_outbox_rejects_non_positive_retention(session_factory) -> None:
  async with session_factory() as session:
    with pytest.raises(ValueError):
      await cleanup_processed_outbox(session, retention_days=0)


@pytest.mark.anyio
async def test_cleanup_expired_idempotency_keys(start_course, session_factory) -> None:
  await start_course("course-1")
  async with session_factory() as session:
    assert await cleanup_expired_idempotency_keys(session) == 0
  async with session_factory() as session:
    assert await cleanup_expired_idempotency_keys(session, now=datetime.now(UTC) + timedelta(hours=2)) == 1


async def _abandon_every_attempt(repo) -> None:
  # Three workers in a row die holding the lease; the repo fixture allows three attempts.
  for attempt in range(1, 4):
    claimed = await repo.claim_next(queues=("document-processing",), worker_id=f"worker-{attempt}", lease_seconds=0)
    assert claimed.attempts == attempt


@pytest.mark.anyio
async def test_claim_fails_entry_abandoned_on_its_last_attempt(start_course, repo) -> None:
  await start_course("course-1")
  await _abandon_every_attempt(repo)

  assert await repo.claim_next(queues=("document-processing",), worker_id="worker-4", lease_seconds=600) is None
  record = await repo.get_course_state("course-1")
  assert record.state == FAILED
  assert record.error_stage == "document_processing"
  assert "LeaseExpired" in record.error_message
  [entry] = await repo.list_outbox("course-1")
  assert entry.outcome == "failed"
  assert entry.attempts == 3
  [failed] = await repo.list_events("course-1", event_type="job_failed")
  assert failed.created_by == "QUEUE"
  assert failed.event_data["reason"] == "lease_expired"
  assert failed.event_data["previous_worker"] == "worker-3"


@pytest.mark.anyio
async def test_requeue_fails_instead_of_requeueing_an_exhausted_entry(start_course, repo, session_factory) -> None:
  await start_course("course-1")
  await _abandon_every_attempt(repo)

  async with session_factory() as session:
    assert await requeue_expired_leases(session, repo=repo) == 1

  assert (await repo.get_course_state("course-1")).state == FAILED
  assert await repo.list_events("course-1", event_type="job_retry_scheduled") == []
  assert await repo.list_outbox("course-1", pending_only=True) == []
  assert await repo.claim_next(queues=("document-processing",), worker_id="worker-4", lease_seconds=600) is None
