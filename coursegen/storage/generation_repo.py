"""Read-model records for generation state, outbox entries and audit events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


def as_utc(value: datetime) -> datetime:
  """Normalize driver datetimes (SQLite returns naive values) to aware UTC."""
  if value.tzinfo is None:
    return value.replace(tzinfo=UTC)
  return value.astimezone(UTC)


def iso_timestamp(value: datetime | None) -> str | None:
  if value is None:
    return None
  return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


@dataclass(frozen=True)
class CourseStateRecord:
  """Snapshot of an entity's generation state."""

  entity_id: str
  organization_id: str
  user_id: str
  state: str
  version: int
  language: str
  error_message: str | None
  error_stage: str | None
  created_at: datetime
  updated_at: datetime
  stage_results: dict[str, Any] = field(default_factory=dict)
  generation_metadata: dict[str, Any] = field(default_factory=dict)
  title: str | None = None


@dataclass(frozen=True)
class OutboxEntryRecord:
  """Outbox row as exposed to callers."""

  outbox_id: str
  entity_id: str
  queue_name: str
  job_data: dict[str, Any]
  job_options: dict[str, Any]
  attempts: int
  max_attempts: int
  last_error: str | None
  outcome: str | None
  created_at: datetime
  processed_at: datetime | None

  def to_payload(self) -> dict[str, Any]:
    return {"outbox_id": self.outbox_id, "queue_name": self.queue_name, "job_data": self.job_data, "job_options": self.job_options, "created_at": iso_timestamp(self.created_at)}


@dataclass(frozen=True)
class FsmEventRecord:
  """Immutable audit event."""

  event_id: str
  entity_id: str
  event_type: str
  old_state: str | None
  new_state: str | None
  created_by: str
  user_id: str | None
  event_data: dict[str, Any]
  created_at: datetime
