from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from coursegen.core.database import Base, JsonType
from coursegen.schema.courses import utcnow


class JobOutbox(Base):
  """Durable job row written in the same transaction as the state change that spawned it."""

  __tablename__ = "job_outbox"
  __table_args__ = (
    # At most one unprocessed entry per queue per entity.
    Index("ux_job_outbox_entity_queue_pending", "entity_id", "queue_name", unique=True, postgresql_where=text("processed_at IS NULL"), sqlite_where=text("processed_at IS NULL")),
    Index("ix_job_outbox_claimable", "queue_name", "priority", "created_at", postgresql_where=text("processed_at IS NULL"), sqlite_where=text("processed_at IS NULL")),
    CheckConstraint("attempts >= 0", name="ck_job_outbox_attempts_non_negative"),
  )

  outbox_id: Mapped[str] = mapped_column(String, primary_key=True)
  entity_id: Mapped[str] = mapped_column(ForeignKey("courses.id", ondelete="CASCADE"), nullable=False, index=True)
  queue_name: Mapped[str] = mapped_column(String, nullable=False)
  job_data: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
  job_options: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
  priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
  attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
  claimed_by: Mapped[str | None] = mapped_column(String, nullable=True)
  lease_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  outcome: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
  processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)


class IdempotencyKey(Base):
  """Cached result of an idempotent operation keyed by (key, scope)."""

  __tablename__ = "idempotency_keys"
  __table_args__ = (
    UniqueConstraint("key", "scope", name="ux_idempotency_keys_key_scope"),
    CheckConstraint("length(key) >= 8", name="ck_idempotency_keys_key_length"),
  )

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  key: Mapped[str] = mapped_column(String, nullable=False)
  scope: Mapped[str] = mapped_column(String, nullable=False)
  request_fingerprint: Mapped[str | None] = mapped_column(String, nullable=True)
  # Canonical JSON text so replays are byte-identical regardless of JSONB key ordering.
  response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
  entity_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
  expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class FsmEvent(Base):
  """Append-only audit record of state transitions and job lifecycle events."""

  __tablename__ = "fsm_events"
  __table_args__ = (CheckConstraint("created_by IN ('API', 'QUEUE', 'WORKER')", name="ck_fsm_events_created_by"),)

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  event_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  entity_id: Mapped[str] = mapped_column(ForeignKey("courses.id", ondelete="CASCADE"), nullable=False, index=True)
  event_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
  old_state: Mapped[str | None] = mapped_column(String, nullable=True)
  new_state: Mapped[str | None] = mapped_column(String, nullable=True)
  event_data: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
  created_by: Mapped[str] = mapped_column(String, nullable=False)
  user_id: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
