"""Flush-time guards that enforce state-machine and audit-log invariants on every write."""

from __future__ import annotations

from typing import Any

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from coursegen.fsm.validator import validate_transition
from coursegen.schema.courses import Course
from coursegen.schema.outbox import FsmEvent


class AuditLogViolation(RuntimeError):
  """Raised when code attempts to mutate or delete an FSM event row."""


@event.listens_for(Session, "before_flush")
def _guard_state_writes(session: Session, flush_context: Any, instances: Any) -> None:
  """Reject illegal generation_status changes and audit-log mutations before they reach the database."""
  _ = (flush_context, instances)
  for obj in session.new:
    if isinstance(obj, Course) and obj.generation_status is not None:
      validate_transition(None, obj.generation_status)

  for obj in session.dirty:
    if isinstance(obj, Course):
      history = inspect(obj).attrs.generation_status.history
      if history.added:
        old_state = history.deleted[0] if history.deleted else None
        validate_transition(old_state, history.added[0])
      continue
    if isinstance(obj, FsmEvent) and session.is_modified(obj):
      raise AuditLogViolation(f"FSM event {obj.event_id} is append-only and cannot be modified.")

  for obj in session.deleted:
    if isinstance(obj, FsmEvent):
      raise AuditLogViolation(f"FSM event {obj.event_id} is append-only and cannot be deleted.")
