"""ORM tables and flush guards."""

from coursegen.schema import guards
from coursegen.schema.courses import Course
from coursegen.schema.outbox import FsmEvent, IdempotencyKey, JobOutbox

__all__ = ["Course", "FsmEvent", "IdempotencyKey", "JobOutbox", "guards"]
