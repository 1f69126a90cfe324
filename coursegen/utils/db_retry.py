"""Database failure classification: retryable vs non-retryable."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

_RETRYABLE_SQLSTATES = {"40001": ("serialization_conflict", "Serialization failure - transaction conflict"), "40P01": ("deadlock", "Deadlock detected")}
_CONNECTIVITY_PATTERNS = ("connection", "timeout", "reset", "network", "broken pipe", "lost connection")


@dataclass(frozen=True)
class DBFailureClassification:
  """Classification result for a database failure."""

  retryable: bool
  reason: str
  sqlstate: str | None
  category: str


def _extract_sqlstate(exc: Exception) -> str | None:
  """Extract the Postgres SQLSTATE from a SQLAlchemy exception."""
  if not isinstance(exc, DBAPIError):
    return None
  original = getattr(exc, "orig", None)
  # asyncpg exposes sqlstate, psycopg exposes pgcode.
  for attribute in ("sqlstate", "pgcode"):
    value = getattr(original, attribute, None)
    if value:
      return str(value)
  return None


def classify_db_failure(exc: Exception) -> DBFailureClassification:
  """
  Classify a database failure as retryable or non-retryable.

  Primary signal: Postgres SQLSTATE. Fallback: exception type and message patterns.

  Retryable: 40001 serialization failure, 40P01 deadlock, dropped connections.
  Everything else (integrity violations, schema errors, permissions, programming errors) is permanent.
  """
  sqlstate = _extract_sqlstate(exc)

  if sqlstate in _RETRYABLE_SQLSTATES:
    category, reason = _RETRYABLE_SQLSTATES[sqlstate]
    return DBFailureClassification(retryable=True, reason=reason, sqlstate=sqlstate, category=category)

  if sqlstate and sqlstate.startswith("23") or isinstance(exc, IntegrityError):
    return DBFailureClassification(retryable=False, reason="Integrity constraint violation", sqlstate=sqlstate, category="integrity_error")

  if sqlstate and sqlstate.startswith("42"):
    return DBFailureClassification(retryable=False, reason="Schema/SQL error (undefined table/column, syntax error)", sqlstate=sqlstate, category="schema_error")

  if sqlstate and sqlstate.startswith("28"):
    return DBFailureClassification(retryable=False, reason="Authentication/permission error", sqlstate=sqlstate, category="permission_error")

  if isinstance(exc, OperationalError):
    error_msg = str(exc).lower()
    if any(pattern in error_msg for pattern in _CONNECTIVITY_PATTERNS):
      return DBFailureClassification(retryable=True, reason="Transient connection/network error", sqlstate=sqlstate, category="connectivity_error")
    return DBFailureClassification(retryable=False, reason="Operational error (unknown cause)", sqlstate=sqlstate, category="operational_error_unknown")

  return DBFailureClassification(retryable=False, reason=f"Unknown error type: {type(exc).__name__}", sqlstate=sqlstate, category="unknown_error")
