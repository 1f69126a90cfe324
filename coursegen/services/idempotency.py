"""Idempotency store backed by a unique (key, scope) constraint."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import msgspec
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coursegen.schema.outbox import IdempotencyKey
from coursegen.storage.generation_repo import as_utc

logger = logging.getLogger(__name__)

MIN_KEY_LENGTH = 8

ComputeFn = Callable[[AsyncSession], Awaitable[dict[str, Any]]]


class IdempotencyKeyReuseError(ValueError):
  """Raised when a key is replayed with a payload that differs from the recorded one."""

  def __init__(self, key: str, scope: str) -> None:
    self.key = key
    self.scope = scope
    super().__init__(f"Idempotency key '{key}' was already used in scope '{scope}' with a different request payload.")


class IdempotencyConflictError(RuntimeError):
  """Raised when a concurrent holder of the key never produced a readable result."""


def canonical_json(value: Any) -> bytes:
  """Encode a value as sorted-key JSON so equivalent payloads produce identical bytes."""
  return msgspec.json.encode(value, order="sorted")


def fingerprint(payload: Any) -> str:
  """Return a stable SHA-256 digest of a request payload."""
  return hashlib.sha256(canonical_json(payload)).hexdigest()


class _KeyAlreadyClaimed(Exception):
  """Internal signal that the placeholder insert lost the unique-constraint race."""


class IdempotencyStore:
  """Resolve (key, scope) to a cached result, running compute_fn at most once per key.

  The placeholder insert and compute_fn share one transaction. Concurrent callers with the same key
  block on the unique index until the first writer commits, then observe its row and re-read the
  stored result instead of recomputing. A compute_fn failure rolls back the placeholder too, so
  failures are never cached.
  """

  def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, ttl_seconds: int = 86400, max_wait_attempts: int = 20, wait_seconds: float = 0.05) -> None:
    self._session_factory = session_factory
    self._ttl = timedelta(seconds=ttl_seconds)
    self._max_wait_attempts = max_wait_attempts
    self._wait_seconds = wait_seconds

  async def resolve(self, key: str, scope: str, compute_fn: ComputeFn, *, request_fingerprint: str | None = None, entity_id: str | None = None) -> dict[str, Any]:
    """Return the recorded result for (key, scope), computing and persisting it on first use."""
    if len(key or "") < MIN_KEY_LENGTH:
      raise ValueError(f"Idempotency key must be at least {MIN_KEY_LENGTH} characters.")

    for attempt in range(1, self._max_wait_attempts + 1):
      cached = await self._lookup(key, scope, request_fingerprint=request_fingerprint)
      if cached is not None:
        logger.info("Idempotent replay for key=%s scope=%s", key, scope)
        return cached

      try:
        return await self._compute_and_store(key, scope, compute_fn, request_fingerprint=request_fingerprint, entity_id=entity_id)
      except _KeyAlreadyClaimed:
        # Another caller committed first; loop back and read its result.
        logger.info("Idempotency key %s/%s claimed concurrently; re-reading (attempt %d/%d)", key, scope, attempt, self._max_wait_attempts)
        await asyncio.sleep(self._wait_seconds * attempt)

    raise IdempotencyConflictError(f"Idempotency key '{key}' in scope '{scope}' is held by another request that has not produced a result.")

  async def _lookup(self, key: str, scope: str, *, request_fingerprint: str | None) -> dict[str, Any] | None:
    async with self._session_factory() as session:
      stmt = select(IdempotencyKey).where(IdempotencyKey.key == key, IdempotencyKey.scope == scope)
      record = (await session.execute(stmt)).scalar_one_or_none()
    if record is None or record.response_body is None:
      return None
    if as_utc(record.expires_at) <= datetime.now(UTC):
      return None
    if request_fingerprint and record.request_fingerprint and record.request_fingerprint != request_fingerprint:
      raise IdempotencyKeyReuseError(key, scope)
    return msgspec.json.decode(record.response_body)

  async def _compute_and_store(self, key: str, scope: str, compute_fn: ComputeFn, *, request_fingerprint: str | None, entity_id: str | None) -> dict[str, Any]:
    now = datetime.now(UTC)
    async with self._session_factory() as session:
      async with session.begin():
        # Expired rows would otherwise keep the unique slot forever.
        await session.execute(delete(IdempotencyKey).where(IdempotencyKey.key == key, IdempotencyKey.scope == scope, IdempotencyKey.expires_at <= now))
        record = IdempotencyKey(key=key, scope=scope, request_fingerprint=request_fingerprint, response_body=None, entity_id=entity_id, created_at=now, expires_at=now + self._ttl)
        session.add(record)
        try:
          await session.flush()
        except IntegrityError as exc:
          raise _KeyAlreadyClaimed() from exc

        result = await compute_fn(session)
        encoded = canonical_json(result)
        record.response_body = encoded.decode("utf-8")
    # Return the decoded canonical form so first calls and replays are indistinguishable.
    return msgspec.json.decode(encoded)
