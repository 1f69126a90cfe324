"""Shared FastAPI dependencies."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coursegen.config import Settings, get_settings
from coursegen.core.database import require_session_factory
from coursegen.services.generation import GenerationService
from coursegen.services.idempotency import IdempotencyStore
from coursegen.storage.postgres_generation_repo import PostgresGenerationRepository


@dataclass(frozen=True)
class Caller:
  """Identity asserted by the upstream gateway; authentication happens before this service."""

  user_id: str
  organization_id: str


async def get_caller(x_user_id: str | None = Header(default=None), x_organization_id: str | None = Header(default=None)) -> Caller:
  if not x_user_id or not x_organization_id:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id and X-Organization-Id headers are required")
  return Caller(user_id=x_user_id.strip(), organization_id=x_organization_id.strip())


def get_session_factory_dep() -> async_sessionmaker[AsyncSession]:
  """Session factory dependency; tests override it with a local database."""
  return require_session_factory()


def get_generation_service(
  settings: Settings = Depends(get_settings),  # noqa: B008
  session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory_dep),  # noqa: B008
) -> GenerationService:
  repo = PostgresGenerationRepository(session_factory, default_max_attempts=settings.worker_max_attempts)
  store = IdempotencyStore(session_factory, ttl_seconds=settings.idempotency_ttl_seconds)
  return GenerationService(repo=repo, store=store)
