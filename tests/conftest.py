"""Shared fixtures: a throwaway SQLite database and repository/service wiring."""

from __future__ import annotations

import os
from typing import Any

# Keep the API process from starting a worker or touching a real database.
os.environ["COURSEGEN_WORKER_EMBEDDED"] = "0"

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

import coursegen.schema  # noqa: E402,F401
from coursegen.api.deps import get_session_factory_dep  # noqa: E402
from coursegen.core.database import Base  # noqa: E402
from coursegen.fsm.pipeline import Initiator  # noqa: E402
from coursegen.main import app  # noqa: E402
from coursegen.services.generation import GenerationService  # noqa: E402
from coursegen.services.idempotency import IdempotencyStore  # noqa: E402
from coursegen.storage.postgres_generation_repo import PostgresGenerationRepository  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
async def engine(tmp_path):
  db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'coursegen.db'}", connect_args={"timeout": 30})

  # SQLite only serializes writers reliably when every transaction takes the write lock up front.
  @event.listens_for(db_engine.sync_engine, "connect")
  def _disable_implicit_begin(dbapi_connection: Any, _record: Any) -> None:
    dbapi_connection.isolation_level = None

  @event.listens_for(db_engine.sync_engine, "begin")
  def _begin_immediate(conn: Any) -> None:
    conn.exec_driver_sql("BEGIN IMMEDIATE")

  async with db_engine.begin() as conn:
    await conn.run_sync(Base.metadata.create_all)
  yield db_engine
  await db_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
  return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
def repo(session_factory) -> PostgresGenerationRepository:
  return PostgresGenerationRepository(session_factory, default_max_attempts=3)


@pytest.fixture
def store(session_factory) -> IdempotencyStore:
  return IdempotencyStore(session_factory, ttl_seconds=3600, wait_seconds=0.01)


@pytest.fixture
def service(repo, store) -> GenerationService:
  return GenerationService(repo=repo, store=store)


@pytest.fixture
def start_course(service):
  """Create a course at the first stage with its first job queued."""

  async def _start(course_id: str = "course-1", *, key: str | None = None, organization_id: str = "org-1", metadata: dict[str, Any] | None = None, **overrides: Any) -> dict[str, Any]:
    request = service.start_request(
      entity_id=course_id,
      user_id="user-1",
      organization_id=organization_id,
      idempotency_key=key or f"start-{course_id}",
      initiated_by=Initiator.API,
      metadata=metadata if metadata is not None else {"topic": "Intro to Python"},
      create_if_missing=True,
      title="Intro to Python",
      **overrides,
    )
    return await service.initialize(request)

  return _start


@pytest.fixture
async def async_client(session_factory):
  app.dependency_overrides[get_session_factory_dep] = lambda: session_factory
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
    yield client
  app.dependency_overrides.clear()
