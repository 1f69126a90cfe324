from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from coursegen.config import get_database_settings

# JSONB on Postgres, plain JSON elsewhere (local tooling and tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
  pass


engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


def _database_url() -> str | None:
  """Build the SQLAlchemy database URL while keeping settings evaluation minimal."""
  settings = get_database_settings()
  database_url = settings.pg_dsn
  if database_url and database_url.startswith("postgresql://"):
    database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

  return database_url


def get_db_engine() -> AsyncEngine | None:
  global engine
  settings = get_database_settings()
  database_url = _database_url()
  if engine is None and database_url:
    connect_args = {"timeout": settings.pg_connect_timeout} if database_url.startswith("postgresql+asyncpg://") else {}
    engine = create_async_engine(database_url, echo=settings.debug, pool_pre_ping=True, connect_args=connect_args)
  return engine


def get_session_factory() -> async_sessionmaker[AsyncSession] | None:
  global SessionLocal
  if SessionLocal is None:
    db_engine = get_db_engine()
    if db_engine:
      SessionLocal = async_sessionmaker(bind=db_engine, expire_on_commit=False, class_=AsyncSession)
  return SessionLocal


def require_session_factory() -> async_sessionmaker[AsyncSession]:
  """Return the configured session factory or fail loudly."""
  session_factory = get_session_factory()
  if session_factory is None:
    raise RuntimeError("Database connection is not configured (COURSEGEN_PG_DSN is missing).")
  return session_factory


async def get_db() -> AsyncGenerator[AsyncSession]:
  """Dependency to get a database session."""
  session_factory = require_session_factory()
  async with session_factory() as session:
    try:
      yield session
    finally:
      await session.close()


async def dispose_engine() -> None:
  """Release pooled connections on shutdown."""
  global engine, SessionLocal
  if engine is not None:
    await engine.dispose()
  engine = None
  SessionLocal = None
