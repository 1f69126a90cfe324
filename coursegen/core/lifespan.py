import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from coursegen.core.database import dispose_engine, require_session_factory
from coursegen.core.logging import initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging, optionally start the embedded worker, and release the pool on shutdown."""
  from coursegen.config import get_settings
  from coursegen.jobs.runner import build_runner

  settings = get_settings()
  logger = logging.getLogger("coursegen.core.lifespan")
  initialize_logging(settings)
  logger.info("Startup complete - logging verified.")

  runner = None
  runner_task = None
  if settings.worker_embedded:
    runner = build_runner(settings, require_session_factory())
    runner_task = asyncio.create_task(runner.run_forever())
    logger.info("Embedded worker started")
  try:
    yield
  finally:
    if runner is not None and runner_task is not None:
      runner.request_shutdown()
      await asyncio.gather(runner_task, return_exceptions=True)
    await dispose_engine()
