from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from coursegen import __version__
from coursegen.api.routes import generation, worker
from coursegen.config import get_settings
from coursegen.core.exceptions import register_exception_handlers
from coursegen.core.lifespan import lifespan

settings = get_settings()

app = FastAPI(title="coursegen", version=__version__, lifespan=lifespan, docs_url=None, redoc_url=None)

if settings.allowed_origins:
  app.add_middleware(CORSMiddleware, allow_origins=list(settings.allowed_origins), allow_credentials=True, allow_methods=["GET", "POST", "OPTIONS"], allow_headers=["content-type", "idempotency-key", "x-user-id", "x-organization-id"])

register_exception_handlers(app)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": __version__}


app.include_router(generation.router, prefix="/v1/courses", tags=["generation"])
app.include_router(worker.router, prefix="/worker", tags=["worker"])
