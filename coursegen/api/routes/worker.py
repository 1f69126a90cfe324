from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from coursegen.config import Settings, get_settings
from coursegen.jobs.metrics import WORKER_METRICS
from coursegen.jobs.runner import WORKER_HEALTH

router = APIRouter()


@router.get("/health")
async def worker_health(settings: Settings = Depends(get_settings)) -> JSONResponse:  # noqa: B008
  """Liveness of the worker embedded in this process; 503 when it has gone quiet."""
  snapshot: dict[str, Any] = {"embedded": settings.worker_embedded, **WORKER_HEALTH.snapshot(settings.worker_health_window_seconds)}
  code = status.HTTP_200_OK if snapshot["alive"] else status.HTTP_503_SERVICE_UNAVAILABLE
  return JSONResponse(status_code=code, content=snapshot)


@router.get("/metrics")
async def worker_metrics(settings: Settings = Depends(get_settings)) -> dict[str, Any]:  # noqa: B008
  """Per-queue durations, outcomes and repair-layer usage recorded by this process's worker."""
  return {"embedded": settings.worker_embedded, **WORKER_METRICS.snapshot()}
