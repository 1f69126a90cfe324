"""Dependency-injected stage handler dispatch."""

from __future__ import annotations

from typing import Any, Protocol

from coursegen.stages.base import StageContext


class StageHandler(Protocol):
  """Handler contract for one queue."""

  async def run(self, ctx: StageContext) -> dict[str, Any]:
    """Execute the stage and return its output for stage_results."""


class StageHandlerRegistry:
  """Registry mapping queue names to stage handlers."""

  def __init__(self, handlers: dict[str, StageHandler]) -> None:
    self._handlers = dict(handlers)

  def resolve(self, queue_name: str) -> StageHandler:
    """Resolve the handler for a queue."""
    handler = self._handlers.get(queue_name)
    if handler is None:
      raise ValueError(f"Unsupported queue: {queue_name}")
    return handler

  def queue_names(self) -> tuple[str, ...]:
    return tuple(self._handlers)
