from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from coursegen.config import Settings

_DEFAULT_PRIMARY = "openai/gpt-oss-120b"
_DEFAULT_ESCALATION = ("deepseek/deepseek-r1-0528", "gemini-2.5-pro")
_DEFAULT_EMERGENCY = "gemini-2.5-flash"


class Criticality(str, Enum):
  """How much a stage's output matters; critical stages escalate to stronger models."""

  STANDARD = "standard"
  CRITICAL = "critical"


@dataclass(frozen=True)
class ModelRoute:
  """Model ids for the initial call and the regeneration layers of the repair cascade."""

  primary: str
  escalation: tuple[str, ...] = ()
  emergency: str | None = None


_DEFAULT_ROUTES: dict[tuple[str, Criticality], ModelRoute] = {
  ("summarization", Criticality.STANDARD): ModelRoute(primary=_DEFAULT_PRIMARY, escalation=_DEFAULT_ESCALATION[:1], emergency=_DEFAULT_EMERGENCY),
  ("analysis", Criticality.STANDARD): ModelRoute(primary=_DEFAULT_PRIMARY, escalation=_DEFAULT_ESCALATION, emergency=_DEFAULT_EMERGENCY),
  ("structure_generation", Criticality.CRITICAL): ModelRoute(primary="gemini-2.5-pro", escalation=("deepseek/deepseek-r1-0528",), emergency=_DEFAULT_EMERGENCY),
  ("lesson_content", Criticality.STANDARD): ModelRoute(primary=_DEFAULT_PRIMARY, escalation=_DEFAULT_ESCALATION, emergency=_DEFAULT_EMERGENCY),
}


def _parse_route(raw: Any, *, key: str) -> ModelRoute:
  if isinstance(raw, str):
    return ModelRoute(primary=raw)
  if not isinstance(raw, Mapping) or not raw.get("primary"):
    raise ValueError(f"Model route '{key}' must be a model id or an object with a 'primary' model.")
  escalation = raw.get("escalation") or ()
  if isinstance(escalation, str):
    escalation = (escalation,)
  return ModelRoute(primary=str(raw["primary"]), escalation=tuple(str(model) for model in escalation), emergency=str(raw["emergency"]) if raw.get("emergency") else None)


def _parse_key(raw_key: str) -> tuple[str, Criticality]:
  """Route keys are '<stage>' or '<stage>:<criticality>'."""
  stage, _, criticality = raw_key.partition(":")
  return stage.strip(), Criticality((criticality or Criticality.STANDARD.value).strip().lower())


class ModelRouter:
  """Explicit (stage, criticality) -> ModelRoute table with environment overrides."""

  def __init__(self, routes: Mapping[tuple[str, Criticality], ModelRoute] | None = None, *, default: ModelRoute | None = None) -> None:
    self._routes = dict(_DEFAULT_ROUTES if routes is None else routes)
    self._default = default or ModelRoute(primary=_DEFAULT_PRIMARY, escalation=_DEFAULT_ESCALATION, emergency=_DEFAULT_EMERGENCY)

  @classmethod
  def from_settings(cls, settings: Settings) -> ModelRouter:
    routes = dict(_DEFAULT_ROUTES)
    default = None
    for raw_key, raw_route in (settings.model_routes or {}).items():
      if raw_key == "default":
        default = _parse_route(raw_route, key=raw_key)
        continue
      routes[_parse_key(raw_key)] = _parse_route(raw_route, key=raw_key)
    return cls(routes, default=default)

  def resolve(self, stage: str, criticality: Criticality = Criticality.STANDARD) -> ModelRoute:
    """Return the most specific route: exact match, then the stage's standard route, then the default."""
    route = self._routes.get((stage, criticality))
    if route is None and criticality is not Criticality.STANDARD:
      route = self._routes.get((stage, Criticality.STANDARD))
    return route or self._default
