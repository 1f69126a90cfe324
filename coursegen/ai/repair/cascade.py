"""Five-layer cascade that turns invalid LLM output into a schema-valid result."""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from coursegen.ai.cost import LAYER_TOKEN_ESTIMATES
from coursegen.ai.errors import is_transient_error
from coursegen.ai.field_names import coerce_field_names
from coursegen.ai.json_parser import parse_json_with_fallback, strip_json_fences
from coursegen.ai.providers.base import AIModel, ModelResponse
from coursegen.ai.repair.prompts import render_critique_prompt, render_field_prompt

ModelT = TypeVar("ModelT", bound=BaseModel)
QualityCheck = Callable[[Any], Awaitable[Sequence[str]] | Sequence[str]]

logger = logging.getLogger(__name__)


class RepairLayer(str, Enum):
  """Repair strategies in the order they are attempted."""

  AUTO_REPAIR = "auto_repair"
  CRITIQUE_REVISE = "critique_revise"
  PARTIAL_REGENERATION = "partial_regeneration"
  MODEL_ESCALATION = "model_escalation"
  EMERGENCY_FALLBACK = "emergency_fallback"


ALL_LAYERS: tuple[RepairLayer, ...] = tuple(RepairLayer)


@dataclass(frozen=True)
class RepairOptions:
  """Per-call cascade configuration; callers enable only the layers they can afford."""

  enabled_layers: tuple[RepairLayer, ...] = ALL_LAYERS
  max_retries: int = 2
  model: AIModel | None = None
  original_prompt: str | None = None
  escalation_models: tuple[AIModel, ...] = ()
  emergency_model: AIModel | None = None
  quality_check: QualityCheck | None = None
  parse_error: str | None = None


@dataclass(frozen=True)
class RepairAttempt:
  """One strategy invocation and how it ended."""

  layer: RepairLayer
  attempt: int
  model: str | None
  succeeded: bool
  error: str | None = None
  transient: bool = False
  skipped: bool = False
  usage: dict[str, int] | None = None
  provider: str | None = None

  @property
  def estimated_tokens(self) -> int:
    if self.usage and self.usage.get("total_tokens") is not None:
      return int(self.usage["total_tokens"])
    if self.skipped:
      return 0
    return LAYER_TOKEN_ESTIMATES.get(self.layer.value, 0)

  def to_dict(self) -> dict[str, Any]:
    payload = asdict(self)
    payload["layer"] = self.layer.value
    return payload


@dataclass(frozen=True)
class RepairOutcome(Generic[ModelT]):
  """Validated result; layer_used is None when the raw output was valid as-is."""

  data: ModelT
  layer_used: RepairLayer | None
  attempts: tuple[RepairAttempt, ...] = field(default_factory=tuple)

  @property
  def repaired(self) -> bool:
    return self.layer_used is not None

  def usage_entries(self) -> list[dict[str, Any]]:
    return [{"provider": attempt.provider, "model": attempt.model, **(attempt.usage or {})} for attempt in self.attempts if attempt.usage]

  def to_metadata(self) -> dict[str, Any]:
    return {
      "layer_used": self.layer_used.value if self.layer_used else None,
      "attempt_count": len([attempt for attempt in self.attempts if not attempt.skipped]),
      "estimated_tokens": sum(attempt.estimated_tokens for attempt in self.attempts),
      "models_used": sorted({attempt.model for attempt in self.attempts if attempt.model}),
      "attempts": [attempt.to_dict() for attempt in self.attempts],
    }


class RepairExhausted(RuntimeError):
  """Every enabled layer failed to produce a valid result."""

  def __init__(self, attempts: Sequence[RepairAttempt], message: str | None = None) -> None:
    self.attempts = tuple(attempts)
    last_error = next((attempt.error for attempt in reversed(self.attempts) if attempt.error and not attempt.skipped), None)
    super().__init__(message or f"Repair cascade exhausted after {len(self.attempts)} attempts; last error: {last_error}")

  @property
  def all_transient(self) -> bool:
    """True when every real model attempt failed with a transient provider error."""
    model_attempts = [attempt for attempt in self.attempts if attempt.model and not attempt.skipped]
    return bool(model_attempts) and all(attempt.transient for attempt in model_attempts)

  def to_event_data(self) -> dict[str, Any]:
    return {"attempts": [attempt.to_dict() for attempt in self.attempts], "all_transient": self.all_transient}


class OutputRejected(ValueError):
  """A candidate output failed parsing, schema validation or the semantic check."""


def _describe_validation_error(exc: ValidationError) -> str:
  details = [f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}" for error in exc.errors(include_url=False)]
  return "; ".join(details)


async def _run_quality_check(quality_check: QualityCheck | None, data: BaseModel) -> None:
  if quality_check is None:
    return
  issues = quality_check(data)
  if inspect.isawaitable(issues):
    issues = await issues
  issues = list(issues or [])
  if issues:
    raise OutputRejected("semantic check failed: " + "; ".join(str(issue) for issue in issues))


async def validate_strict(raw_text: str, schema: type[ModelT], quality_check: QualityCheck | None = None) -> ModelT:
  """Validate raw model text exactly as produced, with no repairs."""
  try:
    data = schema.model_validate_json(raw_text)
  except ValidationError as exc:
    raise OutputRejected(_describe_validation_error(exc)) from exc
  await _run_quality_check(quality_check, data)
  return data


async def validate_lenient(raw_text: str, schema: type[ModelT], quality_check: QualityCheck | None = None) -> ModelT:
  """Deterministic structural repair followed by full validation."""
  try:
    parsed = parse_json_with_fallback(raw_text)
  except json.JSONDecodeError as exc:
    raise OutputRejected(f"invalid JSON: {exc}") from exc
  try:
    data = schema.model_validate(coerce_field_names(parsed, schema))
  except ValidationError as exc:
    raise OutputRejected(_describe_validation_error(exc)) from exc
  await _run_quality_check(quality_check, data)
  return data


class RepairCascade:
  """Run enabled repair layers top-down until one yields a valid result."""

  def __init__(self) -> None:
    self._layers = {
      RepairLayer.AUTO_REPAIR: self._auto_repair,
      RepairLayer.CRITIQUE_REVISE: self._critique_revise,
      RepairLayer.PARTIAL_REGENERATION: self._partial_regeneration,
      RepairLayer.MODEL_ESCALATION: self._model_escalation,
      RepairLayer.EMERGENCY_FALLBACK: self._emergency_fallback,
    }

  async def repair(self, raw_text: str, schema: type[ModelT], options: RepairOptions) -> RepairOutcome[ModelT]:
    """Return the first valid result or raise RepairExhausted with the full attempt history."""
    attempts: list[RepairAttempt] = []
    for layer in ALL_LAYERS:
      if layer not in options.enabled_layers:
        continue
      data = await self._layers[layer](raw_text, schema, options, attempts)
      if data is not None:
        logger.info("Repair cascade succeeded at layer %s after %d attempts", layer.value, len(attempts))
        return RepairOutcome(data=data, layer_used=layer, attempts=tuple(attempts))

    logger.warning("Repair cascade exhausted for %s after %d attempts", schema.__name__, len(attempts))
    raise RepairExhausted(attempts)

  async def _auto_repair(self, raw_text: str, schema: type[ModelT], options: RepairOptions, attempts: list[RepairAttempt]) -> ModelT | None:
    try:
      data = await validate_lenient(raw_text, schema, options.quality_check)
    except OutputRejected as exc:
      attempts.append(RepairAttempt(layer=RepairLayer.AUTO_REPAIR, attempt=1, model=None, succeeded=False, error=str(exc)))
      return None
    attempts.append(RepairAttempt(layer=RepairLayer.AUTO_REPAIR, attempt=1, model=None, succeeded=True))
    return data

  async def _critique_revise(self, raw_text: str, schema: type[ModelT], options: RepairOptions, attempts: list[RepairAttempt]) -> ModelT | None:
    if options.model is None:
      attempts.append(RepairAttempt(layer=RepairLayer.CRITIQUE_REVISE, attempt=0, model=None, succeeded=False, error="no model configured", skipped=True))
      return None

    current_output = raw_text
    error = _last_error(attempts) or options.parse_error
    json_schema = schema.model_json_schema()
    for attempt in range(1, options.max_retries + 1):
      prompt = render_critique_prompt(original_prompt=options.original_prompt, invalid_output=current_output, error=error, json_schema=json_schema)
      response = await self._call(RepairLayer.CRITIQUE_REVISE, attempt, options.model, prompt, attempts)
      if response is None:
        return None
      data, error = await self._accept(RepairLayer.CRITIQUE_REVISE, attempt, options.model, response, schema, options, attempts)
      if data is not None:
        return data
      current_output = response.content
    return None

  async def _partial_regeneration(self, raw_text: str, schema: type[ModelT], options: RepairOptions, attempts: list[RepairAttempt]) -> ModelT | None:
    layer = RepairLayer.PARTIAL_REGENERATION
    if options.model is None:
      attempts.append(RepairAttempt(layer=layer, attempt=0, model=None, succeeded=False, error="no model configured", skipped=True))
      return None

    # Start from the output as first generated; its schema-valid fields are kept verbatim and critique revisions are not reused.
    try:
      parsed = coerce_field_names(parse_json_with_fallback(raw_text), schema)
    except json.JSONDecodeError as exc:
      attempts.append(RepairAttempt(layer=layer, attempt=0, model=options.model.name, succeeded=False, error=f"no parseable fields to preserve: {exc}", skipped=True))
      return None
    if not isinstance(parsed, dict):
      attempts.append(RepairAttempt(layer=layer, attempt=0, model=options.model.name, succeeded=False, error="output is not a JSON object", skipped=True))
      return None

    working = dict(parsed)
    json_schema = schema.model_json_schema()
    properties = json_schema.get("properties", {})
    definitions = json_schema.get("$defs", {})
    for attempt in range(1, options.max_retries + 1):
      failing = _failing_fields(working, schema)
      if failing is None:
        attempts.append(RepairAttempt(layer=layer, attempt=attempt, model=options.model.name, succeeded=False, error="schema-valid output failed the semantic check; no field-level errors to regenerate", skipped=True))
        return None

      for field_name, field_error in failing.items():
        if field_name not in properties:
          # Unknown key rejected by the schema: drop it rather than regenerate it.
          working.pop(field_name, None)
          continue
        kept = {key: value for key, value in working.items() if key not in failing}
        prompt = render_field_prompt(original_prompt=options.original_prompt, field_name=field_name, field_schema=properties[field_name], definitions=definitions, kept_fields=kept, error=field_error)
        response = await self._call(layer, attempt, options.model, prompt, attempts)
        if response is None:
          return None
        try:
          value = parse_json_with_fallback(response.content)
        except json.JSONDecodeError as exc:
          attempts.append(RepairAttempt(layer=layer, attempt=attempt, model=options.model.name, succeeded=False, error=f"field {field_name}: invalid JSON: {exc}", usage=response.usage, provider=options.model.provider))
          continue
        if isinstance(value, dict) and set(value) == {field_name}:
          value = value[field_name]
        working[field_name] = value

      try:
        data = schema.model_validate(working)
        await _run_quality_check(options.quality_check, data)
      except ValidationError as exc:
        attempts.append(RepairAttempt(layer=layer, attempt=attempt, model=options.model.name, succeeded=False, error=_describe_validation_error(exc)))
        continue
      except OutputRejected as exc:
        attempts.append(RepairAttempt(layer=layer, attempt=attempt, model=options.model.name, succeeded=False, error=str(exc)))
        return None
      attempts.append(RepairAttempt(layer=layer, attempt=attempt, model=options.model.name, succeeded=True, provider=options.model.provider))
      return data
    return None

  async def _model_escalation(self, raw_text: str, schema: type[ModelT], options: RepairOptions, attempts: list[RepairAttempt]) -> ModelT | None:
    _ = raw_text
    return await self._regenerate(RepairLayer.MODEL_ESCALATION, options.escalation_models, schema, options, attempts)

  async def _emergency_fallback(self, raw_text: str, schema: type[ModelT], options: RepairOptions, attempts: list[RepairAttempt]) -> ModelT | None:
    _ = raw_text
    models = (options.emergency_model,) if options.emergency_model is not None else ()
    return await self._regenerate(RepairLayer.EMERGENCY_FALLBACK, models, schema, options, attempts)

  async def _regenerate(self, layer: RepairLayer, models: Sequence[AIModel], schema: type[ModelT], options: RepairOptions, attempts: list[RepairAttempt]) -> ModelT | None:
    """Re-run the original task (not a fix) on each model in turn."""
    if not options.original_prompt or not models:
      reason = "no original prompt" if not options.original_prompt else "no model configured"
      attempts.append(RepairAttempt(layer=layer, attempt=0, model=None, succeeded=False, error=reason, skipped=True))
      return None

    for attempt, model in enumerate(models, start=1):
      response = await self._call(layer, attempt, model, options.original_prompt, attempts)
      if response is None:
        continue
      data, _error = await self._accept(layer, attempt, model, response, schema, options, attempts)
      if data is not None:
        return data
    return None

  async def _call(self, layer: RepairLayer, attempt: int, model: AIModel, prompt: str, attempts: list[RepairAttempt]) -> ModelResponse | None:
    """Invoke a model, recording provider failures as attempts instead of raising."""
    try:
      return await model.generate(prompt)
    except Exception as exc:  # noqa: BLE001
      transient = is_transient_error(exc)
      logger.warning("Repair layer %s model %s failed (transient=%s): %s", layer.value, model.name, transient, exc)
      attempts.append(RepairAttempt(layer=layer, attempt=attempt, model=model.name, succeeded=False, error=f"{type(exc).__name__}: {exc}", transient=transient, provider=model.provider))
      return None

  async def _accept(self, layer: RepairLayer, attempt: int, model: AIModel, response: ModelResponse, schema: type[ModelT], options: RepairOptions, attempts: list[RepairAttempt]) -> tuple[ModelT | None, str | None]:
    """Validate a model response through auto-repair and record the outcome."""
    try:
      data = await validate_lenient(response.content, schema, options.quality_check)
    except OutputRejected as exc:
      attempts.append(RepairAttempt(layer=layer, attempt=attempt, model=model.name, succeeded=False, error=str(exc), usage=response.usage, provider=model.provider))
      return None, str(exc)
    attempts.append(RepairAttempt(layer=layer, attempt=attempt, model=model.name, succeeded=True, usage=response.usage, provider=model.provider))
    return data, None


def _last_error(attempts: Sequence[RepairAttempt]) -> str | None:
  for attempt in reversed(attempts):
    if attempt.error and not attempt.skipped:
      return attempt.error
  return None


def _failing_fields(working: dict[str, Any], schema: type[BaseModel]) -> dict[str, str] | None:
  """Map top-level field names to their validation error, or None when the object validates."""
  try:
    schema.model_validate(working)
  except ValidationError as exc:
    failing: dict[str, str] = {}
    for error in exc.errors(include_url=False):
      if not error["loc"]:
        continue
      name = str(error["loc"][0])
      failing.setdefault(name, error["msg"])
    return failing
  return None


async def parse_structured_output(raw_text: str, schema: type[ModelT], cascade: RepairCascade, options: RepairOptions) -> RepairOutcome[ModelT]:
  """Single entry point for LLM structured output: strict validation, then the cascade."""
  try:
    data = await validate_strict(strip_json_fences(raw_text), schema, options.quality_check)
  except OutputRejected as exc:
    logger.info("Structured output for %s rejected (%s); invoking repair cascade", schema.__name__, exc)
    return await cascade.repair(raw_text, schema, replace(options, parse_error=options.parse_error or str(exc)))
  return RepairOutcome(data=data, layer_used=None, attempts=())
