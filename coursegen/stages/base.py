"""Runtime context handed to stage handlers by the worker."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel

from coursegen.ai.cost import summarize_usage
from coursegen.ai.providers.base import AIModel
from coursegen.ai.repair import ALL_LAYERS, RepairCascade, RepairExhausted, RepairLayer, RepairOptions, parse_structured_output
from coursegen.fsm.pipeline import Initiator, StageDefinition
from coursegen.fsm.validator import is_terminal
from coursegen.jobs.models import ClaimedJob
from coursegen.quality.gate import GeneratedArtifact, QualityGate, QualityGateFailed, QualityReport, QualityVerdict, Requirements
from coursegen.services.model_routing import Criticality, ModelRouter
from coursegen.storage.generation_repo import CourseStateRecord
from coursegen.storage.postgres_generation_repo import PostgresGenerationRepository

ModelT = TypeVar("ModelT", bound=BaseModel)

logger = logging.getLogger(__name__)


class GenerationCancelled(RuntimeError):
  """The course left its in-progress state while a handler was still working on it."""

  def __init__(self, course_id: str, state: str | None) -> None:
    self.course_id = course_id
    self.state = state
    super().__init__(f"Course {course_id} is {state}; abandoning in-flight work")


class PermanentStageError(RuntimeError):
  """A stage failure that retrying cannot fix (bad input, missing prerequisite results)."""


class ModelSource(Protocol):
  def get(self, model_id: str) -> AIModel:
    """Return a model client for the id."""


@dataclass
class StageContext:
  """Everything a stage handler may touch: the course snapshot, AI collaborators and the audit log."""

  job: ClaimedJob
  course: CourseStateRecord
  stage: StageDefinition | None
  repo: PostgresGenerationRepository
  cascade: RepairCascade
  gate: QualityGate | None
  router: ModelRouter
  models: ModelSource
  enabled_layers: tuple[RepairLayer, ...] = ALL_LAYERS
  max_retries: int = 2
  repair_log: list[dict[str, Any]] = field(default_factory=list)
  usage: list[dict[str, Any]] = field(default_factory=list)
  quality_reports: list[dict[str, Any]] = field(default_factory=list)
  generations: int = 0

  @property
  def stage_name(self) -> str:
    return self.stage.name if self.stage else self.job.queue_name

  @property
  def metadata(self) -> dict[str, Any]:
    return dict(self.job.job_data.get("metadata") or {})

  async def ensure_not_cancelled(self) -> None:
    """Re-read the course and abort when it was cancelled (or otherwise ended) underneath us."""
    record = await self.repo.get_course_state(self.course.entity_id)
    state = record.state if record else None
    if record is None or is_terminal(state):
      raise GenerationCancelled(self.course.entity_id, state)

  def stage_result(self, stage_name: str) -> dict[str, Any]:
    """Return a prior stage's stored output or fail permanently when it is missing."""
    result = self.course.stage_results.get(stage_name)
    if not isinstance(result, dict) or "output" not in result:
      raise PermanentStageError(f"Stage '{self.stage_name}' requires the output of '{stage_name}', which is missing")
    return result["output"]

  def _optional_model(self, model_id: str | None) -> AIModel | None:
    if not model_id:
      return None
    try:
      return self.models.get(model_id)
    except ValueError as exc:
      # Missing credentials for a fallback model: the cascade records the layer as skipped.
      logger.warning("Repair model %s unavailable: %s", model_id, exc)
      return None

  def repair_options(self, *, model: AIModel, prompt: str, criticality: Criticality) -> RepairOptions:
    route = self.router.resolve(self.stage_name, criticality)
    escalation = tuple(candidate for candidate in (self._optional_model(model_id) for model_id in route.escalation) if candidate is not None)
    return RepairOptions(enabled_layers=self.enabled_layers, max_retries=self.max_retries, model=model, original_prompt=prompt, escalation_models=escalation, emergency_model=self._optional_model(route.emergency))

  async def generate_validated(
    self,
    *,
    prompt: str,
    schema: type[ModelT],
    criticality: Criticality = Criticality.STANDARD,
    artifact: Callable[[ModelT], GeneratedArtifact] | None = None,
    requirements: Requirements | None = None,
    purpose: str | None = None,
  ) -> ModelT:
    """Generate, validate through the repair cascade and score against the quality gate."""
    await self.ensure_not_cancelled()
    route = self.router.resolve(self.stage_name, criticality)
    model = self.models.get(route.primary)
    response = await model.generate(prompt)
    self.generations += 1
    if response.usage:
      self.usage.append({"provider": model.provider, "model": model.name, **response.usage})

    options = self.repair_options(model=model, prompt=prompt, criticality=criticality)
    outcome = await parse_structured_output(response.content, schema, self.cascade, options)
    self._record_repair(purpose, outcome.to_metadata(), outcome.usage_entries())
    data = outcome.data

    if self.gate is not None and artifact is not None and requirements is not None:
      data = await self._apply_quality_gate(self.gate, data, schema, options, artifact, requirements, purpose)

    await self.ensure_not_cancelled()
    return data

  async def _apply_quality_gate(self, gate: QualityGate, data: ModelT, schema: type[ModelT], options: RepairOptions, artifact: Callable[[ModelT], GeneratedArtifact], requirements: Requirements, purpose: str | None) -> ModelT:
    report = await gate.score(artifact(data), requirements, self.course.language)
    if report.verdict is QualityVerdict.FAIL:
      latest: list[QualityReport] = [report]

      async def _quality_check(candidate: ModelT) -> Sequence[str]:
        candidate_report = await gate.score(artifact(candidate), requirements, self.course.language)
        latest.append(candidate_report)
        return candidate_report.issues() if candidate_report.verdict is QualityVerdict.FAIL else []

      logger.info("Quality gate failed for %s (%.3f < %.3f); invoking repair cascade", self.stage_name, report.overall, report.threshold)
      quality_options = RepairOptions(
        enabled_layers=options.enabled_layers,
        max_retries=options.max_retries,
        model=options.model,
        original_prompt=options.original_prompt,
        escalation_models=options.escalation_models,
        emergency_model=options.emergency_model,
        quality_check=_quality_check,
        parse_error="; ".join(report.issues()),
      )
      try:
        outcome = await self.cascade.repair(json.dumps(data.model_dump(mode="json"), ensure_ascii=False), schema, quality_options)
      except RepairExhausted as exc:
        if exc.all_transient:
          raise
        raise QualityGateFailed(latest[-1]) from exc
      self._record_repair(f"{purpose or self.stage_name}:quality", outcome.to_metadata(), outcome.usage_entries())
      data = outcome.data
      report = latest[-1]

    self.quality_reports.append({"purpose": purpose, **report.to_dict()})
    if report.verdict is QualityVerdict.WARN:
      await self.repo.record_event(entity_id=self.course.entity_id, event_type="quality_gate_warning", initiated_by=Initiator.WORKER, event_data={"stage": self.stage_name, "purpose": purpose, "report": report.to_dict()})
    return data

  def _record_repair(self, purpose: str | None, metadata: dict[str, Any], usage: list[dict[str, Any]]) -> None:
    self.usage.extend(usage)
    if metadata["layer_used"] is not None or metadata["attempts"]:
      self.repair_log.append({"purpose": purpose, **metadata})

  def result_metadata(self, pricing_table: dict[str, Any] | None = None) -> dict[str, Any]:
    """Repair, quality and cost metadata stored alongside the stage output."""
    return {"repair": list(self.repair_log), "quality": list(self.quality_reports), "usage": summarize_usage(self.usage, pricing_table)}
