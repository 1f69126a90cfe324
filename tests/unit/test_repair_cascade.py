"""Unit tests for the structured-output repair cascade."""

from __future__ import annotations

import json

import pytest
from pydantic import BaseModel, ConfigDict, Field

from coursegen.ai.repair import RepairCascade, RepairExhausted, RepairLayer, RepairOptions, parse_structured_output
from tests.fakes import FakeModel


class Outline(BaseModel):
  model_config = ConfigDict(extra="forbid")

  title: str = Field(min_length=1)
  sections: list[str] = Field(min_length=1)


VALID = json.dumps({"title": "Python Basics", "sections": ["Variables", "Loops"]})


@pytest.mark.anyio
async def test_valid_output_skips_the_cascade() -> None:
  model = FakeModel("primary")
  outcome = await parse_structured_output(VALID, Outline, RepairCascade(), RepairOptions(model=model))
  assert outcome.layer_used is None
  assert not outcome.repaired
  assert outcome.data.sections == ["Variables", "Loops"]
  assert model.calls == 0


@pytest.mark.anyio
async def test_auto_repair_short_circuits_before_any_model_call() -> None:
  """Fences, trailing commas and near-miss keys are fixed without spending tokens."""
  raw = '```json\n{"Title": "Python Basics", "sections": ["Variables", "Loops",],}\n```'
  model = FakeModel("primary", [VALID])
  outcome = await parse_structured_output(raw, Outline, RepairCascade(), RepairOptions(model=model))
  assert outcome.layer_used is RepairLayer.AUTO_REPAIR
  assert outcome.data.title == "Python Basics"
  assert model.calls == 0
  assert outcome.to_metadata()["estimated_tokens"] == 0


@pytest.mark.anyio
async def test_tool_error_text_is_critiqued_by_the_same_model() -> None:
  """A tool error leaked in place of JSON goes to critique-and-revise with the error echoed back."""
  raw = "Error executing conversion: timeout"
  model = FakeModel("primary", [VALID], usage={"prompt_tokens": 100, "completion_tokens": 20, "total_tokens": 120})
  outcome = await parse_structured_output(raw, Outline, RepairCascade(), RepairOptions(model=model, original_prompt="Outline a Python course"))
  assert outcome.layer_used is RepairLayer.CRITIQUE_REVISE
  assert model.calls == 1
  assert raw in model.prompts[0]
  assert "Outline a Python course" in model.prompts[0]
  metadata = outcome.to_metadata()
  assert metadata["models_used"] == ["primary"]
  assert metadata["estimated_tokens"] == 120
  assert outcome.usage_entries() == [{"provider": "fake", "model": "primary", "prompt_tokens": 100, "completion_tokens": 20, "total_tokens": 120}]


@pytest.mark.anyio
async def test_exhaustion_reports_every_attempt() -> None:
  raw = "Error executing conversion: timeout"
  model = FakeModel("primary", ["still not json", "nope"])
  options = RepairOptions(enabled_layers=(RepairLayer.AUTO_REPAIR, RepairLayer.CRITIQUE_REVISE), max_retries=2, model=model)
  with pytest.raises(RepairExhausted) as excinfo:
    await parse_structured_output(raw, Outline, RepairCascade(), options)
  attempts = excinfo.value.attempts
  assert [attempt.layer for attempt in attempts] == [RepairLayer.AUTO_REPAIR, RepairLayer.CRITIQUE_REVISE, RepairLayer.CRITIQUE_REVISE]
  assert not any(attempt.succeeded for attempt in attempts)
  assert not excinfo.value.all_transient
  # The second revision round sees the first revision, not the original output.
  assert "still not json" in model.prompts[1]


@pytest.mark.anyio
async def test_provider_timeouts_mark_exhaustion_transient() -> None:
  model = FakeModel("primary", [TimeoutError("read timed out")])
  with pytest.raises(RepairExhausted) as excinfo:
    await parse_structured_output("not json", Outline, RepairCascade(), RepairOptions(model=model))
  assert excinfo.value.all_transient
  skipped = [attempt.layer for attempt in excinfo.value.attempts if attempt.skipped]
  assert skipped == [RepairLayer.PARTIAL_REGENERATION, RepairLayer.MODEL_ESCALATION, RepairLayer.EMERGENCY_FALLBACK]
  assert model.calls == 1


@pytest.mark.anyio
async def test_partial_regeneration_keeps_valid_fields() -> None:
  raw = json.dumps({"title": "Python Basics", "sections": []})
  model = FakeModel("primary", ['["Variables", "Loops"]'])
  options = RepairOptions(enabled_layers=(RepairLayer.PARTIAL_REGENERATION,), model=model, original_prompt="Outline a Python course")
  outcome = await parse_structured_output(raw, Outline, RepairCascade(), options)
  assert outcome.layer_used is RepairLayer.PARTIAL_REGENERATION
  assert outcome.data.title == "Python Basics"
  assert outcome.data.sections == ["Variables", "Loops"]
  assert model.calls == 1
  assert '"sections"' in model.prompts[0]
  assert "Python Basics" in model.prompts[0]


@pytest.mark.anyio
async def test_partial_regeneration_starts_from_the_first_output_not_a_failed_revision() -> None:
  raw = json.dumps({"title": "Python Basics", "sections": []})
  failed_revision = json.dumps({"title": "Rewritten Title", "sections": []})
  model = FakeModel("primary", [failed_revision, '["Variables"]'])
  options = RepairOptions(enabled_layers=(RepairLayer.CRITIQUE_REVISE, RepairLayer.PARTIAL_REGENERATION), max_retries=1, model=model, original_prompt="Outline a Python course")
  outcome = await parse_structured_output(raw, Outline, RepairCascade(), options)
  assert outcome.layer_used is RepairLayer.PARTIAL_REGENERATION
  assert outcome.data.title == "Python Basics"
  assert "Rewritten Title" not in model.prompts[1]
  assert model.calls == 2


@pytest.mark.anyio
async def test_model_escalation_moves_to_the_next_model_on_failure() -> None:
  broken = FakeModel("strong-a", [RuntimeError("model refused")])
  working = FakeModel("strong-b", [VALID])
  options = RepairOptions(enabled_layers=(RepairLayer.MODEL_ESCALATION,), original_prompt="Outline a Python course", escalation_models=(broken, working))
  outcome = await parse_structured_output("garbage", Outline, RepairCascade(), options)
  assert outcome.layer_used is RepairLayer.MODEL_ESCALATION
  assert [attempt.model for attempt in outcome.attempts] == ["strong-a", "strong-b"]
  assert working.prompts == ["Outline a Python course"]


@pytest.mark.anyio
async def test_regeneration_layers_skip_without_original_prompt() -> None:
  emergency = FakeModel("fallback", [VALID])
  options = RepairOptions(enabled_layers=(RepairLayer.EMERGENCY_FALLBACK,), emergency_model=emergency)
  with pytest.raises(RepairExhausted) as excinfo:
    await parse_structured_output("garbage", Outline, RepairCascade(), options)
  assert excinfo.value.attempts[0].skipped
  assert emergency.calls == 0
  assert not excinfo.value.all_transient


@pytest.mark.anyio
async def test_semantic_check_failure_triggers_revision() -> None:
  """Schema-valid output that fails the quality check is revised like a parse failure."""

  def _check(data: Outline) -> list[str]:
    return ["needs at least three sections"] if len(data.sections) < 3 else []

  model = FakeModel("primary", [json.dumps({"title": "Python Basics", "sections": ["Variables", "Loops", "Functions"]})])
  outcome = await parse_structured_output(VALID, Outline, RepairCascade(), RepairOptions(model=model, quality_check=_check))
  assert outcome.layer_used is RepairLayer.CRITIQUE_REVISE
  assert len(outcome.data.sections) == 3
  assert "needs at least three sections" in model.prompts[0]


@pytest.mark.anyio
async def test_auto_repair_is_deterministic() -> None:
  raw = '{title: "Python Basics" "sections": ["Variables", "Loops",]'
  cascade = RepairCascade()
  options = RepairOptions(enabled_layers=(RepairLayer.AUTO_REPAIR,))
  first = await parse_structured_output(raw, Outline, cascade, options)
  second = await parse_structured_output(raw, Outline, cascade, options)
  assert first.data == second.data
  assert first.to_metadata() == second.to_metadata()
