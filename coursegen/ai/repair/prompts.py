"""Prompt builders for the model-backed repair layers."""

from __future__ import annotations

import json
from typing import Any

_MAX_ECHO_CHARS = 12000


def _clip(text: str) -> str:
  if len(text) <= _MAX_ECHO_CHARS:
    return text
  return text[:_MAX_ECHO_CHARS] + "\n...[truncated]"


def render_critique_prompt(*, original_prompt: str | None, invalid_output: str, error: str | None, json_schema: dict[str, Any]) -> str:
  """Ask the same model to correct its own output against the schema and the validation error."""
  parts = [
    "Your previous response could not be accepted. Return a corrected version of it.",
    "Respond with a single JSON value only: no markdown fences, no commentary.",
    "",
    "JSON schema the response must satisfy:",
    json.dumps(json_schema, indent=2, ensure_ascii=False),
    "",
    "Problems found:",
    error or "The response was not valid JSON.",
    "",
    "Previous response:",
    _clip(invalid_output),
  ]
  if original_prompt:
    parts += ["", "Original task (for context, do not start over unless the previous response is unusable):", _clip(original_prompt)]
  return "\n".join(parts)


def render_field_prompt(*, original_prompt: str | None, field_name: str, field_schema: dict[str, Any], definitions: dict[str, Any], kept_fields: dict[str, Any], error: str | None) -> str:
  """Ask for one field in isolation, with the valid fields as context."""
  schema = dict(field_schema)
  if definitions:
    schema["$defs"] = definitions
  parts = [
    f'Produce only the value of the field "{field_name}" as JSON: no markdown fences, no commentary.',
    "",
    "JSON schema for this field:",
    json.dumps(schema, indent=2, ensure_ascii=False),
    "",
    "Other fields already accepted (keep consistent with them):",
    _clip(json.dumps(kept_fields, indent=2, ensure_ascii=False)),
  ]
  if error:
    parts += ["", f"The previous value failed validation: {error}"]
  if original_prompt:
    parts += ["", "Original task:", _clip(original_prompt)]
  return "\n".join(parts)
