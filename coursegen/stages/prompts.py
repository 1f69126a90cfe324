"""Prompt builders for the LLM-backed stages."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel

_MAX_SOURCE_CHARS = 60000


def _schema_block(schema: type[BaseModel]) -> str:
  return json.dumps(schema.model_json_schema(), indent=2, ensure_ascii=False)


def _json_block(value: Any) -> str:
  """Serialize context deterministically so identical inputs render identical prompts."""
  return json.dumps(value, indent=2, ensure_ascii=False, sort_keys=True)


def _request_block(request: dict[str, Any]) -> str:
  lines = []
  for label, key in (("Topic", "topic"), ("Description", "description"), ("Audience", "audience"), ("Notes", "notes")):
    value = request.get(key)
    if value:
      lines.append(f"{label}: {value}")
  return "\n".join(lines) or "-"


def _footer(schema: type[BaseModel], language: str) -> str:
  return "\n".join([
    "",
    f"Write all content in language code '{language}'.",
    "Respond with a single JSON object matching this schema, with no markdown fences and no commentary:",
    _schema_block(schema),
  ])


def render_summary_prompt(*, request: dict[str, Any], source_text: str, language: str, schema: type[BaseModel]) -> str:
  source = source_text[:_MAX_SOURCE_CHARS] if source_text else "(no source documents; rely on the course request)"
  return "\n".join([
    "Summarize the source material for a course author.",
    "Capture the key points a learner must understand and the topics they belong to.",
    "",
    "Course request:",
    _request_block(request),
    "",
    "Source material:",
    source,
    _footer(schema, language),
  ])


def render_analysis_prompt(*, request: dict[str, Any], summary: dict[str, Any], language: str, schema: type[BaseModel]) -> str:
  return "\n".join([
    "Analyze the course request and the summarized material.",
    "Decide the target audience, the difficulty and concrete, measurable learning objectives.",
    "",
    "Course request:",
    _request_block(request),
    "",
    "Summary:",
    _json_block(summary),
    _footer(schema, language),
  ])


def render_structure_prompt(*, request: dict[str, Any], analysis: dict[str, Any], required_sections: list[dict[str, Any]], language: str, schema: type[BaseModel]) -> str:
  parts = [
    "Design the course structure: ordered sections, each with a short summary and its lessons.",
    "Every learning objective must be covered by at least one lesson.",
    "",
    "Course request:",
    _request_block(request),
    "",
    "Analysis:",
    _json_block(analysis),
  ]
  if required_sections:
    parts += ["", "The course must contain exactly these sections, in this order:", _json_block(required_sections)]
  parts.append(_footer(schema, language))
  return "\n".join(parts)


def render_section_content_prompt(*, course: dict[str, Any], section: dict[str, Any], summary: dict[str, Any], language: str, schema: type[BaseModel]) -> str:
  return "\n".join([
    f"Write the full lesson content for section {section.get('section_number')} of the course below.",
    "Write one lesson per planned lesson, in the planned order, with clear explanations and examples.",
    "",
    "Course:",
    _json_block({"title": course.get("title"), "description": course.get("description")}),
    "",
    "Section plan:",
    _json_block(section),
    "",
    "Source summary:",
    _json_block(summary),
    _footer(schema, language),
  ])
