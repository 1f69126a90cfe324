"""Coerce near-miss field names in parsed LLM output to a pydantic schema's names."""

from __future__ import annotations

import re
import types
from typing import Any, Union, get_args, get_origin

from pydantic import BaseModel

_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


def camel_to_snake(name: str) -> str:
  """Convert camelCase / PascalCase / kebab-case names to snake_case."""
  return _CAMEL_BOUNDARY_RE.sub("_", name).replace("-", "_").replace(" ", "_").lower()


def _squash(name: str) -> str:
  # "Section-Title", "sectionTitle" and "section_title" all squash to "sectiontitle".
  return _NON_ALNUM_RE.sub("", name.lower())


def _nested_model(annotation: Any) -> tuple[type[BaseModel] | None, bool]:
  """Return (model, is_collection) for annotations that embed another schema."""
  if isinstance(annotation, type) and issubclass(annotation, BaseModel):
    return annotation, False
  origin = get_origin(annotation)
  args = get_args(annotation)
  if origin in (Union, types.UnionType):
    for arg in args:
      model, is_collection = _nested_model(arg)
      if model is not None:
        return model, is_collection
    return None, False
  if origin in (list, tuple, set, frozenset) and args:
    model, _ = _nested_model(args[0])
    return model, model is not None
  return None, False


def coerce_field_names(data: Any, schema: type[BaseModel]) -> Any:
  """Rename keys that only differ from the schema by case, separators or camelCase.

  Exact matches always win over coerced ones; unknown keys are left untouched for the
  validator to report.
  """
  if not isinstance(data, dict):
    return data

  lookup: dict[str, str] = {}
  expected: dict[str, Any] = {}
  for field_name, info in schema.model_fields.items():
    output_key = info.alias or field_name
    expected[output_key] = info.annotation
    for candidate in {field_name, output_key, camel_to_snake(field_name)}:
      lookup.setdefault(_squash(candidate), output_key)

  result: dict[str, Any] = {}
  for key, value in data.items():
    target = key if key in expected else lookup.get(_squash(str(key)), key)
    if target in result and target != key:
      continue
    if target != key and target in data:
      # The exact key is also present; keep the exact value.
      continue
    model, is_collection = _nested_model(expected.get(target))
    if model is not None and is_collection and isinstance(value, list):
      value = [coerce_field_names(item, model) for item in value]
    elif model is not None and not is_collection:
      value = coerce_field_names(value, model)
    result[target] = value
  return result
