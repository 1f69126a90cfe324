from __future__ import annotations

from pydantic import BaseModel

from coursegen.ai.field_names import camel_to_snake, coerce_field_names


class _Lesson(BaseModel):
  lesson_title: str


class _Section(BaseModel):
  section_title: str
  lessons: list[_Lesson]


def test_camel_to_snake() -> None:
  assert camel_to_snake("sectionTitle") == "section_title"
  assert camel_to_snake("key-points") == "key_points"


def test_near_miss_names_are_coerced_recursively() -> None:
  data = {"sectionTitle": "Basics", "Lessons": [{"lesson-title": "Variables"}]}
  assert coerce_field_names(data, _Section) == {"section_title": "Basics", "lessons": [{"lesson_title": "Variables"}]}


def test_exact_key_wins_over_coerced_key() -> None:
  assert coerce_field_names({"sectionTitle": "other", "section_title": "exact", "lessons": []}, _Section)["section_title"] == "exact"
  assert coerce_field_names({"section_title": "exact", "sectionTitle": "other", "lessons": []}, _Section)["section_title"] == "exact"


def test_unknown_keys_are_left_for_the_validator() -> None:
  assert coerce_field_names({"summary": "x"}, _Section) == {"summary": "x"}
  assert coerce_field_names(["not", "an", "object"], _Section) == ["not", "an", "object"]
