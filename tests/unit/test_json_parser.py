"""Unit tests for deterministic lenient JSON recovery."""

from __future__ import annotations

import json

import pytest

from coursegen.ai.json_parser import parse_json_with_fallback, strip_json_fences


def test_strip_json_fences_removes_markdown_wrapper() -> None:
  assert strip_json_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
  assert strip_json_fences('  {"a": 1}  ') == '{"a": 1}'


def test_prose_and_trailing_commas_are_removed() -> None:
  raw = 'Here is the outline you asked for: {"items": [1, 2,],} Let me know!'
  assert parse_json_with_fallback(raw) == {"items": [1, 2]}


def test_bare_keys_are_quoted() -> None:
  assert parse_json_with_fallback('{title: "Loops", lesson_count: 3}') == {"title": "Loops", "lesson_count": 3}


def test_missing_commas_between_values_are_inserted() -> None:
  assert parse_json_with_fallback('{"a": "x" "b": "y"}') == {"a": "x", "b": "y"}


def test_truncated_payload_is_closed() -> None:
  assert parse_json_with_fallback('{"title": "Intro", "items": ["a", "b"') == {"title": "Intro", "items": ["a", "b"]}
  assert parse_json_with_fallback('{"title": "Intro') == {"title": "Intro"}


def test_text_without_json_raises() -> None:
  with pytest.raises(json.JSONDecodeError):
    parse_json_with_fallback("Error executing conversion: timeout")


def test_repairs_are_deterministic() -> None:
  raw = '```json\n{title: "A" "sections": ["x", "y",]\n'
  assert parse_json_with_fallback(raw) == parse_json_with_fallback(raw)
