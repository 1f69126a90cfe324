"""Deterministic lenient JSON recovery for LLM output."""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from typing import Any

_FENCE_RE = re.compile(r"^\s*```(?:json|JSON)?\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_DANGLING_KEY_RE = re.compile(r'([,{])\s*"[^"]*"\s*:?\s*$')
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})


def strip_json_fences(raw: str) -> str:
  """Remove a surrounding markdown code fence when present."""
  match = _FENCE_RE.match(raw or "")
  if match:
    return match.group(1).strip()
  return (raw or "").strip()


def parse_json_with_fallback(raw: str) -> Any:
  """Parse JSON, applying ordered structural repairs until one parses.

  Every pass is a pure string transform, so the same input always yields the same output.
  """
  text = strip_json_fences(raw).translate(_SMART_QUOTES)
  try:
    return json.loads(text)
  except json.JSONDecodeError as exc:
    last_error = exc

  # Drop prose around the payload; fall back to the open tail when the block never closes.
  candidate = _extract_json_block(text) or _open_tail(text)
  if candidate is None:
    raise last_error

  passes: tuple[Callable[[str], str], ...] = (_identity, _strip_trailing_commas, _quote_unquoted_keys, _insert_missing_commas, _close_unbalanced)
  current = candidate
  for repair in passes:
    current = repair(current)
    try:
      return json.loads(current)
    except json.JSONDecodeError as exc:
      last_error = exc

  raise last_error


def _identity(raw: str) -> str:
  return raw


def _scan_strings(raw: str):
  """Yield (index, char, in_string) while honouring escapes."""
  in_string = False
  escape = False
  for index, char in enumerate(raw):
    if in_string:
      if escape:
        escape = False
      elif char == "\\":
        escape = True
      elif char == '"':
        in_string = False
        yield index, char, True
        continue
      yield index, char, True
      continue
    if char == '"':
      in_string = True
      yield index, char, True
      continue
    yield index, char, False


def _extract_json_block(raw: str) -> str | None:
  """Return the first balanced object/array in the text."""
  start: int | None = None
  depth = 0
  for index, char, in_string in _scan_strings(raw):
    if in_string:
      continue
    if char in "{[":
      if start is None:
        start = index
      depth += 1
    elif char in "}]" and start is not None:
      depth -= 1
      if depth == 0:
        return raw[start : index + 1]
  return None


def _open_tail(raw: str) -> str | None:
  """Return everything from the first opening bracket for truncated payloads."""
  positions = [pos for pos in (raw.find("{"), raw.find("[")) if pos >= 0]
  if not positions:
    return None
  return raw[min(positions) :]


def _strip_trailing_commas(raw: str) -> str:
  """Remove commas that directly precede a closing bracket."""
  return _TRAILING_COMMA_RE.sub(r"\1", raw)


def _quote_unquoted_keys(raw: str) -> str:
  """Wrap bare identifier keys in double quotes."""
  output: list[str] = []
  expecting_key = False
  index = 0
  string_mask = {idx for idx, _char, in_string in _scan_strings(raw) if in_string}
  while index < len(raw):
    char = raw[index]
    if index in string_mask:
      output.append(char)
      index += 1
      continue
    if char in "{,":
      expecting_key = True
    elif char in ":}":
      expecting_key = False
    elif expecting_key and (char.isalpha() or char == "_"):
      end = index
      while end < len(raw) and (raw[end].isalnum() or raw[end] in "_-"):
        end += 1
      lookahead = end
      while lookahead < len(raw) and raw[lookahead].isspace():
        lookahead += 1
      if lookahead < len(raw) and raw[lookahead] == ":":
        output.append(f'"{raw[index:end]}"')
        output.append(raw[end:lookahead])
        index = lookahead
        expecting_key = False
        continue
    output.append(char)
    index += 1
  return "".join(output)


def _insert_missing_commas(raw: str) -> str:
  """Insert commas between adjacent values such as `"a" "b"` or `} {`."""
  output: list[str] = []
  in_string = False
  escape = False
  value_closed = False
  gap = False
  for char in raw:
    if in_string:
      output.append(char)
      if escape:
        escape = False
      elif char == "\\":
        escape = True
      elif char == '"':
        in_string = False
        value_closed = True
        gap = False
      continue

    if char.isspace():
      gap = True
      output.append(char)
      continue

    # Literals only count as a new value when whitespace separates them from the previous one.
    starts_value = char in '"{[' or ((char.isalnum() or char == "-") and gap)
    if value_closed and starts_value:
      output.append(",")
    output.append(char)
    gap = False

    if char == '"':
      in_string = True
      value_closed = False
    elif char in "}]" or char.isalnum() or char in ".+-":
      value_closed = True
    else:
      value_closed = False
  return "".join(output)


def _close_unbalanced(raw: str) -> str:
  """Close an unterminated string and any brackets left open by truncated output."""
  stack: list[str] = []
  in_string = False
  escape = False
  for char in raw:
    if in_string:
      if escape:
        escape = False
      elif char == "\\":
        escape = True
      elif char == '"':
        in_string = False
      continue
    if char == '"':
      in_string = True
    elif char in "{[":
      stack.append("}" if char == "{" else "]")
    elif char in "}]" and stack and stack[-1] == char:
      stack.pop()

  repaired = raw
  if in_string:
    repaired += '"'
  repaired = repaired.rstrip().rstrip(",")
  if stack and stack[-1] == "}":
    # A dangling key without a value cannot be completed safely; drop it.
    repaired = _DANGLING_KEY_RE.sub(r"\1", repaired)
  repaired = _TRAILING_COMMA_RE.sub(r"\1", repaired.rstrip().rstrip(","))
  return repaired + "".join(reversed(stack))
