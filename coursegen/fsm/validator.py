"""Static transition table and the validator guarding every state write."""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType

from coursegen.fsm.pipeline import CANCELLED, COMPLETED, COURSE_PIPELINE, FAILED, FINALIZING, PENDING, TERMINAL_STATES, Pipeline


class InvalidTransition(Exception):
  """Raised when a state change is not in the allowed-transition table."""

  def __init__(self, old_state: str | None, new_state: str, message: str | None = None) -> None:
    self.old_state = old_state
    self.new_state = new_state
    super().__init__(message or f"Invalid transition: {old_state} -> {new_state}")


class StaleStateError(InvalidTransition):
  """Raised when the recorded state/version moved underneath the writer."""


class EntityNotFound(LookupError):
  """Raised when a referenced entity does not exist."""

  def __init__(self, entity_id: str) -> None:
    self.entity_id = entity_id
    super().__init__(f"Entity not found: {entity_id}")


def build_transition_table(pipeline: Pipeline) -> Mapping[str, frozenset[str]]:
  """Derive the allowed-transition table from the pipeline topology."""
  table: dict[str, set[str]] = {PENDING: {pipeline.first.init_state}}

  for stage in pipeline.stages:
    # Walk init -> in-progress states -> complete in declaration order.
    chain = stage.states
    for current, following in zip(chain, chain[1:]):
      table.setdefault(current, set()).add(following)
    next_stage = pipeline.next_stage(stage)
    table.setdefault(stage.complete_state, set()).add(next_stage.init_state if next_stage else FINALIZING)

  table[FINALIZING] = {COMPLETED}

  # Failure and cancellation are reachable from every non-terminal state.
  for state in list(table):
    table[state].update({FAILED, CANCELLED})

  # Terminal states only permit a full restart.
  for state in TERMINAL_STATES:
    table[state] = {PENDING}

  return MappingProxyType({state: frozenset(targets) for state, targets in table.items()})


TRANSITIONS: Mapping[str, frozenset[str]] = build_transition_table(COURSE_PIPELINE)


def is_transition_allowed(old_state: str | None, new_state: str, table: Mapping[str, frozenset[str]] = TRANSITIONS) -> bool:
  """Return True when the write is a self-transition or listed in the table."""
  if new_state not in table:
    return False
  if old_state == new_state:
    return True
  if old_state is None:
    # A new entity starts from an implicit pending state.
    return new_state == PENDING or new_state in table[PENDING]
  allowed = table.get(old_state)
  if allowed is None:
    return False
  return new_state in allowed


def validate_transition(old_state: str | None, new_state: str, table: Mapping[str, frozenset[str]] = TRANSITIONS) -> None:
  """Raise InvalidTransition unless old_state -> new_state is legal."""
  if old_state is not None and old_state not in table:
    raise InvalidTransition(old_state, new_state, f"Unknown current state: {old_state}")
  if new_state not in table:
    raise InvalidTransition(old_state, new_state, f"Unknown target state: {new_state}")
  if not is_transition_allowed(old_state, new_state, table):
    raise InvalidTransition(old_state, new_state)


def is_terminal(state: str | None) -> bool:
  return state in TERMINAL_STATES
