"""Pipeline topology and the stage-qualified state names derived from it."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

PENDING: Final[str] = "pending"
FINALIZING: Final[str] = "finalizing"
COMPLETED: Final[str] = "completed"
FAILED: Final[str] = "failed"
CANCELLED: Final[str] = "cancelled"

TERMINAL_STATES: Final[frozenset[str]] = frozenset({COMPLETED, FAILED, CANCELLED})

FINALIZATION_QUEUE: Final[str] = "finalization"


class Initiator(str, Enum):
  """Actor recorded on every audit event."""

  API = "API"
  QUEUE = "QUEUE"
  WORKER = "WORKER"


@dataclass(frozen=True)
class StageDefinition:
  """One ordered pipeline stage with its own init/in-progress/complete states."""

  number: int
  name: str
  queue_name: str
  in_progress: tuple[str, ...] = ("processing",)

  def __post_init__(self) -> None:
    if not self.in_progress:
      raise ValueError(f"Stage {self.number} must declare at least one in-progress state.")

  @property
  def init_state(self) -> str:
    return f"stage_{self.number}_init"

  @property
  def complete_state(self) -> str:
    return f"stage_{self.number}_complete"

  @property
  def in_progress_states(self) -> tuple[str, ...]:
    return tuple(f"stage_{self.number}_{label}" for label in self.in_progress)

  @property
  def states(self) -> tuple[str, ...]:
    return (self.init_state, *self.in_progress_states, self.complete_state)


@dataclass(frozen=True)
class Pipeline:
  """Fixed, ordered set of stages known at design time."""

  stages: tuple[StageDefinition, ...]

  def __post_init__(self) -> None:
    if not self.stages:
      raise ValueError("A pipeline requires at least one stage.")
    numbers = [stage.number for stage in self.stages]
    if numbers != sorted(numbers) or len(set(numbers)) != len(numbers):
      raise ValueError("Pipeline stages must be declared in strictly increasing order.")
    queues = [stage.queue_name for stage in self.stages]
    if len(set(queues)) != len(queues) or FINALIZATION_QUEUE in queues:
      raise ValueError("Pipeline stage queues must be unique and distinct from the finalization queue.")

  @property
  def first(self) -> StageDefinition:
    return self.stages[0]

  @property
  def last(self) -> StageDefinition:
    return self.stages[-1]

  def next_stage(self, stage: StageDefinition) -> StageDefinition | None:
    """Return the stage after the given one, or None for the last stage."""
    index = self.stages.index(stage)
    if index + 1 >= len(self.stages):
      return None
    return self.stages[index + 1]

  def stage_for_queue(self, queue_name: str) -> StageDefinition | None:
    for stage in self.stages:
      if stage.queue_name == queue_name:
        return stage
    return None

  def queue_acts_on(self, queue_name: str, state: str) -> bool:
    """True while a job from this queue may still act on a course in the given state."""
    if queue_name == FINALIZATION_QUEUE:
      return state == FINALIZING
    stage = self.stage_for_queue(queue_name)
    return stage is not None and (state == stage.init_state or state in stage.in_progress_states)

  def stage_for_state(self, state: str) -> StageDefinition | None:
    for stage in self.stages:
      if state in stage.states:
        return stage
    return None

  def all_states(self) -> frozenset[str]:
    states = {PENDING, FINALIZING, *TERMINAL_STATES}
    for stage in self.stages:
      states.update(stage.states)
    return frozenset(states)

  def queue_names(self) -> tuple[str, ...]:
    return (*(stage.queue_name for stage in self.stages), FINALIZATION_QUEUE)


COURSE_PIPELINE: Final[Pipeline] = Pipeline(
  stages=(
    StageDefinition(number=2, name="document_processing", queue_name="document-processing"),
    StageDefinition(number=3, name="summarization", queue_name="summarization"),
    StageDefinition(number=4, name="analysis", queue_name="structure-analysis"),
    StageDefinition(number=5, name="structure_generation", queue_name="structure-generation"),
    StageDefinition(number=6, name="lesson_content", queue_name="lesson-content"),
  )
)
