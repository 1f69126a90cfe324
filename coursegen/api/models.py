from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictStr


class CourseDocument(BaseModel):
  """Source document reference: inline text or a URL to a text resource."""

  name: StrictStr | None = Field(default=None, max_length=300)
  text: StrictStr | None = None
  url: StrictStr | None = None
  model_config = ConfigDict(extra="forbid")


class StartGenerationRequest(BaseModel):
  """Request payload to start (or restart) generation for a course."""

  title: StrictStr | None = Field(default=None, min_length=1, max_length=300, description="Course title; required when the course is created by this request.")
  topic: StrictStr | None = Field(default=None, min_length=1, max_length=500)
  description: StrictStr | None = Field(default=None, max_length=5000)
  audience: StrictStr | None = Field(default=None, max_length=500)
  language: StrictStr = Field(default="en", min_length=2, max_length=16, description="BCP-47 language code for generated content.")
  sections: list[StrictStr | dict[str, Any]] | None = Field(default=None, max_length=20, description="Optional required sections, in order.")
  documents: list[CourseDocument] = Field(default_factory=list, max_length=50)
  priority: int = Field(default=0, ge=-100, le=100)
  create_if_missing: bool = True
  restart: bool = False
  model_config = ConfigDict(extra="forbid")

  def generation_metadata(self) -> dict[str, Any]:
    metadata: dict[str, Any] = {key: value for key, value in {"topic": self.topic, "description": self.description, "audience": self.audience, "sections": self.sections}.items() if value is not None}
    if self.documents:
      metadata["documents"] = [document.model_dump(exclude_none=True) for document in self.documents]
    return metadata


class CancelGenerationRequest(BaseModel):
  reason: StrictStr | None = Field(default=None, max_length=500)
  model_config = ConfigDict(extra="forbid")


class OutboxEntryResponse(BaseModel):
  outbox_id: str
  queue_name: str
  job_data: dict[str, Any]
  job_options: dict[str, Any]
  created_at: str | None


class GenerationStateResponse(BaseModel):
  entity_id: str
  state: str
  version: int
  created_by: str
  created_at: str | None


class StartGenerationResponse(BaseModel):
  """Recorded result of the initialize call; replays return the identical body."""

  state: GenerationStateResponse
  outbox_entries: list[OutboxEntryResponse]


class GenerationStatusResponse(BaseModel):
  course_id: str
  state: str
  version: int
  language: str
  error_message: str | None = None
  error_stage: str | None = None
  completed_stages: list[str] = Field(default_factory=list)
  pending_jobs: list[OutboxEntryResponse] = Field(default_factory=list)
  created_at: str | None
  updated_at: str | None


class FsmEventResponse(BaseModel):
  event_id: str
  event_type: str
  old_state: str | None
  new_state: str | None
  created_by: Literal["API", "QUEUE", "WORKER"]
  user_id: str | None
  event_data: dict[str, Any]
  created_at: str | None


class FsmEventListResponse(BaseModel):
  course_id: str
  events: list[FsmEventResponse]
