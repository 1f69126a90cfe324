"""Structured outputs expected from each LLM-backed stage."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class DocumentSummary(BaseModel):
  """Condensed source material that later stages build on."""

  model_config = ConfigDict(extra="forbid")

  summary: str = Field(min_length=1)
  key_points: list[str] = Field(min_length=1)
  topics: list[str] = Field(default_factory=list)


class CourseAnalysis(BaseModel):
  """Audience, level and objectives derived from the summary and the course request."""

  model_config = ConfigDict(extra="forbid")

  title: str = Field(min_length=1)
  description: str = Field(min_length=1)
  target_audience: str
  difficulty: str = Field(pattern="^(beginner|intermediate|advanced)$")
  learning_objectives: list[str] = Field(min_length=1, max_length=12)
  prerequisites: list[str] = Field(default_factory=list)


class LessonOutline(BaseModel):
  model_config = ConfigDict(extra="forbid")

  title: str = Field(min_length=1)
  objective: str = Field(min_length=1)


class SectionOutline(BaseModel):
  """One course section as planned by structure generation."""

  model_config = ConfigDict(extra="forbid")

  section_number: int = Field(ge=1)
  title: str = Field(min_length=1)
  summary: str = Field(min_length=1)
  lessons: list[LessonOutline] = Field(min_length=1, max_length=10)


class CourseStructure(BaseModel):
  model_config = ConfigDict(extra="forbid")

  title: str = Field(min_length=1)
  description: str = Field(min_length=1)
  sections: list[SectionOutline] = Field(min_length=1, max_length=20)


class Lesson(BaseModel):
  model_config = ConfigDict(extra="forbid")

  title: str = Field(min_length=1)
  content: str = Field(min_length=1)
  key_takeaways: list[str] = Field(default_factory=list)


class SectionContent(BaseModel):
  """Full lesson content for one planned section."""

  model_config = ConfigDict(extra="forbid")

  section_number: int = Field(ge=1)
  title: str = Field(min_length=1)
  lessons: list[Lesson] = Field(min_length=1)
