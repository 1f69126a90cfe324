"""Stage handlers: one per pipeline queue plus finalization."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol

import httpx

from coursegen.quality.gate import GeneratedArtifact, Requirements, SectionText
from coursegen.services.model_routing import Criticality
from coursegen.stages.base import PermanentStageError, StageContext
from coursegen.stages.contracts import CourseAnalysis, CourseStructure, DocumentSummary, SectionContent
from coursegen.stages.prompts import render_analysis_prompt, render_section_content_prompt, render_structure_prompt, render_summary_prompt

logger = logging.getLogger(__name__)

_MAX_STORED_TEXT_CHARS = 200000


class DocumentConverter(Protocol):
  """Turns an uploaded document reference into plain text."""

  async def convert(self, document: Mapping[str, Any]) -> str:
    """Return the extracted text of the document."""


class InlineDocumentConverter:
  """Accepts documents carrying inline `text` or a `url` to a plain-text/markdown resource."""

  _TEXT_TYPES = ("text/", "application/json", "application/xml")

  def __init__(self, *, timeout_seconds: float = 30.0) -> None:
    self._timeout = timeout_seconds

  async def convert(self, document: Mapping[str, Any]) -> str:
    if isinstance(document.get("text"), str):
      return document["text"]
    url = document.get("url")
    if not url:
      raise PermanentStageError(f"Document {document.get('name') or '<unnamed>'} has neither text nor url")
    async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
      response = await client.get(str(url))
      response.raise_for_status()
    content_type = response.headers.get("content-type", "")
    if not content_type.startswith(self._TEXT_TYPES):
      raise PermanentStageError(f"Unsupported document type {content_type!r} for {url}; convert it to text before upload")
    return response.text


def _request(ctx: StageContext) -> dict[str, Any]:
  request = dict(ctx.course.generation_metadata)
  request.setdefault("topic", ctx.course.title)
  return request


class DocumentProcessingHandler:
  """Stage 2: extract text from the course's source documents."""

  def __init__(self, converter: DocumentConverter) -> None:
    self._converter = converter

  async def run(self, ctx: StageContext) -> dict[str, Any]:
    documents = list(ctx.course.generation_metadata.get("documents") or [])
    if not documents:
      logger.info("Course %s has no documents; skipping extraction", ctx.course.entity_id)
      return {"documents": [], "text": ""}

    extracted: list[dict[str, Any]] = []
    texts: list[str] = []
    for index, document in enumerate(documents, start=1):
      await ctx.ensure_not_cancelled()
      if not isinstance(document, Mapping):
        raise PermanentStageError(f"Document #{index} must be an object")
      text = await self._converter.convert(document)
      extracted.append({"name": document.get("name") or f"document-{index}", "characters": len(text)})
      texts.append(text)
    combined = "\n\n".join(texts)
    return {"documents": extracted, "text": combined[:_MAX_STORED_TEXT_CHARS], "truncated": len(combined) > _MAX_STORED_TEXT_CHARS}


class SummarizationHandler:
  """Stage 3."""

  async def run(self, ctx: StageContext) -> dict[str, Any]:
    source = ctx.stage_result("document_processing").get("text") or ""
    prompt = render_summary_prompt(request=_request(ctx), source_text=source, language=ctx.course.language, schema=DocumentSummary)
    summary = await ctx.generate_validated(prompt=prompt, schema=DocumentSummary, purpose="summarize")
    return summary.model_dump(mode="json")


class AnalysisHandler:
  """Stage 4: audience, difficulty and objectives, checked against the course request."""

  async def run(self, ctx: StageContext) -> dict[str, Any]:
    request = _request(ctx)
    summary = ctx.stage_result("summarization")
    prompt = render_analysis_prompt(request=request, summary=summary, language=ctx.course.language, schema=CourseAnalysis)
    requirement_text = " ".join(str(value) for value in (request.get("topic"), request.get("description")) if value)
    analysis = await ctx.generate_validated(
      prompt=prompt,
      schema=CourseAnalysis,
      purpose="analyze",
      artifact=lambda data: GeneratedArtifact(metadata=f"{data.title}. {data.description}"),
      requirements=Requirements(metadata=requirement_text) if requirement_text else None,
    )
    return analysis.model_dump(mode="json")


def _required_sections(request: Mapping[str, Any]) -> list[dict[str, Any]]:
  sections = []
  for index, raw in enumerate(request.get("sections") or [], start=1):
    if isinstance(raw, str):
      sections.append({"section_number": index, "title": raw})
    elif isinstance(raw, Mapping):
      sections.append({"section_number": int(raw.get("section_number") or index), **{key: value for key, value in raw.items() if key != "section_number"}})
  return sections


def _section_requirement_text(section: Mapping[str, Any]) -> str:
  return " ".join(str(section[key]) for key in ("title", "description", "summary") if section.get(key))


class StructureGenerationHandler:
  """Stage 5: the course outline, the most consequential output of the pipeline."""

  async def run(self, ctx: StageContext) -> dict[str, Any]:
    request = _request(ctx)
    analysis = ctx.stage_result("analysis")
    required = _required_sections(request)
    prompt = render_structure_prompt(request=request, analysis=analysis, required_sections=required, language=ctx.course.language, schema=CourseStructure)
    requirements = Requirements(
      metadata=" ".join([str(analysis.get("description") or ""), *(str(objective) for objective in analysis.get("learning_objectives") or [])]).strip() or None,
      sections=[SectionText(text=_section_requirement_text(section), key=section["section_number"]) for section in required],
    )

    def _artifact(data: CourseStructure) -> GeneratedArtifact:
      sections = [SectionText(text=f"{section.title}. {section.summary}", key=section.section_number) for section in data.sections] if required else []
      return GeneratedArtifact(metadata=f"{data.title}. {data.description}", sections=sections)

    structure = await ctx.generate_validated(prompt=prompt, schema=CourseStructure, criticality=Criticality.CRITICAL, artifact=_artifact, requirements=requirements, purpose="structure")
    numbers = [section.section_number for section in structure.sections]
    if len(set(numbers)) != len(numbers):
      raise PermanentStageError(f"Course structure repeats section numbers: {numbers}")
    return structure.model_dump(mode="json")


class LessonContentHandler:
  """Stage 6: lesson content for every planned section, one validated call per section."""

  async def run(self, ctx: StageContext) -> dict[str, Any]:
    structure = ctx.stage_result("structure_generation")
    summary = ctx.stage_result("summarization")
    sections: list[dict[str, Any]] = []
    for planned in structure.get("sections") or []:
      # Sections are independent; a cancellation between them stops further spend.
      await ctx.ensure_not_cancelled()
      prompt = render_section_content_prompt(course=structure, section=planned, summary=summary, language=ctx.course.language, schema=SectionContent)
      requirement = Requirements(metadata=None, sections=[SectionText(text=_section_requirement_text(planned), key=planned.get("section_number"))])

      def _artifact(data: SectionContent) -> GeneratedArtifact:
        body = " ".join(f"{lesson.title}. {lesson.content}" for lesson in data.lessons)
        return GeneratedArtifact(metadata=None, sections=[SectionText(text=f"{data.title}. {body}", key=data.section_number)])

      content = await ctx.generate_validated(prompt=prompt, schema=SectionContent, artifact=_artifact, requirements=requirement, purpose=f"section_{planned.get('section_number')}")
      if content.section_number != planned.get("section_number"):
        raise PermanentStageError(f"Section content came back numbered {content.section_number}, expected {planned.get('section_number')}")
      sections.append(content.model_dump(mode="json"))
    if not sections:
      raise PermanentStageError("Course structure has no sections to write")
    return {"sections": sections, "lesson_count": sum(len(section["lessons"]) for section in sections)}


class FinalizeHandler:
  """Finalization: check every stage produced output and assemble the course summary."""

  def __init__(self, stage_names: tuple[str, ...]) -> None:
    self._stage_names = stage_names

  async def run(self, ctx: StageContext) -> dict[str, Any]:
    for name in self._stage_names:
      ctx.stage_result(name)
    structure = ctx.stage_result("structure_generation")
    content = ctx.stage_result("lesson_content")
    total_cost = 0.0
    for name in self._stage_names:
      total_cost += float(((ctx.course.stage_results.get(name) or {}).get("usage") or {}).get("estimated_cost") or 0.0)
    return {"title": structure.get("title"), "section_count": len(content.get("sections") or []), "lesson_count": content.get("lesson_count", 0), "estimated_cost": round(total_cost, 6)}
