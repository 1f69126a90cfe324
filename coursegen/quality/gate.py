"""Embedding-similarity quality gate with a two-tier pass/warn/fail verdict."""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from coursegen.config import Settings
from coursegen.quality.embeddings import EmbeddingClient

logger = logging.getLogger(__name__)

# Scores and thresholds are compared at this precision so float noise never flips a verdict.
_SCORE_PRECISION = 6


class QualityVerdict(str, Enum):
  PASS = "pass"
  WARN = "warn"
  FAIL = "fail"


@dataclass(frozen=True)
class QualityPolicy:
  """Weights and thresholds; tuned per deployment."""

  metadata_weight: float = 0.4
  sections_weight: float = 0.6
  overall_threshold: float = 0.75
  warn_threshold: float = 0.65
  metadata_threshold: float = 0.80
  section_threshold: float = 0.70
  language_adjustments: Mapping[str, float] = field(default_factory=lambda: {"en": 0.0})
  default_language_adjustment: float = -0.05
  soft_warn: bool = True

  def __post_init__(self) -> None:
    if abs((self.metadata_weight + self.sections_weight) - 1.0) > 1e-9:
      raise ValueError("Quality weights must sum to 1.0.")
    if self.warn_threshold > self.overall_threshold:
      raise ValueError("warn_threshold must not exceed overall_threshold.")

  @classmethod
  def from_settings(cls, settings: Settings) -> QualityPolicy:
    return cls(
      metadata_weight=settings.quality_metadata_weight,
      sections_weight=settings.quality_sections_weight,
      overall_threshold=settings.quality_overall_threshold,
      warn_threshold=settings.quality_warn_threshold,
      metadata_threshold=settings.quality_metadata_threshold,
      section_threshold=settings.quality_section_threshold,
      language_adjustments=dict(settings.quality_language_adjustments),
      default_language_adjustment=settings.quality_default_language_adjustment,
      soft_warn=settings.quality_soft_warn,
    )

  def adjustment(self, language: str | None) -> float:
    """Cross-lingual embeddings score systematically lower, so non-English content gets a lower bar."""
    code = (language or "en").strip().lower()
    if code in self.language_adjustments:
      return float(self.language_adjustments[code])
    base = code.split("-", 1)[0]
    if base in self.language_adjustments:
      return float(self.language_adjustments[base])
    return self.default_language_adjustment


@dataclass(frozen=True)
class SectionText:
  """Text of one section; `key` is the section's identity (e.g. its number) when known."""

  text: str
  key: str | int | None = None


@dataclass(frozen=True)
class GeneratedArtifact:
  metadata: str | None
  sections: Sequence[SectionText] = ()


@dataclass(frozen=True)
class Requirements:
  metadata: str | None
  sections: Sequence[SectionText] = ()


@dataclass(frozen=True)
class QualityReport:
  overall: float
  metadata_score: float | None
  per_section_scores: tuple[float, ...]
  threshold: float
  warn_threshold: float
  passed: bool
  verdict: QualityVerdict
  language: str
  metadata_passed: bool | None = None
  failing_sections: tuple[int, ...] = ()
  # Positions in per_section_scores that stand for a requirement nothing generated covers.
  missing_sections: tuple[int, ...] = ()

  def issues(self) -> list[str]:
    """Human-readable problems, used as the semantic-check result inside the repair cascade."""
    if self.passed:
      return []
    issues = [f"overall similarity {self.overall:.3f} is below the required {self.threshold:.3f}"]
    if self.metadata_passed is False and self.metadata_score is not None:
      issues.append(f"course metadata similarity {self.metadata_score:.3f} is too low; stay closer to the source requirements")
    for index in self.failing_sections:
      if index in self.missing_sections:
        issues.append("a required section has no generated counterpart; produce every section the requirements list")
        continue
      issues.append(f"section {index + 1} similarity {self.per_section_scores[index]:.3f} is too low; cover what its requirement asks for")
    return issues

  def to_dict(self) -> dict[str, Any]:
    return {
      "overall": self.overall,
      "metadata_score": self.metadata_score,
      "per_section_scores": list(self.per_section_scores),
      "threshold": self.threshold,
      "warn_threshold": self.warn_threshold,
      "passed": self.passed,
      "verdict": self.verdict.value,
      "language": self.language,
      "metadata_passed": self.metadata_passed,
      "failing_sections": list(self.failing_sections),
      "missing_sections": list(self.missing_sections),
    }


class QualityGateFailed(RuntimeError):
  """Generated content scored below the hard-fail threshold."""

  def __init__(self, report: QualityReport) -> None:
    self.report = report
    super().__init__(f"Quality gate failed: overall {report.overall:.3f} < threshold {report.threshold:.3f}")


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
  """Cosine similarity clamped to [0, 1]; zero vectors score 0."""
  if len(left) != len(right):
    raise ValueError(f"Embedding dimensions differ: {len(left)} != {len(right)}")
  dot = sum(a * b for a, b in zip(left, right))
  norm = math.sqrt(sum(a * a for a in left)) * math.sqrt(sum(b * b for b in right))
  if norm == 0:
    return 0.0
  return max(0.0, min(1.0, dot / norm))


def _pair_sections(generated: Sequence[SectionText], required: Sequence[SectionText]) -> list[tuple[int | None, int | None]]:
  """Pair generated sections with requirements by identity key, else by position.

  Generated sections without a requirement pair with None, and so do requirements nothing
  generated covers; both kinds score 0 so an omitted section counts against the mean.
  """
  keyed = all(section.key is not None for section in generated) and all(section.key is not None for section in required)
  if keyed:
    by_key = {str(section.key): index for index, section in enumerate(required)}
    pairs: list[tuple[int | None, int | None]] = [(index, by_key.get(str(section.key))) for index, section in enumerate(generated)]
  else:
    pairs = [(index, index if index < len(required) else None) for index in range(len(generated))]
  covered = {req_index for _gen_index, req_index in pairs if req_index is not None}
  pairs += [(None, index) for index in range(len(required)) if index not in covered]
  return pairs


class QualityGate:
  """Score generated content against the requirements that motivated it."""

  def __init__(self, embeddings: EmbeddingClient, policy: QualityPolicy | None = None) -> None:
    self._embeddings = embeddings
    self._policy = policy or QualityPolicy()

  @property
  def policy(self) -> QualityPolicy:
    return self._policy

  async def score(self, generated: GeneratedArtifact, requirements: Requirements, language: str | None = "en") -> QualityReport:
    pairs = _pair_sections(generated.sections, requirements.sections)
    texts: list[str] = []
    has_metadata = bool(generated.metadata and requirements.metadata)
    if has_metadata:
      texts += [str(generated.metadata), str(requirements.metadata)]
    # Only matched pairs need vectors; extra and missing sections score 0.
    matched = [(position, gen_index, req_index) for position, (gen_index, req_index) in enumerate(pairs) if gen_index is not None and req_index is not None]
    for _position, gen_index, req_index in matched:
      texts += [generated.sections[gen_index].text, requirements.sections[req_index].text]

    vectors = await self._embeddings.embed(texts) if texts else []
    if len(vectors) != len(texts):
      raise ValueError(f"Embedding client returned {len(vectors)} vectors for {len(texts)} texts")

    offset = 0
    metadata_score = None
    if has_metadata:
      metadata_score = cosine_similarity(vectors[0], vectors[1])
      offset = 2
    matched_scores: dict[int, float] = {}
    for ordinal, (position, _gen_index, _req_index) in enumerate(matched):
      base = offset + ordinal * 2
      matched_scores[position] = cosine_similarity(vectors[base], vectors[base + 1])
    # Scores follow the generated order, then one entry per uncovered requirement.
    section_scores = [matched_scores.get(position, 0.0) for position in range(len(pairs))]
    missing = [position for position, (gen_index, _req_index) in enumerate(pairs) if gen_index is None]
    return self.evaluate(metadata_score, section_scores, language, missing_sections=missing)

  def evaluate(self, metadata_score: float | None, section_scores: Sequence[float], language: str | None = "en", *, missing_sections: Sequence[int] = ()) -> QualityReport:
    """Combine component scores into a report using the configured policy."""
    policy = self._policy
    sections_mean = sum(section_scores) / len(section_scores) if section_scores else None
    if metadata_score is not None and sections_mean is not None:
      overall = metadata_score * policy.metadata_weight + sections_mean * policy.sections_weight
    elif sections_mean is not None:
      overall = sections_mean
    elif metadata_score is not None:
      overall = metadata_score
    else:
      overall = 0.0

    adjustment = policy.adjustment(language)
    threshold = round(policy.overall_threshold + adjustment, _SCORE_PRECISION)
    warn_threshold = round(policy.warn_threshold + adjustment, _SCORE_PRECISION)
    overall = round(overall, _SCORE_PRECISION)

    # The boundary itself is a pass.
    if overall >= threshold:
      verdict = QualityVerdict.PASS
    elif policy.soft_warn and overall >= warn_threshold:
      verdict = QualityVerdict.WARN
    else:
      verdict = QualityVerdict.FAIL

    metadata_passed = None if metadata_score is None else round(metadata_score, _SCORE_PRECISION) >= round(policy.metadata_threshold + adjustment, _SCORE_PRECISION)
    section_threshold = round(policy.section_threshold + adjustment, _SCORE_PRECISION)
    failing = tuple(index for index, score in enumerate(section_scores) if round(score, _SCORE_PRECISION) < section_threshold)

    report = QualityReport(
      overall=overall,
      metadata_score=None if metadata_score is None else round(metadata_score, _SCORE_PRECISION),
      per_section_scores=tuple(round(score, _SCORE_PRECISION) for score in section_scores),
      threshold=threshold,
      warn_threshold=warn_threshold,
      passed=verdict is QualityVerdict.PASS,
      verdict=verdict,
      language=(language or "en"),
      metadata_passed=metadata_passed,
      failing_sections=failing,
      missing_sections=tuple(missing_sections),
    )
    logger.info("Quality gate %s: overall=%.3f threshold=%.3f language=%s", verdict.value, overall, threshold, report.language)
    return report
