from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from coursegen.core.database import Base, JsonType
from coursegen.fsm.pipeline import PENDING


def utcnow() -> datetime:
  return datetime.now(UTC)


class Course(Base):
  """Entity advanced through the generation pipeline."""

  __tablename__ = "courses"

  id: Mapped[str] = mapped_column(String, primary_key=True)
  organization_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  title: Mapped[str | None] = mapped_column(String, nullable=True)
  language: Mapped[str] = mapped_column(String, nullable=False, default="en")
  generation_status: Mapped[str] = mapped_column(String, nullable=False, default=PENDING, index=True)
  version: Mapped[int] = mapped_column(Integer, nullable=False)
  generation_metadata: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
  stage_results: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  error_stage: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

  # Every UPDATE carries WHERE version = :old and bumps it; a stale writer gets StaleDataError.
  __mapper_args__ = {"version_id_col": version}
