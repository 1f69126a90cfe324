"""Application configuration loaded from environment variables."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

_ENV_PREFIX = "COURSEGEN_"
_DEFAULT_WORKER_QUEUES = ("document-processing", "summarization", "structure-analysis", "structure-generation", "lesson-content", "finalization")
_DEFAULT_REPAIR_LAYERS = ("auto_repair", "critique_revise", "partial_regeneration", "model_escalation", "emergency_fallback")


@dataclass(frozen=True)
class Settings:
  """Typed settings for the course generation service."""

  environment: str
  debug: bool
  allowed_origins: tuple[str, ...]
  log_dir: str | None
  log_max_bytes: int
  log_backup_count: int
  pg_dsn: str | None
  pg_connect_timeout: int
  idempotency_ttl_seconds: int
  worker_queues: tuple[str, ...]
  worker_concurrency: int
  worker_lease_seconds: int
  worker_max_attempts: int
  worker_backoff_base_seconds: float
  worker_backoff_max_seconds: float
  worker_poll_min_seconds: float
  worker_poll_max_seconds: float
  worker_poll_multiplier: float
  worker_error_sleep_seconds: float
  worker_health_window_seconds: int
  worker_embedded: bool
  maintenance_interval_seconds: int
  outbox_retention_days: int
  llm_timeout_seconds: float
  model_routes: dict[str, Any] = field(hash=False)
  repair_enabled_layers: tuple[str, ...]
  repair_max_retries: int
  quality_metadata_weight: float
  quality_sections_weight: float
  quality_overall_threshold: float
  quality_warn_threshold: float
  quality_metadata_threshold: float
  quality_section_threshold: float
  quality_language_adjustments: dict[str, float] = field(hash=False)
  quality_default_language_adjustment: float
  quality_soft_warn: bool
  embedding_model: str
  openrouter_api_key: str | None
  openai_api_key: str | None
  gemini_api_key: str | None


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _env(name: str, default: str | None = None) -> str | None:
  return os.getenv(f"{_ENV_PREFIX}{name}", default)


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return ()

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if "*" in origins:
    raise ValueError("COURSEGEN_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_csv(raw: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
  if raw is None:
    return default
  return tuple(item.strip() for item in raw.split(",") if item.strip())


def _parse_json_dict(raw: str | None, default: dict[str, Any], *, name: str) -> dict[str, Any]:
  if not raw:
    return default
  try:
    parsed = json.loads(raw)
  except json.JSONDecodeError as exc:
    raise ValueError(f"{_ENV_PREFIX}{name} must be a JSON object: {exc}") from exc
  if not isinstance(parsed, dict):
    raise ValueError(f"{_ENV_PREFIX}{name} must be a JSON object.")
  return parsed


def _parse_bool(raw: str | None, default: bool = False) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return default

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: str) -> int:
  value = int(_env(name, default) or default)
  if value <= 0:
    raise ValueError(f"{_ENV_PREFIX}{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(_env(name, default) or default)
  if value <= 0:
    raise ValueError(f"{_ENV_PREFIX}{name} must be a positive number.")
  return value


def _unit_float(name: str, default: str) -> float:
  value = float(_env(name, default) or default)
  if not 0.0 <= value <= 1.0:
    raise ValueError(f"{_ENV_PREFIX}{name} must be between 0 and 1.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = (_env("ENV", "development") or "development").lower()
  debug = _parse_bool(_env("DEBUG"))

  log_max_bytes = _positive_int("LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(_env("LOG_BACKUP_COUNT", "10") or "10")
  if log_backup_count < 0:
    raise ValueError("COURSEGEN_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Worker polling grows from the minimum interval while idle and resets once work appears.
  poll_min = _positive_float("WORKER_POLL_MIN_SECONDS", "1.0")
  poll_max = _positive_float("WORKER_POLL_MAX_SECONDS", "30.0")
  if poll_max < poll_min:
    raise ValueError("COURSEGEN_WORKER_POLL_MAX_SECONDS must be >= COURSEGEN_WORKER_POLL_MIN_SECONDS.")
  poll_multiplier = float(_env("WORKER_POLL_MULTIPLIER", "1.5") or "1.5")
  if poll_multiplier < 1.0:
    raise ValueError("COURSEGEN_WORKER_POLL_MULTIPLIER must be >= 1.0.")

  metadata_weight = _unit_float("QUALITY_METADATA_WEIGHT", "0.4")
  sections_weight = _unit_float("QUALITY_SECTIONS_WEIGHT", "0.6")
  if abs((metadata_weight + sections_weight) - 1.0) > 1e-9:
    raise ValueError("COURSEGEN_QUALITY_METADATA_WEIGHT and COURSEGEN_QUALITY_SECTIONS_WEIGHT must sum to 1.0.")

  overall_threshold = _unit_float("QUALITY_OVERALL_THRESHOLD", "0.75")
  warn_threshold = _unit_float("QUALITY_WARN_THRESHOLD", "0.65")
  if warn_threshold > overall_threshold:
    raise ValueError("COURSEGEN_QUALITY_WARN_THRESHOLD must not exceed COURSEGEN_QUALITY_OVERALL_THRESHOLD.")

  language_adjustments = {str(key).lower(): float(value) for key, value in _parse_json_dict(_env("QUALITY_LANGUAGE_ADJUSTMENTS"), {"en": 0.0}, name="QUALITY_LANGUAGE_ADJUSTMENTS").items()}

  repair_layers = _parse_csv(_env("REPAIR_ENABLED_LAYERS"), _DEFAULT_REPAIR_LAYERS)
  unknown_layers = sorted(set(repair_layers) - set(_DEFAULT_REPAIR_LAYERS))
  if unknown_layers:
    raise ValueError(f"COURSEGEN_REPAIR_ENABLED_LAYERS contains unknown layers: {', '.join(unknown_layers)}")

  return Settings(
    environment=environment,
    debug=debug,
    allowed_origins=_parse_origins(_env("ALLOWED_ORIGINS")),
    log_dir=_optional_str(_env("LOG_DIR")),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    pg_dsn=_env("PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_positive_int("PG_CONNECT_TIMEOUT", "5"),
    idempotency_ttl_seconds=_positive_int("IDEMPOTENCY_TTL_SECONDS", "86400"),
    worker_queues=_parse_csv(_env("WORKER_QUEUES"), _DEFAULT_WORKER_QUEUES),
    worker_concurrency=_positive_int("WORKER_CONCURRENCY", "10"),
    worker_lease_seconds=_positive_int("WORKER_LEASE_SECONDS", "600"),
    worker_max_attempts=_positive_int("WORKER_MAX_ATTEMPTS", "5"),
    worker_backoff_base_seconds=_positive_float("WORKER_BACKOFF_BASE_SECONDS", "2.0"),
    worker_backoff_max_seconds=_positive_float("WORKER_BACKOFF_MAX_SECONDS", "300.0"),
    worker_poll_min_seconds=poll_min,
    worker_poll_max_seconds=poll_max,
    worker_poll_multiplier=poll_multiplier,
    worker_error_sleep_seconds=_positive_float("WORKER_ERROR_SLEEP_SECONDS", "5.0"),
    worker_health_window_seconds=_positive_int("WORKER_HEALTH_WINDOW_SECONDS", "60"),
    worker_embedded=_parse_bool(_env("WORKER_EMBEDDED")),
    maintenance_interval_seconds=_positive_int("MAINTENANCE_INTERVAL_SECONDS", "300"),
    outbox_retention_days=_positive_int("OUTBOX_RETENTION_DAYS", "30"),
    llm_timeout_seconds=_positive_float("LLM_TIMEOUT_SECONDS", "120"),
    model_routes=_parse_json_dict(_env("MODEL_ROUTES"), {}, name="MODEL_ROUTES"),
    repair_enabled_layers=repair_layers,
    repair_max_retries=_positive_int("REPAIR_MAX_RETRIES", "2"),
    quality_metadata_weight=metadata_weight,
    quality_sections_weight=sections_weight,
    quality_overall_threshold=overall_threshold,
    quality_warn_threshold=warn_threshold,
    quality_metadata_threshold=_unit_float("QUALITY_METADATA_THRESHOLD", "0.80"),
    quality_section_threshold=_unit_float("QUALITY_SECTION_THRESHOLD", "0.70"),
    quality_language_adjustments=language_adjustments,
    quality_default_language_adjustment=float(_env("QUALITY_DEFAULT_LANGUAGE_ADJUSTMENT", "-0.05") or "-0.05"),
    quality_soft_warn=_parse_bool(_env("QUALITY_SOFT_WARN"), default=True),
    embedding_model=(_env("EMBEDDING_MODEL", "text-embedding-3-small") or "text-embedding-3-small").strip(),
    openrouter_api_key=_optional_str(os.getenv("OPENROUTER_API_KEY")),
    openai_api_key=_optional_str(os.getenv("OPENAI_API_KEY")),
    gemini_api_key=_optional_str(os.getenv("GEMINI_API_KEY")),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  # Keep database configuration isolated so offline scripts don't require unrelated env vars.
  debug = _parse_bool(_env("DEBUG"))
  pg_connect_timeout = _positive_int("PG_CONNECT_TIMEOUT", "5")
  pg_dsn = _env("PG_DSN") or os.getenv("DATABASE_URL")
  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
