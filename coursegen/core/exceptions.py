import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from coursegen.fsm.validator import EntityNotFound, InvalidTransition, StaleStateError
from coursegen.services.idempotency import IdempotencyConflictError, IdempotencyKeyReuseError
from coursegen.storage.postgres_generation_repo import DuplicatePendingJob


def _coerce_json_safe(value: Any) -> Any:
  """Convert unsupported values into JSON-safe primitives for error responses."""
  if value is None or isinstance(value, bool | int | float | str):
    return value
  if isinstance(value, dict):
    return {str(key): _coerce_json_safe(item) for key, item in value.items()}
  if isinstance(value, list | tuple | set):
    return [_coerce_json_safe(item) for item in value]
  if isinstance(value, BaseException):
    error_message = str(value)
    if error_message:
      return f"{type(value).__name__}: {error_message}"
    return type(value).__name__
  return str(value)


def _error_payload(detail: Any, *, code: str | None = None, request_id: str | None = None) -> dict[str, Any]:
  """Build a safe error payload that avoids leaking internal details to clients."""
  payload: dict[str, Any] = {"detail": detail}
  if code:
    payload["code"] = code
  if request_id:
    payload["requestId"] = request_id
  return payload


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key != "input"}
    if "ctx" in scrubbed and isinstance(scrubbed["ctx"], dict):
      scrubbed_ctx = dict(scrubbed["ctx"])
      scrubbed_ctx.pop("input", None)
      scrubbed["ctx"] = scrubbed_ctx
    sanitized.append(_coerce_json_safe(scrubbed))
  return sanitized


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Global exception handler to catch unhandled errors."""
  logger = logging.getLogger("uvicorn.error")
  request_id = getattr(request.state, "request_id", None)
  logger.error("Global exception request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", request_id=request_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  """Log request validation errors for debugging without leaking payloads."""
  request_id = getattr(request.state, "request_id", None)
  sanitized_errors = _sanitize_validation_errors(exc.errors())
  logger = logging.getLogger("uvicorn.error")
  logger.warning("Request validation failed request_id=%s path=%s method=%s errors=%s", request_id, request.url.path, request.method, sanitized_errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, request_id=request_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Handle FastAPI HTTPExceptions while avoiding leaking internal diagnostics."""
  request_id = getattr(request.state, "request_id", None)
  if exc.status_code >= 500:
    logger = logging.getLogger("uvicorn.error")
    logger.error("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail, exc_info=True)
    return JSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error", request_id=request_id))
  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, request_id=request_id), headers=getattr(exc, "headers", None))


async def entity_not_found_handler(request: Request, exc: EntityNotFound) -> JSONResponse:
  request_id = getattr(request.state, "request_id", None)
  return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=_error_payload(f"Course {exc.entity_id} not found", code="entity_not_found", request_id=request_id))


async def invalid_transition_handler(request: Request, exc: InvalidTransition) -> JSONResponse:
  """Transition conflicts are client-visible: the course is not in a state that allows the request."""
  request_id = getattr(request.state, "request_id", None)
  logger = logging.getLogger("uvicorn.error")
  logger.warning("Transition rejected request_id=%s path=%s %s -> %s", request_id, request.url.path, exc.old_state, exc.new_state)
  code = "stale_state" if isinstance(exc, StaleStateError) else "invalid_transition"
  detail = {"message": str(exc), "current_state": exc.old_state, "requested_state": exc.new_state}
  return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=_error_payload(detail, code=code, request_id=request_id))


async def idempotency_reuse_handler(request: Request, exc: IdempotencyKeyReuseError) -> JSONResponse:
  request_id = getattr(request.state, "request_id", None)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(str(exc), code="idempotency_key_reused", request_id=request_id))


async def conflict_handler(request: Request, exc: Exception) -> JSONResponse:
  """Concurrent work on the same course or key that the caller may retry later."""
  request_id = getattr(request.state, "request_id", None)
  code = "duplicate_pending_job" if isinstance(exc, DuplicatePendingJob) else "idempotency_conflict"
  return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=_error_payload(str(exc), code=code, request_id=request_id))


def register_exception_handlers(app: Any) -> None:
  app.add_exception_handler(Exception, global_exception_handler)
  app.add_exception_handler(HTTPException, http_exception_handler)
  app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
  app.add_exception_handler(EntityNotFound, entity_not_found_handler)
  app.add_exception_handler(InvalidTransition, invalid_transition_handler)
  app.add_exception_handler(IdempotencyKeyReuseError, idempotency_reuse_handler)
  app.add_exception_handler(DuplicatePendingJob, conflict_handler)
  app.add_exception_handler(IdempotencyConflictError, conflict_handler)
