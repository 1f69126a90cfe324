import logging

from fastapi import APIRouter, Depends, Header, Query, status

from coursegen.api.deps import Caller, get_caller, get_generation_service
from coursegen.api.models import CancelGenerationRequest, FsmEventListResponse, FsmEventResponse, GenerationStatusResponse, OutboxEntryResponse, StartGenerationRequest, StartGenerationResponse
from coursegen.fsm.pipeline import Initiator
from coursegen.services.generation import GenerationService
from coursegen.services.idempotency import MIN_KEY_LENGTH
from coursegen.storage.generation_repo import CourseStateRecord, iso_timestamp

router = APIRouter()
logger = logging.getLogger("coursegen.api.routes.generation")


async def _status_response(service: GenerationService, record: CourseStateRecord) -> GenerationStatusResponse:
  pending = await service.list_pending_jobs(record.entity_id)
  return GenerationStatusResponse(
    course_id=record.entity_id,
    state=record.state,
    version=record.version,
    language=record.language,
    error_message=record.error_message,
    error_stage=record.error_stage,
    completed_stages=[name for name, result in record.stage_results.items() if isinstance(result, dict) and "output" in result],
    pending_jobs=[OutboxEntryResponse(**entry.to_payload()) for entry in pending],
    created_at=iso_timestamp(record.created_at),
    updated_at=iso_timestamp(record.updated_at),
  )


@router.post("/{course_id}/generation", response_model=StartGenerationResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_generation(  # noqa: B008
  course_id: str,
  payload: StartGenerationRequest,
  idempotency_key: str = Header(alias="Idempotency-Key", min_length=MIN_KEY_LENGTH, max_length=200),
  caller: Caller = Depends(get_caller),  # noqa: B008
  service: GenerationService = Depends(get_generation_service),  # noqa: B008
) -> StartGenerationResponse:
  """Atomically move the course to its first stage and queue the first job; replays return the recorded result."""
  request = service.start_request(
    entity_id=course_id,
    user_id=caller.user_id,
    organization_id=caller.organization_id,
    idempotency_key=idempotency_key,
    initiated_by=Initiator.API,
    priority=payload.priority,
    metadata=payload.generation_metadata(),
    create_if_missing=payload.create_if_missing,
    title=payload.title,
    language=payload.language,
    restart=payload.restart,
  )
  result = await service.initialize(request)
  return StartGenerationResponse.model_validate(result)


@router.post("/{course_id}/generation/cancel", response_model=GenerationStatusResponse)
async def cancel_generation(  # noqa: B008
  course_id: str,
  payload: CancelGenerationRequest | None = None,
  caller: Caller = Depends(get_caller),  # noqa: B008
  service: GenerationService = Depends(get_generation_service),  # noqa: B008
) -> GenerationStatusResponse:
  """Cancel generation; queued jobs are consumed and in-flight workers stop at their next check."""
  record = await service.cancel(course_id=course_id, organization_id=caller.organization_id, user_id=caller.user_id, initiated_by=Initiator.API, reason=payload.reason if payload else None)
  return await _status_response(service, record)


@router.get("/{course_id}/generation", response_model=GenerationStatusResponse)
async def get_generation_status(  # noqa: B008
  course_id: str,
  caller: Caller = Depends(get_caller),  # noqa: B008
  service: GenerationService = Depends(get_generation_service),  # noqa: B008
) -> GenerationStatusResponse:
  record = await service.get_status(course_id, organization_id=caller.organization_id)
  return await _status_response(service, record)


@router.get("/{course_id}/generation/events", response_model=FsmEventListResponse)
async def list_generation_events(  # noqa: B008
  course_id: str,
  limit: int = Query(default=500, ge=1, le=5000),
  caller: Caller = Depends(get_caller),  # noqa: B008
  service: GenerationService = Depends(get_generation_service),  # noqa: B008
) -> FsmEventListResponse:
  """Return the course's audit trail in insertion order."""
  events = await service.list_events(course_id, organization_id=caller.organization_id, limit=limit)
  return FsmEventListResponse(
    course_id=course_id,
    events=[
      FsmEventResponse(
        event_id=event.event_id,
        event_type=event.event_type,
        old_state=event.old_state,
        new_state=event.new_state,
        created_by=event.created_by,
        user_id=event.user_id,
        event_data=event.event_data,
        created_at=iso_timestamp(event.created_at),
      )
      for event in events
    ],
  )
