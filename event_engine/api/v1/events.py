import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Request, status

from event_engine.schemas.events import (
    DeadLetterResponse,
    HandlerInfo,
    HandlerListResponse,
    OutboxStatsResponse,
    ReplayResponse,
)
from event_engine.schemas.response import SuccessResponse
from event_engine.services.dead_letter_service import (
    get_dead_letter,
    list_dead_letters,
    outbox_stats,
    replay_dead_letter,
)

router = APIRouter()
log = logging.getLogger("event_api")


@router.get("/outbox/stats", response_model=SuccessResponse)
async def outbox_stats_endpoint():
    """Counts outbox rows per status."""
    try:
        counts = await outbox_stats()
        return SuccessResponse(data=OutboxStatsResponse(counts=counts).model_dump())
    except Exception as e:
        log.error(f"Error fetching outbox stats: {e}")
        raise HTTPException(status_code=500, detail="Server failed to fetch outbox stats.")


@router.get("/dead-letters", response_model=SuccessResponse)
async def list_dead_letters_endpoint(
    event_name: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """Lists dead-lettered events for operator inspection, newest first."""
    try:
        records = await list_dead_letters(event_name=event_name, limit=limit, offset=offset)
        data = [DeadLetterResponse.from_model(r).model_dump(mode="json") for r in records]
        return SuccessResponse(data=data)
    except Exception as e:
        log.error(f"Error listing dead letters: {e}")
        raise HTTPException(status_code=500, detail="Server failed to list dead letters.")


@router.get("/dead-letters/{dead_letter_id}", response_model=SuccessResponse)
async def get_dead_letter_endpoint(dead_letter_id: UUID):
    record = await get_dead_letter(dead_letter_id)
    if not record:
        raise HTTPException(status_code=404, detail="Dead letter not found")
    return SuccessResponse(data=DeadLetterResponse.from_model(record).model_dump(mode="json"))


@router.post("/dead-letters/{dead_letter_id}/replay", status_code=status.HTTP_202_ACCEPTED, response_model=SuccessResponse)
async def replay_dead_letter_endpoint(dead_letter_id: UUID, request: Request):
    """
    Re-queues a dead-lettered event as a fresh pending outbox row.
    Returns 202 Accepted because delivery happens in the worker.
    """
    bus = request.app.state.bus
    try:
        record = await replay_dead_letter(dead_letter_id, bus.store)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        log.error(f"Error replaying dead letter {dead_letter_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to replay dead letter.")

    log.info(f"Dead letter {dead_letter_id} replayed as outbox row {record.id}.")
    data = ReplayResponse(
        dead_letter_id=dead_letter_id,
        outbox_id=record.id,
        status=record.status.value,
        message="Event re-queued for delivery.",
    ).model_dump(mode="json")
    return SuccessResponse(data=data)


@router.get("/handlers", response_model=SuccessResponse)
async def list_handlers_endpoint(request: Request):
    """Handlers registered in this process, with their circuit states."""
    bus = request.app.state.bus
    handlers = [
        HandlerInfo(
            event_name=event_name,
            handler_id=registration.name,
            module=registration.module_id,
            timeout_ms=registration.timeout_ms,
            idempotent=registration.idempotency_key is not None,
            sequential=registration.sequential,
        )
        for event_name in bus.registry.registered_event_names()
        for registration in bus.registry.get_handlers(event_name)
    ]
    data = HandlerListResponse(handlers=handlers, circuits=bus.breakers.states()).model_dump()
    return SuccessResponse(data=data)
