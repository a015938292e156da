import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DeadLetterResponse(BaseModel):
    """Schema for a dead-lettered event, as shown to operators."""
    id: uuid.UUID
    outbox_id: uuid.UUID
    event_name: str
    source_module: str
    payload: Any
    metadata: Dict[str, Any]
    retry_count: int
    max_retries: int
    failure_reason: str
    first_attempt_at: Optional[datetime] = None
    failed_at: datetime

    @classmethod
    def from_model(cls, record) -> "DeadLetterResponse":
        return cls(
            id=record.id,
            outbox_id=record.outbox_id,
            event_name=record.event_name,
            source_module=record.source_module,
            payload=record.payload,
            metadata=record.metadata,
            retry_count=record.retry_count,
            max_retries=record.max_retries,
            failure_reason=record.failure_reason,
            first_attempt_at=record.first_attempt_at,
            failed_at=record.failed_at,
        )


class ReplayResponse(BaseModel):
    """Response schema for a dead-letter replay (202 Accepted)."""
    dead_letter_id: uuid.UUID
    outbox_id: uuid.UUID
    status: str
    message: str


class OutboxStatsResponse(BaseModel):
    counts: Dict[str, int] = Field(..., description="Number of outbox rows per status.")


class HandlerInfo(BaseModel):
    event_name: str
    handler_id: str
    module: str
    timeout_ms: Optional[int] = None
    idempotent: bool
    sequential: bool


class HandlerListResponse(BaseModel):
    handlers: List[HandlerInfo]
    circuits: Dict[str, str] = Field(default_factory=dict, description="Circuit state per event/handler pair.")
