"""
Core event types.

Event names follow the "<module>:<action>" convention, e.g.
"inventory:stock.reserved" or "projects:project.created". The module part
names the emitter; the action part may contain dots.
"""
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field
from tortoise import timezone

from event_engine.core.exceptions import InvalidEventNameError

EVENT_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_\-]*:[a-z0-9_\-]+(\.[a-z0-9_\-]+)*$", re.IGNORECASE)
EVENT_VERSION = "v1"


def validate_event_name(event_name: str) -> str:
    if not isinstance(event_name, str) or not EVENT_NAME_PATTERN.match(event_name):
        raise InvalidEventNameError(
            f"Invalid event name {event_name!r}: expected '<module>:<action>' (e.g. 'inventory:stock.reserved')"
        )
    return event_name


class EventMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    emitted_at: datetime = Field(default_factory=timezone.now)
    correlation_id: Optional[str] = None
    version: str = EVENT_VERSION


class Event(BaseModel):
    """Immutable event value object. Not persisted directly; see OutboxEvent."""
    model_config = ConfigDict(frozen=True)

    event_name: str
    payload: Any = None
    source_module: str
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    @property
    def event_id(self) -> uuid.UUID:
        return self.metadata.event_id

    @property
    def correlation_id(self) -> Optional[str]:
        return self.metadata.correlation_id


class QueryResponse(BaseModel):
    """Reply delivered to a waiting query() caller."""
    data: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# Handlers receive the Event and may be plain functions or coroutines
EventHandler = Union[Callable[[Event], Any], Callable[[Event], Awaitable[Any]]]
IdempotencyKeyFn = Callable[[Event], str]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Per-handler retry settings.
    max_attempts caps the retries of an outbox row whose failure came from this handler.
    """
    max_attempts: int = 5
    backoff_ms: int = 1000
    exponential: bool = True
    jitter: bool = True


@dataclass
class HandlerRegistration:
    """In-memory binding of one handler to one event name. Never persisted."""
    handler: EventHandler
    module_id: str
    handler_id: Optional[str] = None
    retry_policy: Optional[RetryPolicy] = None
    timeout_ms: Optional[int] = None
    idempotency_key: Optional[IdempotencyKeyFn] = None
    schema: Optional[Type[BaseModel]] = None  # pydantic model validated against the payload
    sequential: bool = False

    @property
    def name(self) -> str:
        return self.handler_id or f"{self.module_id}-{getattr(self.handler, '__name__', 'anonymous')}"


@dataclass
class HandlerResult:
    """Outcome of one handler invocation through the middleware pipeline."""
    handler_id: str
    success: bool
    skipped: bool = False
    error: Optional[BaseException] = None
    retryable: bool = True
    duration_ms: float = 0.0

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        return str(self.error) or type(self.error).__name__
