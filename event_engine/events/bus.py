"""
Event bus: emit, query/reply and in-process dispatch.

Producers call emit() inside their own transaction; the event lands in the
outbox and is delivered later by the worker. query() is a request/reply call
layered on top: it waits on a per-correlation-id future that a handler
resolves through reply().

Each EventBus owns its registry, circuit breakers and pending-query map, so
several isolated buses can live in one process (tests do this).
"""
import asyncio
import json
import logging
import time
import uuid
from typing import Any, Callable, Coroutine, Dict, List, Optional, Sequence, Set, Type

from pydantic import BaseModel, TypeAdapter
from pydantic_core import PydanticSerializationError
from tortoise.transactions import in_transaction

from event_engine.core.config import EventConfig
from event_engine.core.exceptions import (
    BusClosedError,
    EventSystemDisabledError,
    InvalidPayloadError,
    PayloadTooLargeError,
    QueryTimeoutError,
)
from event_engine.events.circuit_breaker import CircuitBreakerRegistry
from event_engine.events.middleware import Middleware, MiddlewarePipeline
from event_engine.events.outbox import OutboxStore
from event_engine.events.registry import HandlerRegistry
from event_engine.events.types import (
    Event,
    EventHandler,
    EventMetadata,
    HandlerRegistration,
    HandlerResult,
    IdempotencyKeyFn,
    QueryResponse,
    RetryPolicy,
    validate_event_name,
)
from event_engine.models.event_history import EventHistory

log = logging.getLogger("event_bus")

_payload_adapter = TypeAdapter(Any)


def normalize_payload(payload: Any) -> Any:
    """
    Converts a payload to plain JSON types (UUIDs and datetimes become strings,
    pydantic models become dicts). History, outbox and handlers all see this form.
    """
    try:
        return _payload_adapter.dump_python(payload, mode="json")
    except PydanticSerializationError as e:
        raise InvalidPayloadError(f"Event payload is not JSON serializable: {e}") from e


class EventBus:
    def __init__(
        self,
        config: Optional[EventConfig] = None,
        store: Optional[OutboxStore] = None,
        registry: Optional[HandlerRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
        extra_middlewares: Sequence[Middleware] = (),
    ):
        self.config = config or EventConfig()
        self.registry = registry or HandlerRegistry()
        self.store = store or OutboxStore(self.config)
        self.breakers = CircuitBreakerRegistry(
            threshold=self.config.circuit_breaker_threshold,
            window_ms=self.config.circuit_breaker_window_ms,
            recovery_ms=self.config.circuit_breaker_recovery_ms,
            clock=clock,
        )
        self.pipeline = MiddlewarePipeline(self.config, self.breakers, extra_middlewares)
        self._pending_queries: Dict[str, asyncio.Future] = {}
        self._background_tasks: Set[asyncio.Task] = set()
        self._closed = False

        if self.config.immediate_processing:
            log.warning("Immediate processing is enabled: events bypass the outbox and are lost on crash. "
                        "Do not use this in production.")

    # ----------- Registration -----------

    def default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.config.default_max_retries,
            backoff_ms=self.config.default_backoff_ms,
            exponential=self.config.exponential_backoff,
            jitter=self.config.backoff_jitter,
        )

    def register(
        self,
        event_name: str,
        handler: EventHandler,
        *,
        module: str,
        handler_id: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_ms: Optional[int] = None,
        idempotency_key: Optional[IdempotencyKeyFn] = None,
        schema: Optional[Type[BaseModel]] = None,
        sequential: bool = False,
    ) -> str:
        """
        Subscribes a handler to an event name and returns its handler id.

        Example:
            bus.register(
                "projects:project.created",
                create_initial_task,
                module="tasks",
                handler_id="tasks-project-created-handler",
                timeout_ms=10000,
                idempotency_key=lambda e: f"task-created-for-project-{e.payload['projectId']}",
            )
        """
        registration = HandlerRegistration(
            handler=handler,
            module_id=module,
            handler_id=handler_id,
            retry_policy=retry_policy or self.default_retry_policy(),
            timeout_ms=timeout_ms,
            idempotency_key=idempotency_key,
            schema=schema,
            sequential=sequential,
        )
        return self.registry.register(event_name, registration)

    def unregister(self, event_name: str, handler_id: str) -> bool:
        return self.registry.unregister(event_name, handler_id)

    # ----------- Emission -----------

    def _build_event(self, event_name: str, payload: Any, source_module: str, correlation_id: Optional[str]) -> Event:
        validate_event_name(event_name)
        payload = normalize_payload(payload)
        size = len(json.dumps(payload).encode("utf-8"))
        if size > self.config.max_payload_size_bytes:
            raise PayloadTooLargeError(size, self.config.max_payload_size_bytes)
        return Event(
            event_name=event_name,
            payload=payload,
            source_module=source_module,
            metadata=EventMetadata(correlation_id=correlation_id),
        )

    async def _create_history(self, event: Event, conn: Any = None):
        await EventHistory.create(
            event_id=str(event.event_id),
            event_name=event.event_name,
            source_module=event.source_module,
            payload=event.payload,
            metadata=event.metadata.model_dump(mode="json"),
            using_db=conn,
        )

    async def _store_history(self, event: Event, conn: Any = None):
        if not self.config.event_history_enabled:
            return
        try:
            if conn is None:
                await self._create_history(event)
            else:
                # Savepoint inside the producer's transaction: a failed history
                # insert rolls back alone and the outbox insert can still run
                async with in_transaction(conn.connection_name) as savepoint:
                    await self._create_history(event, savepoint)
        except Exception as e:
            # History is for observability only; it must not block delivery
            log.error(f"Failed to store event {event.event_name} ({event.event_id}) in history: {e}")

    async def emit(
        self,
        event_name: str,
        payload: Any,
        source_module: str,
        *,
        correlation_id: Optional[str] = None,
        max_retries: Optional[int] = None,
        conn: Any = None,
    ) -> Optional[Event]:
        """
        Records the event for asynchronous delivery. Never runs handlers inline.

        CRITICAL: pass the producer's transaction as 'conn' so the outbox row
        commits atomically with the business data.
        """
        if not self.config.enabled:
            log.warning(f"Event system is disabled, event not emitted: {event_name}")
            return None

        event = self._build_event(event_name, payload, source_module, correlation_id)
        await self._store_history(event, conn)

        if self.config.immediate_processing:
            self.spawn(self.dispatch(event, durable=False), f"immediate {event_name}")
            return event

        record = await self.store.store(event, max_retries=max_retries, conn=conn)
        log.debug(f"Event {event_name} ({event.event_id}) stored in outbox as {record.id}")
        return event

    def emit_best_effort(self, event_name: str, payload: Any, source_module: str, **kwargs) -> asyncio.Task:
        """
        Fire-and-forget notification for side calls that must never fail the caller.
        Call it after the primary transaction has committed; errors are only logged.
        """
        return self.spawn(self.emit(event_name, payload, source_module, **kwargs), f"notify {event_name}")

    # ----------- Dispatch -----------

    async def dispatch(self, event: Event, durable: bool = True) -> List[HandlerResult]:
        """
        Runs every handler registered for the event through the middleware pipeline.
        durable=False marks in-process deliveries (queries, immediate mode) that are
        never retried, so no implicit completion record is kept for them.
        """
        handlers = self.registry.get_handlers(event.event_name)
        if not handlers:
            log.warning(f"No handlers found for event: {event.event_name}")
            return []

        if any(h.sequential for h in handlers):
            results = []
            for registration in handlers:
                results.append(await self.pipeline.execute(event, registration, durable))
        else:
            results = list(await asyncio.gather(*(self.pipeline.execute(event, h, durable) for h in handlers)))

        failures = [r for r in results if not r.success]
        correlation_id = event.correlation_id
        if failures and correlation_id and correlation_id in self._pending_queries:
            self.reply(correlation_id, error="; ".join(f.error_message for f in failures))
        return results

    # ----------- Query / Reply -----------

    @property
    def pending_query_count(self) -> int:
        return len(self._pending_queries)

    async def query(
        self,
        event_name: str,
        payload: Any,
        source_module: str,
        timeout_ms: Optional[int] = None,
    ) -> QueryResponse:
        """
        Synchronous request/reply over the bus. The handler must run in this
        process and call bus.reply(event.correlation_id, data). Only for
        low-latency lookups; long-running work belongs in emit().
        """
        if not self.config.enabled:
            raise EventSystemDisabledError("Event system is disabled")
        if self._closed:
            raise BusClosedError("Event bus is closed")

        if timeout_ms is None:
            timeout_ms = self.config.default_query_timeout_ms
        correlation_id = str(uuid.uuid4())
        event = self._build_event(event_name, payload, source_module, correlation_id)

        future = asyncio.get_running_loop().create_future()
        self._pending_queries[correlation_id] = future
        try:
            await self._store_history(event)
            # Queries are answered in-process, so they skip the durable outbox
            self.spawn(self.dispatch(event, durable=False), f"query {event_name}")
            return await asyncio.wait_for(future, timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            log.warning(f"Query {event_name} ({correlation_id}) timed out after {timeout_ms}ms")
            raise QueryTimeoutError(event_name, timeout_ms) from None
        finally:
            self._pending_queries.pop(correlation_id, None)

    def reply(self, correlation_id: str, data: Any = None, error: Optional[str] = None) -> bool:
        """Resolves a pending query. Safe to call from a handler running in a worker thread."""
        future = self._pending_queries.get(correlation_id)
        if future is None or future.done():
            log.warning(f"No pending query found for correlation ID: {correlation_id}")
            return False

        response = QueryResponse(data=data, error=error)

        def _resolve():
            if not future.done():
                future.set_result(response)

        loop = future.get_loop()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            _resolve()
        else:
            loop.call_soon_threadsafe(_resolve)
        return True

    # ----------- Background tasks & lifecycle -----------

    def spawn(self, coro: Coroutine, description: str) -> asyncio.Task:
        """Starts a detached best-effort task whose errors are logged, never raised."""
        task = asyncio.create_task(coro, name=description)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task):
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error(f"Background task '{task.get_name()}' failed: {exc}", exc_info=exc)

    async def close(self):
        """Fails waiting queries, drains background tasks and resets circuit state."""
        self._closed = True
        for correlation_id, future in list(self._pending_queries.items()):
            if not future.done():
                future.set_exception(BusClosedError(f"Event bus closed while query {correlation_id} was pending"))
        self._pending_queries.clear()

        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
        self.breakers.reset()
        log.info("Event bus closed.")
