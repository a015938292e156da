"""
Handler middleware pipeline.

Every handler invocation runs through a fixed chain, outermost first:

    logging -> error handling -> validation -> idempotency -> circuit breaker -> timeout -> handler

Inner links raise; the error-handling link turns any exception into a failed
HandlerResult so nothing escapes to the dispatcher.
"""
import asyncio
import inspect
import logging
import time
import weakref
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from pydantic import ValidationError
from tortoise.exceptions import IntegrityError

from event_engine.core.config import EventConfig
from event_engine.core.exceptions import HandlerTimeoutError, NonRetryableError
from event_engine.events.circuit_breaker import CircuitBreakerRegistry
from event_engine.events.types import Event, HandlerRegistration, HandlerResult
from event_engine.models.processing_log import ProcessingLog

log = logging.getLogger("event_middleware")


@dataclass
class HandlerContext:
    event: Event
    registration: HandlerRegistration
    durable: bool = True  # False for in-process deliveries that are never retried

    @property
    def handler_id(self) -> str:
        return self.registration.name


Next = Callable[[], Awaitable[HandlerResult]]
Middleware = Callable[[HandlerContext, Next], Awaitable[HandlerResult]]
Endpoint = Callable[[HandlerContext], Awaitable[HandlerResult]]


def compose_middleware(middlewares: Sequence[Middleware], endpoint: Endpoint) -> Endpoint:
    """Chains middlewares so each one wraps the rest and the endpoint."""
    middlewares = list(middlewares)

    async def run(ctx: HandlerContext) -> HandlerResult:
        async def dispatch(i: int) -> HandlerResult:
            if i == len(middlewares):
                return await endpoint(ctx)
            return await middlewares[i](ctx, lambda: dispatch(i + 1))

        return await dispatch(0)

    return run


async def invoke_handler(ctx: HandlerContext) -> HandlerResult:
    handler = ctx.registration.handler
    if inspect.iscoroutinefunction(handler):
        await handler(ctx.event)
    else:
        # Plain functions run in a thread so a blocking handler cannot stall the loop
        result = await asyncio.to_thread(handler, ctx.event)
        if inspect.isawaitable(result):
            await result
    return HandlerResult(handler_id=ctx.handler_id, success=True)


class MiddlewarePipeline:
    def __init__(
        self,
        config: EventConfig,
        breakers: CircuitBreakerRegistry,
        extra_middlewares: Sequence[Middleware] = (),
    ):
        self.config = config
        self.breakers = breakers
        # One lock per (handler, idempotency key) so concurrent redeliveries run the body once
        self._key_locks: "weakref.WeakValueDictionary" = weakref.WeakValueDictionary()
        self._run = compose_middleware(
            [
                self.logging_middleware,
                self.error_handling_middleware,
                self.validation_middleware,
                self.idempotency_middleware,
                self.circuit_breaker_middleware,
                *extra_middlewares,
                self.timeout_middleware,
            ],
            invoke_handler,
        )

    async def execute(self, event: Event, registration: HandlerRegistration, durable: bool = True) -> HandlerResult:
        return await self._run(HandlerContext(event=event, registration=registration, durable=durable))

    async def logging_middleware(self, ctx: HandlerContext, call_next: Next) -> HandlerResult:
        start = time.perf_counter()
        log.debug(f"[Event] {ctx.event.event_name} - Handler: {ctx.handler_id} - Started")
        result = await call_next()
        result.duration_ms = (time.perf_counter() - start) * 1000

        if result.skipped:
            log.info(f"[Event] {ctx.event.event_name} - Handler: {ctx.handler_id} - Skipped (already processed)")
        elif result.success:
            log.info(
                f"[Event] {ctx.event.event_name} - Handler: {ctx.handler_id} - Completed in {result.duration_ms:.0f}ms"
            )
        else:
            log.warning(
                f"[Event] {ctx.event.event_name} - Handler: {ctx.handler_id} - Failed after "
                f"{result.duration_ms:.0f}ms: {result.error_message}"
            )
        return result

    async def error_handling_middleware(self, ctx: HandlerContext, call_next: Next) -> HandlerResult:
        try:
            return await call_next()
        except NonRetryableError as e:
            log.error(
                f"[Event Error] {ctx.event.event_name} event_id={ctx.event.event_id} "
                f"handler={ctx.handler_id} non-retryable: {e}"
            )
            return HandlerResult(handler_id=ctx.handler_id, success=False, error=e, retryable=False)
        except Exception as e:
            log.error(
                f"[Event Error] {ctx.event.event_name} event_id={ctx.event.event_id} "
                f"handler={ctx.handler_id} error: {e}",
                exc_info=True,
            )
            return HandlerResult(handler_id=ctx.handler_id, success=False, error=e)

    async def validation_middleware(self, ctx: HandlerContext, call_next: Next) -> HandlerResult:
        schema = ctx.registration.schema
        if schema is not None:
            try:
                schema.model_validate(ctx.event.payload)
            except ValidationError as e:
                # A payload that fails validation will fail the same way on every retry
                raise NonRetryableError(f"Event validation failed: {e}") from e
        return await call_next()

    def resolve_idempotency_key(self, ctx: HandlerContext) -> Optional[str]:
        if ctx.registration.idempotency_key is not None:
            return ctx.registration.idempotency_key(ctx.event)
        if self.config.track_handler_completion and ctx.durable:
            # Implicit per-occurrence key: a retried row skips handlers that already succeeded
            return f"{ctx.event.event_name}:{ctx.event.event_id}"
        return None

    async def idempotency_middleware(self, ctx: HandlerContext, call_next: Next) -> HandlerResult:
        key = self.resolve_idempotency_key(ctx)
        if key is None:
            return await call_next()

        lock_key = (ctx.handler_id, key)
        lock = self._key_locks.get(lock_key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[lock_key] = lock

        async with lock:
            if await ProcessingLog.filter(idempotency_key=key, handler_id=ctx.handler_id).exists():
                return HandlerResult(handler_id=ctx.handler_id, success=True, skipped=True)

            result = await call_next()
            if result.success:
                try:
                    await ProcessingLog.create(
                        idempotency_key=key,
                        handler_id=ctx.handler_id,
                        event_id=str(ctx.event.event_id),
                    )
                except IntegrityError:
                    # Another process recorded the same key first
                    log.info(f"Idempotency key {key} for {ctx.handler_id} was already recorded.")
            return result

    async def circuit_breaker_middleware(self, ctx: HandlerContext, call_next: Next) -> HandlerResult:
        breaker = self.breakers.get(ctx.event.event_name, ctx.handler_id)
        breaker.before_call()
        try:
            result = await call_next()
        except BaseException:
            breaker.record_failure()
            raise
        breaker.record_success()
        return result

    async def timeout_middleware(self, ctx: HandlerContext, call_next: Next) -> HandlerResult:
        timeout_ms = ctx.registration.timeout_ms or self.config.default_handler_timeout_ms
        try:
            return await asyncio.wait_for(call_next(), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            raise HandlerTimeoutError(ctx.handler_id, timeout_ms) from None
