"""
Outbox worker.

Polls the outbox, claims due rows and delivers each one to every handler
registered for its event name. Run one per process; scale out by running
more processes, the atomic claim keeps them from double-delivering.

    python -m event_engine.consumers.outbox_worker
"""
import asyncio
import logging
import random
import signal
from typing import Callable, Optional, Sequence

from event_engine.consumers.bootstrap import DEFAULT_PROVIDERS, HandlerProvider, register_providers
from event_engine.core.config import EventConfig
from event_engine.core.db import close_db, init_db
from event_engine.core.log_config import setup_logging
from event_engine.events.bus import EventBus
from event_engine.models.outbox import OutboxEvent

log = logging.getLogger("event_worker")


class OutboxWorker:
    def __init__(self, bus: EventBus, config: Optional[EventConfig] = None, rng: Callable[[], float] = random.random):
        self.bus = bus
        self.config = config or bus.config
        self._rng = rng
        self._semaphore = asyncio.Semaphore(self.config.worker_concurrency)
        self._stop = asyncio.Event()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self):
        """Stops claiming new batches; the batch in flight is allowed to finish."""
        if not self._stop.is_set():
            log.info("Shutdown requested, draining in-flight events...")
        self._stop.set()

    async def process_record(self, record: OutboxEvent) -> bool:
        """Delivers one claimed row. Returns True when every handler succeeded."""
        async with self._semaphore:
            try:
                event = self.bus.store.reconstruct_event(record)
                results = await self.bus.dispatch(event)
            except Exception as e:
                # Corrupt row or registry bug: count it as a failed attempt
                log.error(f"Failed to dispatch outbox row {record.id} ({record.event_name}): {e}", exc_info=True)
                await self.bus.store.mark_failed(record.id, str(e) or type(e).__name__)
                return False

            failures = [r for r in results if not r.success]
            if not failures:
                await self.bus.store.mark_completed(record.id)
                log.info(f"Successfully processed event: {record.event_name} ({record.id})")
                return True

            first = failures[0]
            registration = next(
                (h for h in self.bus.registry.get_handlers(record.event_name) if h.name == first.handler_id), None
            )
            log.error(
                f"Event {record.event_name} ({record.id}) failed in handler {first.handler_id}: {first.error_message}"
            )
            await self.bus.store.mark_failed(
                record.id,
                f"[{first.handler_id}] {first.error_message}",
                retryable=all(f.retryable for f in failures),
                policy=registration.retry_policy if registration else None,
            )
            return False

    async def sweep_stuck(self) -> int:
        try:
            return await self.bus.store.release_stuck(self.config.stuck_timeout_minutes, self.config.worker_batch_size)
        except Exception as e:
            log.error(f"Error processing stuck events: {e}", exc_info=True)
            return 0

    async def run_once(self) -> int:
        """One poll cycle. Returns the number of rows claimed."""
        if self._rng() < self.config.stuck_sweep_probability:
            await self.sweep_stuck()

        records = await self.bus.store.claim_batch(self.config.worker_batch_size)
        if not records:
            return 0

        log.info(f"Processing {len(records)} pending events")
        await asyncio.gather(*(self.process_record(r) for r in records))
        return len(records)

    async def run(self):
        """Main loop: poll, process, sleep, until stop() is called."""
        self._running = True
        self._stop.clear()
        interval = self.config.outbox_polling_interval_ms / 1000.0
        log.info(f"Event worker started (polling interval: {self.config.outbox_polling_interval_ms}ms)")
        try:
            while not self._stop.is_set():
                try:
                    await self.run_once()
                except Exception as e:
                    log.error(f"Error in worker loop: {e}", exc_info=True)

                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            log.info("Event worker stopped.")


async def start_outbox_worker(providers: Sequence[HandlerProvider] = DEFAULT_PROVIDERS):
    """Entry point: connect, register handlers, run until SIGTERM/SIGINT, then drain and disconnect."""
    config = EventConfig()
    if not config.enabled:
        log.info("Event system is disabled, worker not started")
        return

    await init_db()
    bus = EventBus(config)
    register_providers(bus, providers)
    worker = OutboxWorker(bus)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, worker.stop)

    try:
        await worker.run()
    finally:
        await bus.close()
        await close_db()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(start_outbox_worker())
