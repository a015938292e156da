import asyncio
from datetime import timedelta

import pytest
from tortoise import timezone

from event_engine.consumers.outbox_worker import OutboxWorker
from event_engine.core.exceptions import NonRetryableError
from event_engine.events.types import RetryPolicy
from event_engine.models.dead_letter import DeadLetterEvent
from event_engine.models.outbox import OutboxEvent, OutboxStatus

NO_BACKOFF = RetryPolicy(max_attempts=2, backoff_ms=0, jitter=False)


@pytest.fixture
def worker(bus):
    return OutboxWorker(bus)


class TestDelivery:

    @pytest.mark.asyncio
    async def test_event_is_delivered_and_completed(self, bus, worker):
        received = []

        async def reserve(event):
            received.append(event.payload)

        bus.register("inventory:stock.reserved", reserve, module="orders")
        event = await bus.emit("inventory:stock.reserved", {"productId": "p1", "qty": 2}, "inventory")

        assert await worker.run_once() == 1

        assert received == [{"productId": "p1", "qty": 2}]
        row = await OutboxEvent.get(event_name="inventory:stock.reserved")
        assert row.status == OutboxStatus.COMPLETED
        assert row.metadata["event_id"] == str(event.event_id)
        assert await DeadLetterEvent.all().count() == 0
        assert await worker.run_once() == 0

    @pytest.mark.asyncio
    async def test_event_without_handlers_completes(self, bus, worker):
        await bus.emit("audit:thing.happened", {}, "audit")

        await worker.run_once()

        assert (await OutboxEvent.first()).status == OutboxStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_always_failing_handler_ends_in_dead_letter(self, bus, worker):
        async def broken(event):
            raise RuntimeError("downstream unavailable")

        bus.register("billing:invoice.requested", broken, module="billing", handler_id="invoicer", retry_policy=NO_BACKOFF)
        await bus.emit("billing:invoice.requested", {"orderId": 1}, "orders")

        for _ in range(3):
            assert await worker.run_once() == 1

        row = await OutboxEvent.first()
        assert row.status == OutboxStatus.DEAD_LETTER
        assert row.retry_count == 3
        dead = await DeadLetterEvent.get(outbox_id=row.id)
        assert dead.failure_reason
        assert "invoicer" in dead.failure_reason
        assert "downstream unavailable" in dead.failure_reason
        assert await worker.run_once() == 0

    @pytest.mark.asyncio
    async def test_succeeded_handler_is_not_rerun_on_retry(self, bus, worker):
        calls = {"ok": 0, "flaky": 0}

        async def ok(event):
            calls["ok"] += 1

        async def flaky(event):
            calls["flaky"] += 1
            if calls["flaky"] == 1:
                raise RuntimeError("first attempt fails")

        bus.register("projects:project.created", ok, module="tasks", handler_id="ok")
        bus.register("projects:project.created", flaky, module="notify", handler_id="flaky", retry_policy=NO_BACKOFF)
        await bus.emit("projects:project.created", {"projectId": "x"}, "projects")

        await worker.run_once()
        row = await OutboxEvent.first()
        assert row.status == OutboxStatus.PENDING
        assert row.retry_count == 1

        await worker.run_once()
        row = await OutboxEvent.first()
        assert row.status == OutboxStatus.COMPLETED
        assert calls == {"ok": 1, "flaky": 2}

    @pytest.mark.asyncio
    async def test_non_retryable_failure_dead_letters_immediately(self, bus, worker):
        async def reject(event):
            raise NonRetryableError("unknown product")

        bus.register("inventory:stock.reserved", reject, module="orders")
        await bus.emit("inventory:stock.reserved", {"productId": "nope"}, "inventory")

        await worker.run_once()

        row = await OutboxEvent.first()
        assert row.status == OutboxStatus.DEAD_LETTER
        dead = await DeadLetterEvent.get(outbox_id=row.id)
        assert dead.retry_count == 1
        assert "unknown product" in dead.failure_reason

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, db, config):
        from event_engine.events.bus import EventBus

        bounded = config.model_copy(update={"worker_concurrency": 2, "track_handler_completion": False})
        bus = EventBus(bounded)
        worker = OutboxWorker(bus)
        in_flight, peak = 0, 0

        async def slow(event):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.02)
            in_flight -= 1

        bus.register("reports:report.requested", slow, module="reports")
        for i in range(6):
            await bus.emit("reports:report.requested", {"n": i}, "reports")

        assert await worker.run_once() == 6
        assert peak == 2
        assert await OutboxEvent.filter(status=OutboxStatus.COMPLETED).count() == 6
        await bus.close()


class TestStuckSweep:

    @pytest.mark.asyncio
    async def test_sweep_releases_stuck_rows_before_claiming(self, bus, config):
        worker = OutboxWorker(bus, config.model_copy(update={"stuck_sweep_probability": 0.5}), rng=lambda: 0.0)
        calls = []

        async def handler(event):
            calls.append(event.payload)

        bus.register("orders:order.created", handler, module="billing")
        await bus.emit("orders:order.created", {"orderId": 1}, "orders")
        record = (await bus.store.claim_batch(1))[0]
        # A worker crashed mid-delivery an hour ago
        await OutboxEvent.filter(id=record.id).update(processing_started_at=timezone.now() - timedelta(hours=1))

        await worker.run_once()

        row = await OutboxEvent.get(id=record.id)
        assert row.status == OutboxStatus.COMPLETED
        assert row.retry_count == 1
        assert calls == [{"orderId": 1}]

    @pytest.mark.asyncio
    async def test_no_sweep_when_roll_misses(self, bus, config):
        worker = OutboxWorker(bus, config.model_copy(update={"stuck_sweep_probability": 0.1}), rng=lambda: 0.5)
        await bus.emit("orders:order.created", {"orderId": 1}, "orders")
        record = (await bus.store.claim_batch(1))[0]
        await OutboxEvent.filter(id=record.id).update(processing_started_at=timezone.now() - timedelta(hours=1))

        assert await worker.run_once() == 0
        assert (await OutboxEvent.get(id=record.id)).status == OutboxStatus.PROCESSING


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_run_processes_until_stopped(self, bus, worker):
        done = asyncio.Event()

        async def handler(event):
            done.set()

        bus.register("orders:order.created", handler, module="billing")
        await bus.emit("orders:order.created", {"orderId": 1}, "orders")

        task = asyncio.create_task(worker.run())
        await asyncio.wait_for(done.wait(), timeout=2)
        assert worker.is_running

        worker.stop()
        await asyncio.wait_for(task, timeout=2)

        assert not worker.is_running
        assert (await OutboxEvent.first()).status == OutboxStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self, bus, worker, monkeypatch):
        attempts = []

        async def flaky_claim(limit):
            attempts.append(limit)
            if len(attempts) == 1:
                raise RuntimeError("database restarted")
            worker.stop()
            return []

        monkeypatch.setattr(bus.store, "claim_batch", flaky_claim)

        await asyncio.wait_for(worker.run(), timeout=2)

        assert len(attempts) == 2
