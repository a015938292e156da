import pytest
import pytest_asyncio
from tortoise import Tortoise

from event_engine.core.config import EventConfig
from event_engine.core.db import MODELS_MODULES
from event_engine.events.bus import EventBus
from event_engine.testing.testing_mocks import FakeClock


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory SQLite database per test."""
    await Tortoise.init(db_url="sqlite://:memory:", modules={"models": MODELS_MODULES})
    await Tortoise.generate_schemas()
    yield
    await Tortoise.close_connections()


@pytest.fixture
def config():
    return EventConfig(
        enabled=True,
        outbox_polling_interval_ms=10,
        default_max_retries=5,
        default_backoff_ms=0,  # retries are due immediately
        exponential_backoff=True,
        backoff_jitter=False,
        default_handler_timeout_ms=2000,
        immediate_processing=False,
        event_history_enabled=True,
        track_handler_completion=True,
        default_query_timeout_ms=2000,
        circuit_breaker_threshold=3,
        circuit_breaker_window_ms=60000,
        circuit_breaker_recovery_ms=30000,
        worker_batch_size=100,
        worker_concurrency=10,
        stuck_timeout_minutes=30,
        stuck_sweep_probability=0.0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def bus(db, config, clock):
    bus = EventBus(config, clock=clock)
    yield bus
    await bus.close()
