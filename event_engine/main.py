from contextlib import asynccontextmanager
from fastapi import FastAPI, status
from event_engine.core.db import init_db, close_db
from event_engine.core.config import EventConfig, PROJECT_NAME, VERSION
from event_engine.core.exception_handlers import setup_exception_handlers
from event_engine.core.log_config import setup_logging
from event_engine.api.v1.events import router as events_router
from event_engine.consumers.bootstrap import DEFAULT_PROVIDERS, register_providers
from event_engine.events.bus import EventBus
import logging

log = logging.getLogger("event_api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles startup and shutdown events."""
    setup_logging()
    log.info(f"Starting {PROJECT_NAME} v{VERSION}...")
    await init_db()  # Connect to DB and generate schemas
    app.state.bus = EventBus(EventConfig())
    register_providers(app.state.bus, DEFAULT_PROVIDERS)
    yield
    await app.state.bus.close()
    await close_db()
    log.info(f"{PROJECT_NAME} stopped.")


app = FastAPI(
    title=PROJECT_NAME,
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Operator endpoints for outbox inspection and dead-letter replay
app.include_router(events_router, prefix="/api/v1/events", tags=["Event Operations"])


setup_exception_handlers(app)


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Simple health check endpoint."""
    return {"status": "ok", "app_name": PROJECT_NAME}
