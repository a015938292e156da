from tortoise import Tortoise
from event_engine.core.config import DB_URL
import logging

log = logging.getLogger("event_db")

# Define all models modules for the ORM
MODELS_MODULES = [
    "event_engine.models.outbox",
    "event_engine.models.dead_letter",
    "event_engine.models.processing_log",
    "event_engine.models.event_history",
]


async def init_db(db_url: str = DB_URL, generate_schemas: bool = True):
    """Initializes the Tortoise ORM connection and generates schemas."""
    try:
        await Tortoise.init(
            db_url=db_url,
            modules={"models": MODELS_MODULES},
        )
        if generate_schemas:
            await Tortoise.generate_schemas(safe=True)
        log.info("Database connection established and schemas generated.")
    except Exception as e:
        log.error(f"FATAL ERROR: Could not connect to database. Error: {e}")
        # Re-raise to prevent the process from starting without a database
        raise


async def close_db():
    """Closes all database connections."""
    await Tortoise.close_connections()
    log.info("Database connections closed.")
