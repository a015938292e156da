import os
from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() not in ("false", "0", "no", "off")


# Database Configuration
DB_URL = os.getenv("DATABASE_URL", "postgres://user:password@db:5432/events_db")

# Application Metadata
PROJECT_NAME = "Event Delivery Engine"
VERSION = "1.0.0"

# Event System Configuration
EVENT_SYSTEM_ENABLED = _env_bool("EVENT_SYSTEM_ENABLED", True)
OUTBOX_POLLING_INTERVAL_MS = int(os.getenv("EVENT_OUTBOX_POLLING_INTERVAL", 5000))
DEFAULT_MAX_RETRIES = int(os.getenv("EVENT_DEFAULT_MAX_RETRIES", 5))
DEFAULT_BACKOFF_MS = int(os.getenv("EVENT_DEFAULT_BACKOFF_MS", 1000))
MAX_BACKOFF_MS = int(os.getenv("EVENT_MAX_BACKOFF_MS", 60000))
EXPONENTIAL_BACKOFF = _env_bool("EVENT_EXPONENTIAL_BACKOFF", True)
BACKOFF_JITTER = _env_bool("EVENT_BACKOFF_JITTER", True)
DEFAULT_HANDLER_TIMEOUT_MS = int(os.getenv("EVENT_DEFAULT_TIMEOUT", 30000))
MAX_PAYLOAD_SIZE_BYTES = int(os.getenv("EVENT_MAX_PAYLOAD_SIZE", 1048576))  # 1MB
EVENT_HISTORY_ENABLED = _env_bool("EVENT_HISTORY_ENABLED", True)
# Bypasses the outbox entirely. Events are lost if the process dies. Local/dev only.
IMMEDIATE_PROCESSING = _env_bool("EVENT_IMMEDIATE_PROCESSING", False)
TRACK_HANDLER_COMPLETION = _env_bool("EVENT_TRACK_HANDLER_COMPLETION", True)
DEFAULT_QUERY_TIMEOUT_MS = int(os.getenv("EVENT_DEFAULT_QUERY_TIMEOUT", 5000))

# Circuit Breaker Configuration
CIRCUIT_BREAKER_THRESHOLD = int(os.getenv("EVENT_CIRCUIT_BREAKER_THRESHOLD", 5))
CIRCUIT_BREAKER_WINDOW_MS = int(os.getenv("EVENT_CIRCUIT_BREAKER_TIME_WINDOW", 60000))
CIRCUIT_BREAKER_RECOVERY_MS = int(os.getenv("EVENT_CIRCUIT_BREAKER_RECOVERY_TIMEOUT", 30000))

# Outbox Worker Configuration
WORKER_BATCH_SIZE = int(os.getenv("EVENT_WORKER_BATCH_SIZE", 100))  # Records claimed per poll
WORKER_CONCURRENCY = int(os.getenv("EVENT_WORKER_CONCURRENCY", 10))  # Records in flight at once
STUCK_TIMEOUT_MINUTES = int(os.getenv("EVENT_STUCK_TIMEOUT_MINUTES", 30))
STUCK_SWEEP_PROBABILITY = float(os.getenv("EVENT_STUCK_SWEEP_PROBABILITY", 0.1))


class EventConfig(BaseModel):
    """
    Settings for one EventBus instance.
    Defaults come from the environment; tests build their own instances.
    """
    enabled: bool = EVENT_SYSTEM_ENABLED
    outbox_polling_interval_ms: int = Field(OUTBOX_POLLING_INTERVAL_MS, ge=0)
    default_max_retries: int = Field(DEFAULT_MAX_RETRIES, ge=0)
    default_backoff_ms: int = Field(DEFAULT_BACKOFF_MS, ge=0)
    max_backoff_ms: int = Field(MAX_BACKOFF_MS, ge=0)
    exponential_backoff: bool = EXPONENTIAL_BACKOFF
    backoff_jitter: bool = BACKOFF_JITTER
    default_handler_timeout_ms: int = Field(DEFAULT_HANDLER_TIMEOUT_MS, gt=0)
    max_payload_size_bytes: int = Field(MAX_PAYLOAD_SIZE_BYTES, gt=0)
    event_history_enabled: bool = EVENT_HISTORY_ENABLED
    immediate_processing: bool = IMMEDIATE_PROCESSING
    track_handler_completion: bool = TRACK_HANDLER_COMPLETION
    default_query_timeout_ms: int = Field(DEFAULT_QUERY_TIMEOUT_MS, gt=0)
    circuit_breaker_threshold: int = Field(CIRCUIT_BREAKER_THRESHOLD, ge=1)
    circuit_breaker_window_ms: int = Field(CIRCUIT_BREAKER_WINDOW_MS, gt=0)
    circuit_breaker_recovery_ms: int = Field(CIRCUIT_BREAKER_RECOVERY_MS, ge=0)
    worker_batch_size: int = Field(WORKER_BATCH_SIZE, ge=1)
    worker_concurrency: int = Field(WORKER_CONCURRENCY, ge=1)
    stuck_timeout_minutes: int = Field(STUCK_TIMEOUT_MINUTES, ge=1)
    stuck_sweep_probability: float = Field(STUCK_SWEEP_PROBABILITY, ge=0, le=1)
