# event_engine/models/__init__.py
from .outbox import OutboxEvent, OutboxStatus
from .dead_letter import DeadLetterEvent
from .processing_log import ProcessingLog
from .event_history import EventHistory

# Export all models
__all__ = [
    "OutboxEvent",
    "OutboxStatus",
    "DeadLetterEvent",
    "ProcessingLog",
    "EventHistory",
]
