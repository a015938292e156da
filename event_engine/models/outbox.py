from enum import Enum
from tortoise import fields, models
import uuid


class OutboxStatus(str, Enum):
    PENDING = "pending"  # Waiting to be claimed (new, or returned for retry)
    PROCESSING = "processing"  # Claimed by exactly one worker
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"  # Retries exhausted or non-retryable failure


class OutboxEvent(models.Model):
    """
    The Outbox table stores events atomically with the producer's transaction.
    This is the core of the Transactional Outbox Pattern.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    event_name = fields.CharField(max_length=255)  # e.g., 'inventory:stock.reserved'
    source_module = fields.CharField(max_length=128)
    payload = fields.JSONField()
    metadata = fields.JSONField()  # event_id, emitted_at, correlation_id, version
    status = fields.CharEnumField(OutboxStatus, max_length=32, default=OutboxStatus.PENDING)
    retry_count = fields.IntField(default=0)
    max_retries = fields.IntField(default=5)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)
    processing_started_at = fields.DatetimeField(null=True)
    next_attempt_at = fields.DatetimeField(null=True)
    last_error = fields.TextField(null=True)

    class Meta:
        table = "event_outbox"
        indexes = [
            ("status", "created_at"),  # Claim scan: oldest pending first
            ("status", "processing_started_at"),  # Stuck sweep
            ("event_name",),
        ]

    def __str__(self):
        return f"{self.event_name} ({self.id})"
