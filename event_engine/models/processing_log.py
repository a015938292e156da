from tortoise import fields, models
import uuid


class ProcessingLog(models.Model):
    """
    Idempotency ledger for handlers. A row for (idempotency_key, handler_id)
    means that handler already ran to completion for that logical occurrence.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    idempotency_key = fields.CharField(max_length=500)
    handler_id = fields.CharField(max_length=255)
    event_id = fields.CharField(max_length=64, null=True)
    processed_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "event_processing_log"
        unique_together = (("idempotency_key", "handler_id"),)
        indexes = [
            ("processed_at",),
        ]
