from tortoise import fields, models
import uuid


class EventHistory(models.Model):
    """Append-only audit trail of emitted events. Never read by the worker."""
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    event_id = fields.CharField(max_length=64)
    event_name = fields.CharField(max_length=255)
    source_module = fields.CharField(max_length=128)
    payload = fields.JSONField()
    metadata = fields.JSONField()
    emitted_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "event_history"
        indexes = [
            ("event_name",),
            ("emitted_at",),
            ("event_id",),
        ]
