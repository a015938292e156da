from tortoise import fields, models
import uuid


class DeadLetterEvent(models.Model):
    """
    Terminal copy of an outbox row that exhausted its retries.
    Written once, never updated. Operators inspect and replay from here.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    outbox_id = fields.UUIDField()
    event_name = fields.CharField(max_length=255)
    source_module = fields.CharField(max_length=128)
    payload = fields.JSONField()
    metadata = fields.JSONField()
    retry_count = fields.IntField()
    max_retries = fields.IntField()
    failure_reason = fields.TextField()
    first_attempt_at = fields.DatetimeField(null=True)
    failed_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "event_dead_letter"
        indexes = [
            ("event_name",),
            ("failed_at",),
            ("outbox_id",),
        ]
