from typing import Dict, List, Optional
from uuid import UUID

from tortoise.functions import Count
from tortoise.transactions import in_transaction

from event_engine.events.outbox import OutboxStore
from event_engine.models.dead_letter import DeadLetterEvent
from event_engine.models.outbox import OutboxEvent, OutboxStatus


async def list_dead_letters(event_name: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[DeadLetterEvent]:
    """Most recent dead letters first, optionally filtered by event name."""
    query = DeadLetterEvent.all()
    if event_name:
        query = query.filter(event_name=event_name)
    return await query.order_by("-failed_at").offset(offset).limit(limit)


async def get_dead_letter(dead_letter_id: UUID) -> Optional[DeadLetterEvent]:
    return await DeadLetterEvent.get_or_none(id=dead_letter_id)


async def replay_dead_letter(dead_letter_id: UUID, store: OutboxStore) -> OutboxEvent:
    """
    Operator-initiated replay. Queues a new pending outbox row carrying the
    original event; the dead-letter record itself is never modified.
    """
    async with in_transaction() as conn:
        dead_letter = await DeadLetterEvent.get_or_none(id=dead_letter_id).using_db(conn)
        if not dead_letter:
            raise ValueError("Dead letter not found")
        return await store.replay_dead_letter(dead_letter, conn=conn)


async def outbox_stats() -> Dict[str, int]:
    """Row count per outbox status; statuses with no rows report zero."""
    rows = await OutboxEvent.annotate(count=Count("id")).group_by("status").values("status", "count")
    stats = {status.value: 0 for status in OutboxStatus}
    for row in rows:
        status = row["status"]
        stats[status.value if isinstance(status, OutboxStatus) else str(status)] = row["count"]
    return stats
