"""
Outbox store.

Every state transition of an outbox row goes through this module:

    pending --claim--> processing --complete--> completed
                           |
                           +--fail--> pending (retry_count + 1, next_attempt_at)
                           +--fail--> dead_letter (+ DeadLetterEvent row)

Claims are a conditional UPDATE on status='pending'; when two workers race
for the same row, the one that sees zero affected rows simply skips it.
"""
import logging
import random
from datetime import timedelta
from typing import Any, Callable, List, Optional
from uuid import UUID

from tortoise import timezone
from tortoise.expressions import Q
from tortoise.transactions import in_transaction

from event_engine.core.config import EventConfig
from event_engine.events.types import Event, EventMetadata, RetryPolicy
from event_engine.models.dead_letter import DeadLetterEvent
from event_engine.models.outbox import OutboxEvent, OutboxStatus

log = logging.getLogger("outbox_store")

STUCK_EVENT_ERROR = "Event was stuck in processing state"


def calculate_backoff_delay(
    retry_count: int,
    base_delay_ms: int = 1000,
    max_delay_ms: int = 60000,
    exponential: bool = True,
    jitter: bool = True,
    rng: Callable[[], float] = random.random,
) -> int:
    """
    Delay before the next attempt, in milliseconds.

    Exponential: base * 2^retry_count, otherwise a flat base. Jitter scales the
    delay by a random multiplier in [0.5, 1.5]. The result never exceeds max_delay_ms.
    """
    retry_count = max(retry_count, 0)
    if exponential:
        # Stop doubling once past the cap so huge retry counts don't overflow
        delay = base_delay_ms * (2 ** min(retry_count, 62))
    else:
        delay = base_delay_ms
    delay = min(delay, max_delay_ms)

    if jitter:
        delay = delay * (0.5 + rng())
        delay = min(delay, max_delay_ms)

    return int(delay)


class OutboxStore:
    def __init__(self, config: Optional[EventConfig] = None, rng: Callable[[], float] = random.random):
        self.config = config or EventConfig()
        self._rng = rng

    def backoff(self, retry_count: int, policy: Optional[RetryPolicy] = None) -> int:
        if policy is None:
            return calculate_backoff_delay(
                retry_count,
                base_delay_ms=self.config.default_backoff_ms,
                max_delay_ms=self.config.max_backoff_ms,
                exponential=self.config.exponential_backoff,
                jitter=self.config.backoff_jitter,
                rng=self._rng,
            )
        return calculate_backoff_delay(
            retry_count,
            base_delay_ms=policy.backoff_ms,
            max_delay_ms=self.config.max_backoff_ms,
            exponential=policy.exponential,
            jitter=policy.jitter,
            rng=self._rng,
        )

    async def store(self, event: Event, max_retries: Optional[int] = None, conn: Any = None) -> OutboxEvent:
        """
        Inserts a pending row for the event.

        CRITICAL: pass the producer's transaction as 'conn' so the row commits
        (or rolls back) together with the business write.
        """
        return await OutboxEvent.create(
            event_name=event.event_name,
            source_module=event.source_module,
            payload=event.payload,
            metadata=event.metadata.model_dump(mode="json"),
            status=OutboxStatus.PENDING,
            retry_count=0,
            max_retries=self.config.default_max_retries if max_retries is None else max_retries,
            using_db=conn,
        )

    async def get(self, outbox_id: UUID) -> Optional[OutboxEvent]:
        return await OutboxEvent.get_or_none(id=outbox_id)

    async def claim(self, outbox_id: UUID) -> bool:
        """Atomically moves one row from pending to processing. False means another worker won."""
        now = timezone.now()
        updated = await OutboxEvent.filter(id=outbox_id, status=OutboxStatus.PENDING).update(
            status=OutboxStatus.PROCESSING,
            processing_started_at=now,
            updated_at=now,
        )
        return updated == 1

    async def claim_batch(self, limit: int) -> List[OutboxEvent]:
        """Claims up to 'limit' due pending rows, oldest first."""
        now = timezone.now()
        candidate_ids = await (
            OutboxEvent.filter(status=OutboxStatus.PENDING)
            .filter(Q(next_attempt_at__isnull=True) | Q(next_attempt_at__lte=now))
            .order_by("created_at")
            .limit(limit)
            .values_list("id", flat=True)
        )

        claimed = []
        for outbox_id in candidate_ids:
            if await self.claim(outbox_id):
                claimed.append(outbox_id)
            else:
                log.debug(f"Lost claim race for outbox row {outbox_id}, skipping.")

        if not claimed:
            return []
        return await OutboxEvent.filter(id__in=claimed).order_by("created_at")

    async def mark_completed(self, outbox_id: UUID) -> bool:
        now = timezone.now()
        # A sweep may have put a slow row back to pending; the work is done either way
        updated = await OutboxEvent.filter(
            id=outbox_id, status__in=[OutboxStatus.PROCESSING, OutboxStatus.PENDING]
        ).update(
            status=OutboxStatus.COMPLETED,
            processing_started_at=None,
            next_attempt_at=None,
            updated_at=now,
        )
        if not updated:
            log.warning(f"Outbox row {outbox_id} was not in a completable state.")
        return updated == 1

    async def mark_failed(
        self,
        outbox_id: UUID,
        error_message: str,
        retryable: bool = True,
        policy: Optional[RetryPolicy] = None,
    ) -> bool:
        """
        Records a failed attempt. Returns True if the row will be retried,
        False if it was moved to dead letter (or was no longer processing).
        """
        record = await OutboxEvent.get_or_none(id=outbox_id)
        if record is None:
            log.warning(f"Outbox row {outbox_id} not found while marking failed.")
            return False
        if record.status != OutboxStatus.PROCESSING:
            log.warning(f"Outbox row {outbox_id} is {record.status.value}, not processing; failure ignored.")
            return False

        retry_count = record.retry_count + 1
        max_retries = record.max_retries
        if policy is not None:
            max_retries = min(max_retries, policy.max_attempts)

        if retryable and retry_count <= max_retries:
            delay_ms = self.backoff(retry_count, policy)
            now = timezone.now()
            updated = await OutboxEvent.filter(id=outbox_id, status=OutboxStatus.PROCESSING).update(
                status=OutboxStatus.PENDING,
                retry_count=retry_count,
                last_error=error_message,
                processing_started_at=None,
                next_attempt_at=now + timedelta(milliseconds=delay_ms),
                updated_at=now,
            )
            if updated:
                log.info(
                    f"Outbox row {outbox_id} ({record.event_name}) will retry in {delay_ms}ms "
                    f"(attempt {retry_count}/{max_retries})"
                )
            return updated == 1

        reason = error_message if retryable else f"Non-retryable failure: {error_message}"
        await self._move_to_dead_letter(record, retry_count, reason)
        return False

    async def _move_to_dead_letter(self, record: OutboxEvent, retry_count: int, reason: str) -> bool:
        now = timezone.now()
        async with in_transaction() as conn:
            updated = await OutboxEvent.filter(id=record.id, status=OutboxStatus.PROCESSING).using_db(conn).update(
                status=OutboxStatus.DEAD_LETTER,
                retry_count=retry_count,
                last_error=reason,
                processing_started_at=None,
                next_attempt_at=None,
                updated_at=now,
            )
            if not updated:
                return False
            await DeadLetterEvent.create(
                outbox_id=record.id,
                event_name=record.event_name,
                source_module=record.source_module,
                payload=record.payload,
                metadata=record.metadata,
                retry_count=retry_count,
                max_retries=record.max_retries,
                failure_reason=reason or "Max retries exceeded",
                first_attempt_at=record.created_at,
                using_db=conn,
            )
        log.error(
            f"Outbox row {record.id} ({record.event_name}) moved to dead letter after "
            f"{retry_count} failed attempt(s): {reason}"
        )
        return True

    async def find_stuck(self, timeout_minutes: int, limit: int = 100) -> List[OutboxEvent]:
        """Processing rows older than the timeout, presumed orphaned by a crashed worker."""
        cutoff = timezone.now() - timedelta(minutes=timeout_minutes)
        return await (
            OutboxEvent.filter(status=OutboxStatus.PROCESSING, processing_started_at__lte=cutoff)
            .order_by("processing_started_at")
            .limit(limit)
        )

    async def release_stuck(self, timeout_minutes: int, limit: int = 100) -> int:
        """Counts each stuck row as one failed attempt and returns it to the retry cycle."""
        stuck = await self.find_stuck(timeout_minutes, limit)
        for record in stuck:
            await self.mark_failed(record.id, STUCK_EVENT_ERROR)
        if stuck:
            log.warning(f"Released {len(stuck)} stuck outbox row(s).")
        return len(stuck)

    @staticmethod
    def reconstruct_event(record: OutboxEvent) -> Event:
        return Event(
            event_name=record.event_name,
            payload=record.payload,
            source_module=record.source_module,
            metadata=EventMetadata.model_validate(record.metadata),
        )

    async def replay_dead_letter(self, dead_letter: DeadLetterEvent, conn: Any = None) -> OutboxEvent:
        """Operator replay: a fresh pending row with the same event identity. The dead letter is untouched."""
        return await OutboxEvent.create(
            event_name=dead_letter.event_name,
            source_module=dead_letter.source_module,
            payload=dead_letter.payload,
            metadata=dead_letter.metadata,
            status=OutboxStatus.PENDING,
            retry_count=0,
            max_retries=dead_letter.max_retries,
            using_db=conn,
        )
