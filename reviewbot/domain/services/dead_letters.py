"""
Dead letter store - durable, queryable record of dead-lettered envelopes.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reviewbot.core.logging import get_logger
from reviewbot.db.models.dead_letter import DeadLetter
from reviewbot.db.models.idempotency_record import utcnow
from reviewbot.domain.envelope import TaskEnvelope

logger = get_logger(__name__)

_MAX_REASON_CHARS = 1000


class DeadLetterStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def add(self, envelope: TaskEnvelope, reason: str) -> DeadLetter:
        """Persist a dead letter; a redelivered DLQ message does not create a second row"""
        existing = await self.db.execute(
            select(DeadLetter).where(
                DeadLetter.envelope_id == envelope.envelope_id,
                DeadLetter.attempts == envelope.attempt,
                DeadLetter.requeued_at.is_(None),
            )
        )
        row = existing.scalars().first()
        if row is not None:
            return row

        row = DeadLetter(
            envelope_id=envelope.envelope_id,
            delivery_id=envelope.delivery_id,
            task_type=envelope.task_type.value,
            envelope=envelope.to_message(),
            reason=(reason or "unspecified")[:_MAX_REASON_CHARS],
            attempts=envelope.attempt,
        )
        self.db.add(row)
        await self.db.commit()
        await self.db.refresh(row)
        logger.warning(
            "Dead letter stored",
            extra_data={"dead_letter_id": row.id, "envelope_id": row.envelope_id, "reason": row.reason},
        )
        return row

    async def list_recent(self, *, limit: int = 50, include_requeued: bool = False) -> list[DeadLetter]:
        query = select(DeadLetter).order_by(DeadLetter.created_at.desc(), DeadLetter.id.desc())
        if not include_requeued:
            query = query.where(DeadLetter.requeued_at.is_(None))
        result = await self.db.execute(query.limit(limit))
        return list(result.scalars().all())

    async def get(self, dead_letter_id: int) -> DeadLetter | None:
        return await self.db.get(DeadLetter, dead_letter_id)

    async def mark_requeued(self, row: DeadLetter) -> None:
        row.requeued_at = utcnow()
        await self.db.commit()
