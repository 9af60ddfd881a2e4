"""
Admin Endpoints - dead letters, manual requeue and ledger inspection.

All endpoints require X-Admin-API-Key.
"""
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from reviewbot.api.dependencies.admin_auth import require_admin_api_key
from reviewbot.core import metrics
from reviewbot.core.exceptions import NotFoundException, ValidationException
from reviewbot.core.logging import get_logger
from reviewbot.db.database import get_db
from reviewbot.domain.envelope import TaskEnvelope
from reviewbot.domain.services.dead_letters import DeadLetterStore
from reviewbot.domain.services.ledger import IdempotencyLedger
from reviewbot.workers.broker import MessageBroker, get_broker

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


class DeadLetterResponse(BaseModel):
    id: int
    envelope_id: str
    delivery_id: str
    task_type: str
    reason: str
    attempts: int
    created_at: datetime | None
    requeued_at: datetime | None


class LedgerRecordResponse(BaseModel):
    delivery_id: str
    task_type: str
    status: str
    owner: str | None
    lease_expires_at: datetime | None
    attempts: int
    created_at: datetime | None
    completed_at: datetime | None
    last_error: str | None


@router.get("/dead-letters", response_model=list[DeadLetterResponse])
async def list_dead_letters(
    limit: int = Query(50, ge=1, le=500),
    include_requeued: bool = Query(False),
    db: AsyncSession = Depends(get_db),
) -> list[DeadLetterResponse]:
    rows = await DeadLetterStore(db).list_recent(limit=limit, include_requeued=include_requeued)
    return [
        DeadLetterResponse(
            id=row.id,
            envelope_id=row.envelope_id,
            delivery_id=row.delivery_id,
            task_type=row.task_type,
            reason=row.reason,
            attempts=row.attempts,
            created_at=row.created_at,
            requeued_at=row.requeued_at,
        )
        for row in rows
    ]


@router.post("/dead-letters/{dead_letter_id}/requeue")
async def requeue_dead_letter(
    dead_letter_id: int,
    db: AsyncSession = Depends(get_db),
    broker: MessageBroker = Depends(get_broker),
) -> dict:
    """Publish the envelope again with attempt 0 after clearing its failed ledger record"""
    store = DeadLetterStore(db)
    row = await store.get(dead_letter_id)
    if row is None:
        raise NotFoundException("Dead letter", dead_letter_id)
    if row.requeued_at is not None:
        raise ValidationException(f"Dead letter {dead_letter_id} was already requeued")

    envelope = TaskEnvelope.from_message(row.envelope).with_attempt(0)
    await IdempotencyLedger(db).reset_failed(envelope.key)
    await run_in_threadpool(broker.publish, envelope)
    metrics.record_published(envelope.task_type.value)
    await store.mark_requeued(row)

    logger.info(
        "Dead letter requeued",
        extra_data={"dead_letter_id": dead_letter_id, "envelope_id": envelope.envelope_id},
    )
    return {"status": "requeued", "envelope_id": envelope.envelope_id}


@router.get("/ledger/{delivery_id:path}", response_model=list[LedgerRecordResponse])
async def ledger_records(
    delivery_id: str,
    db: AsyncSession = Depends(get_db),
) -> list[LedgerRecordResponse]:
    records = await IdempotencyLedger(db).list_for_delivery(delivery_id)
    if not records:
        raise NotFoundException("Ledger records for delivery", delivery_id)
    return [
        LedgerRecordResponse(
            delivery_id=r.delivery_id,
            task_type=r.task_type,
            status=r.status,
            owner=r.owner,
            lease_expires_at=r.lease_expires_at,
            attempts=r.attempts,
            created_at=r.created_at,
            completed_at=r.completed_at,
            last_error=r.last_error,
        )
        for r in records
    ]

