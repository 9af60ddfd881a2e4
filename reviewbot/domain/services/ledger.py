"""
Idempotency Ledger - the single source of truth for "did the side effect
already happen".

Broker acknowledgment and the external call are not atomic: a worker can
finish the call and die before acking, and the broker will redeliver. The
ledger is what stops the redelivered copy from commenting or merging twice.

Every state change is a single conditional statement (insert-if-absent or
UPDATE ... WHERE <expected state>), never read-then-write, so two workers
can never both believe they hold the same claim.
"""
from __future__ import annotations

import enum
from datetime import datetime, timedelta

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from reviewbot.core.config import settings
from reviewbot.core.logging import get_logger
from reviewbot.db.models.idempotency_record import IdempotencyRecord, RecordStatus, utcnow

logger = get_logger(__name__)

LedgerKey = tuple[str, str]

_MAX_ERROR_CHARS = 1000


class ClaimResult(str, enum.Enum):
    CLAIMED = "claimed"
    ALREADY_PENDING = "already_pending"
    ALREADY_COMPLETED = "already_completed"
    FAILED_PERMANENT = "failed_permanent"


def _key_filter(key: LedgerKey):
    delivery_id, task_type = key
    return (
        IdempotencyRecord.delivery_id == delivery_id,
        IdempotencyRecord.task_type == task_type,
    )


class IdempotencyLedger:
    """Lease-based claims on (delivery id, task type) keys"""

    def __init__(self, db: AsyncSession, lease_seconds: int | None = None):
        self.db = db
        self.lease_seconds = lease_seconds or settings.LEDGER_LEASE_SECONDS

    async def _insert_if_absent(self, values: dict) -> bool:
        """INSERT that silently does nothing when the key exists. True if inserted."""
        dialect = self.db.bind.dialect.name if self.db.bind is not None else ""

        if dialect == "postgresql":
            stmt = postgresql.insert(IdempotencyRecord).values(**values).on_conflict_do_nothing()
        elif dialect == "sqlite":
            stmt = sqlite.insert(IdempotencyRecord).values(**values).on_conflict_do_nothing()
        else:
            try:
                await self.db.execute(insert(IdempotencyRecord).values(**values))
                await self.db.commit()
                return True
            except IntegrityError:
                await self.db.rollback()
                return False

        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount == 1

    async def try_claim(
        self,
        key: LedgerKey,
        owner: str,
        *,
        lease_seconds: int | None = None,
        now: datetime | None = None,
    ) -> ClaimResult:
        """
        Claim a key for owner.

        CLAIMED when the key is new, when its lease expired or was released,
        or when owner already holds it (redelivery to the same worker).
        """
        now = now or utcnow()
        lease_until = now + timedelta(seconds=lease_seconds or self.lease_seconds)
        delivery_id, task_type = key

        inserted = await self._insert_if_absent({
            "delivery_id": delivery_id,
            "task_type": task_type,
            "status": RecordStatus.PENDING.value,
            "owner": owner,
            "lease_expires_at": lease_until,
            "attempts": 1,
            "created_at": now,
        })
        if inserted:
            logger.debug("Ledger key claimed (new)", extra_data={"key": list(key), "owner": owner})
            return ClaimResult.CLAIMED

        result = await self.db.execute(
            update(IdempotencyRecord)
            .where(
                *_key_filter(key),
                IdempotencyRecord.status == RecordStatus.PENDING.value,
                or_(
                    IdempotencyRecord.lease_expires_at.is_(None),
                    IdempotencyRecord.lease_expires_at <= now,
                    IdempotencyRecord.owner == owner,
                ),
            )
            .values(
                owner=owner,
                lease_expires_at=lease_until,
                attempts=IdempotencyRecord.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount == 1:
            logger.info("Ledger key reclaimed", extra_data={"key": list(key), "owner": owner})
            return ClaimResult.CLAIMED

        record = await self.get(key)
        if record is None:
            # purged between our insert and update; let the broker bring it back
            return ClaimResult.ALREADY_PENDING
        if record.status == RecordStatus.COMPLETED.value:
            return ClaimResult.ALREADY_COMPLETED
        if record.status == RecordStatus.FAILED_PERMANENT.value:
            return ClaimResult.FAILED_PERMANENT
        return ClaimResult.ALREADY_PENDING

    async def complete(self, key: LedgerKey, owner: str) -> bool:
        """
        Mark the key completed. Returns False if owner had lost its lease;
        the key is still marked completed because the side effect happened.
        """
        now = utcnow()
        result = await self.db.execute(
            update(IdempotencyRecord)
            .where(
                *_key_filter(key),
                IdempotencyRecord.status == RecordStatus.PENDING.value,
                IdempotencyRecord.owner == owner,
            )
            .values(
                status=RecordStatus.COMPLETED.value,
                completed_at=now,
                lease_expires_at=None,
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await self.db.commit()
            return True

        await self.db.execute(
            update(IdempotencyRecord)
            .where(*_key_filter(key), IdempotencyRecord.status == RecordStatus.PENDING.value)
            .values(
                status=RecordStatus.COMPLETED.value,
                completed_at=now,
                owner=owner,
                lease_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        logger.warning(
            "Completed a ledger key after losing its lease",
            extra_data={"key": list(key), "owner": owner},
        )
        return False

    async def release(self, key: LedgerKey, owner: str, error: str | None = None) -> bool:
        """Give up a claim so the next delivery can take it without waiting for expiry"""
        values = {"owner": None, "lease_expires_at": None}
        if error is not None:
            values["last_error"] = error[:_MAX_ERROR_CHARS]
        result = await self.db.execute(
            update(IdempotencyRecord)
            .where(
                *_key_filter(key),
                IdempotencyRecord.status == RecordStatus.PENDING.value,
                IdempotencyRecord.owner == owner,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def fail(self, key: LedgerKey, owner: str, error: str) -> None:
        """Terminal failure; the key will never execute again unless reset"""
        await self.db.execute(
            update(IdempotencyRecord)
            .where(*_key_filter(key), IdempotencyRecord.status == RecordStatus.PENDING.value)
            .values(
                status=RecordStatus.FAILED_PERMANENT.value,
                owner=owner,
                lease_expires_at=None,
                last_error=error[:_MAX_ERROR_CHARS],
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def reset_failed(self, key: LedgerKey) -> bool:
        """Forget a failed_permanent key so a manually requeued envelope can run"""
        result = await self.db.execute(
            delete(IdempotencyRecord).where(
                *_key_filter(key),
                IdempotencyRecord.status == RecordStatus.FAILED_PERMANENT.value,
            )
        )
        await self.db.commit()
        return result.rowcount == 1

    async def get(self, key: LedgerKey) -> IdempotencyRecord | None:
        result = await self.db.execute(
            select(IdempotencyRecord)
            .where(*_key_filter(key))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_delivery(self, delivery_id: str) -> list[IdempotencyRecord]:
        """Records of a delivery and of the follow-ups derived from it"""
        result = await self.db.execute(
            select(IdempotencyRecord)
            .where(
                or_(
                    IdempotencyRecord.delivery_id == delivery_id,
                    IdempotencyRecord.delivery_id.startswith(f"{delivery_id}/", autoescape=True),
                )
            )
            .order_by(IdempotencyRecord.created_at, IdempotencyRecord.delivery_id)
        )
        return list(result.scalars().all())

    async def purge_expired(self, before: datetime) -> int:
        """Delete records older than the retention horizon that nobody holds"""
        now = utcnow()
        result = await self.db.execute(
            delete(IdempotencyRecord).where(
                IdempotencyRecord.created_at < before,
                or_(
                    IdempotencyRecord.status != RecordStatus.PENDING.value,
                    IdempotencyRecord.lease_expires_at.is_(None),
                    IdempotencyRecord.lease_expires_at <= now,
                ),
            )
        )
        await self.db.commit()
        return result.rowcount
