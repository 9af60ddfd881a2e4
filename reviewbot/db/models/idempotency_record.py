"""
Idempotency Record - which (delivery id, task type) pairs already produced
their side effect.

A row is created at the first execution attempt. While `pending` it is
owned by the worker holding the lease; an expired lease can be reclaimed.
`completed` and `failed_permanent` are terminal.
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, String

from reviewbot.db.database import Base


def utcnow() -> datetime:
    """Naive UTC; stored and compared the same way on PostgreSQL and SQLite"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RecordStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED_PERMANENT = "failed_permanent"


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    delivery_id = Column(String(200), primary_key=True)
    task_type = Column(String(50), primary_key=True)

    status = Column(String(20), nullable=False, default=RecordStatus.PENDING.value)
    owner = Column(String(200), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    last_error = Column(String(1000), nullable=True)

    __table_args__ = (
        Index("ix_idempotency_records_status_created", "status", "created_at"),
    )
