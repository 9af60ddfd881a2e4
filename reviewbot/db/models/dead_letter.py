"""
Dead Letter - envelopes that exhausted their retries or hit a permanent error.

Written by the dead-letter queue consumer so operators can inspect and
requeue them through the admin API.
"""
from sqlalchemy import Column, DateTime, Integer, JSON, String

from reviewbot.db.database import Base
from reviewbot.db.models.idempotency_record import utcnow


class DeadLetter(Base):
    __tablename__ = "dead_letters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    envelope_id = Column(String(260), nullable=False, index=True)
    delivery_id = Column(String(200), nullable=False, index=True)
    task_type = Column(String(50), nullable=False)
    envelope = Column(JSON, nullable=False)
    reason = Column(String(1000), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    requeued_at = Column(DateTime, nullable=True)
