"""
Database Models
"""
from reviewbot.db.models.idempotency_record import IdempotencyRecord, RecordStatus
from reviewbot.db.models.dead_letter import DeadLetter

__all__ = [
    "IdempotencyRecord",
    "RecordStatus",
    "DeadLetter",
]
