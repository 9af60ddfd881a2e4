"""
Domain Services
"""
from reviewbot.domain.services.classifier import EventClassifier
from reviewbot.domain.services.dead_letters import DeadLetterStore
from reviewbot.domain.services.dedup_window import DeliveryDedupWindow
from reviewbot.domain.services.ledger import ClaimResult, IdempotencyLedger
from reviewbot.domain.services.retry_policy import RetryPolicy

__all__ = [
    "EventClassifier",
    "DeadLetterStore",
    "DeliveryDedupWindow",
    "ClaimResult",
    "IdempotencyLedger",
    "RetryPolicy",
]
