"""
Celery Tasks - the worker side of the pipeline.

execute_envelope consumes the task queue and hands each envelope to the
TaskExecutor; store_dead_letter consumes the dead-letter queue. Worker
processes refuse to start without every secret and serve their own
Prometheus metrics (worker_init).
"""
from __future__ import annotations

import asyncio
import os
import threading
from contextlib import contextmanager
from datetime import timedelta

from celery.exceptions import Reject
from celery.signals import worker_init, worker_process_shutdown
from pydantic import ValidationError
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from reviewbot.core import metrics
from reviewbot.core.config import settings
from reviewbot.core.credentials import CredentialIssuer
from reviewbot.core.exceptions import PublishError, SecretUnavailable
from reviewbot.core.logging import get_logger, set_correlation_id, setup_logging
from reviewbot.core.secrets import get_secret_store
from reviewbot.db.database import get_task_session
from reviewbot.db.models.idempotency_record import utcnow
from reviewbot.domain.envelope import TaskEnvelope
from reviewbot.domain.services.dead_letters import DeadLetterStore
from reviewbot.domain.services.executor import TaskExecutor
from reviewbot.domain.services.ledger import IdempotencyLedger
from reviewbot.workers.broker import DEAD_LETTER_TASK_NAME, EXECUTE_TASK_NAME, get_broker
from reviewbot.workers.celery_app import celery_app

logger = get_logger(__name__)

# failures outside any task outcome; the delivery must survive them
_INFRASTRUCTURE_ERRORS = (PublishError, SQLAlchemyError, RedisError, OSError)

_executor: TaskExecutor | None = None
_executor_lock = threading.Lock()


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro, correlation_id: str | None = None):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id(correlation_id)

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


def get_executor() -> TaskExecutor:
    """One executor per worker process; its credential caches live as long as the process"""
    global _executor
    if _executor is None:
        with _executor_lock:
            if _executor is None:
                secret_store = get_secret_store()
                _executor = TaskExecutor(
                    broker=get_broker(),
                    session_factory=get_task_session,
                    issuer=CredentialIssuer(secret_store),
                    secret_store=secret_store,
                )
                logger.info("Task executor initialized", extra_data={"worker": _executor.worker_id})
    return _executor


@worker_init.connect
def validate_worker_secrets(**kwargs) -> None:
    """Fail fast: a worker without its secrets would dead-letter everything"""
    setup_logging(level="DEBUG" if settings.DEBUG else "INFO", json_format=not settings.DEBUG)
    try:
        get_secret_store().load_all()
    except SecretUnavailable as e:
        logger.critical("Worker cannot start, secret unavailable", extra_data=e.details)
        raise


@worker_init.connect
def start_metrics_server(**kwargs) -> None:
    """Expose the worker's counters; prefork children report through PROMETHEUS_MULTIPROC_DIR"""
    if settings.WORKER_CONCURRENCY > 1 and not metrics.multiprocess_enabled():
        logger.warning(
            "PROMETHEUS_MULTIPROC_DIR is unset; samples from pool children will not be exposed",
            extra_data={"concurrency": settings.WORKER_CONCURRENCY},
        )
    metrics.start_worker_metrics_server(settings.WORKER_METRICS_PORT)


@worker_process_shutdown.connect
def release_process_metrics(pid: int | None = None, **kwargs) -> None:
    metrics.mark_process_dead(pid or os.getpid())


@celery_app.task(name=EXECUTE_TASK_NAME)
def execute_envelope(message: dict) -> str:
    """Consume one envelope from the task queue"""
    try:
        envelope = TaskEnvelope.from_message(message)
    except ValidationError as e:
        # nothing downstream can read it; keep it out of the retry loop
        logger.error("Undecodable envelope dropped", extra_data={"error": str(e), "message": message})
        return "malformed"

    try:
        outcome = run_async(get_executor().process(envelope), correlation_id=envelope.message_id)
    except _INFRASTRUCTURE_ERRORS as e:
        # ledger or broker unreachable; give the delivery back so it is not lost
        logger.error(
            "Infrastructure failure, rejecting delivery for redelivery",
            extra_data={
                "envelope_id": envelope.envelope_id,
                "error_type": type(e).__name__,
                "error": str(e),
            },
        )
        raise Reject(str(e), requeue=True)
    return outcome.value


@celery_app.task(name=DEAD_LETTER_TASK_NAME)
def store_dead_letter(message: dict, reason: str) -> int:
    """Consume the dead-letter queue into the dead_letters table"""
    envelope = TaskEnvelope.from_message(message)

    async def _store():
        async with get_task_session() as db:
            row = await DeadLetterStore(db).add(envelope, reason)
            return row.id

    return run_async(_store(), correlation_id=envelope.message_id)


@celery_app.task(name="reviewbot.workers.tasks.purge_idempotency_records")
def purge_idempotency_records(days: int | None = None) -> dict:
    """Delete ledger records past the retention horizon"""
    retention_days = days or settings.LEDGER_RETENTION_DAYS

    async def _purge():
        async with get_task_session() as db:
            cutoff = utcnow() - timedelta(days=retention_days)
            deleted = await IdempotencyLedger(db).purge_expired(cutoff)
            logger.info(
                "Purged idempotency records",
                extra_data={"deleted": deleted, "retention_days": retention_days},
            )
            return {"deleted": deleted}

    return run_async(_purge())


@celery_app.task(name="reviewbot.workers.tasks.update_queue_depth")
def update_queue_depth() -> int:
    depth = get_broker().queue_depth()
    metrics.set_queue_depth(depth)
    return depth
