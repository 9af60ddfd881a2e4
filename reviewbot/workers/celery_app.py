"""
Celery Application Configuration

At-least-once consumption: a message is acknowledged only after the task
returns (acks_late), redelivered if the worker process dies
(reject_on_worker_lost), and each worker reserves one message at a time.
"""
from celery import Celery
from kombu import Exchange, Queue

from reviewbot.core.config import settings

celery_app = Celery(
    "reviewbot",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["reviewbot.workers.tasks"]
)

_exchange = Exchange("reviewbot", type="direct", durable=True)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # hard limit above the executor's own TASK_TIMEOUT_SECONDS
    task_time_limit=settings.TASK_TIMEOUT_SECONDS + 60,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.WORKER_CONCURRENCY,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # an unhandled task error returns the message instead of acking it
    task_acks_on_failure_or_timeout=False,
    task_default_queue=settings.CELERY_TASK_QUEUE,
    task_default_delivery_mode="persistent",
    task_queues=(
        Queue(settings.CELERY_TASK_QUEUE, _exchange, routing_key=settings.CELERY_TASK_QUEUE, durable=True),
        Queue(
            settings.CELERY_DEAD_LETTER_QUEUE, _exchange,
            routing_key=settings.CELERY_DEAD_LETTER_QUEUE, durable=True,
        ),
    ),
    task_routes={
        "reviewbot.workers.tasks.execute_envelope": {
            "queue": settings.CELERY_TASK_QUEUE,
            "routing_key": settings.CELERY_TASK_QUEUE,
        },
        "reviewbot.workers.tasks.store_dead_letter": {
            "queue": settings.CELERY_DEAD_LETTER_QUEUE,
            "routing_key": settings.CELERY_DEAD_LETTER_QUEUE,
        },
    },
    # publish() returns only after the broker confirmed the message (AMQP)
    broker_transport_options={"confirm_publish": True},
    task_publish_retry=True,
    task_publish_retry_policy={
        "max_retries": 3,
        "interval_start": 0,
        "interval_step": 0.5,
        "interval_max": 2,
    },
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "purge-idempotency-records-daily": {
        "task": "reviewbot.workers.tasks.purge_idempotency_records",
        "schedule": 86400.0,  # 24 hours
    },
    "update-queue-depth-every-30-seconds": {
        "task": "reviewbot.workers.tasks.update_queue_depth",
        "schedule": 30.0,
    },
}
