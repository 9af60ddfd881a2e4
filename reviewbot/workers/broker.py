"""
Message Broker Interface - durable publish/ack/nack for task envelopes.

The executor only talks to MessageBroker. CeleryBroker maps it onto
Celery's at-least-once consumption:

- publish       send_task to the task queue; returns once the broker confirmed
- ack           returning from the Celery task (acks_late does the rest)
- nack requeue  publish a copy with a countdown, then return (acks the original)
- nack dead     publish to the dead-letter queue, then return

So a single envelope has at most one live copy in the broker.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from functools import lru_cache

from celery import Celery
from kombu.exceptions import KombuError, OperationalError

from reviewbot.core.config import settings
from reviewbot.core.exceptions import PublishError
from reviewbot.core.logging import get_logger
from reviewbot.domain.envelope import TaskEnvelope

logger = get_logger(__name__)

EXECUTE_TASK_NAME = "reviewbot.workers.tasks.execute_envelope"
DEAD_LETTER_TASK_NAME = "reviewbot.workers.tasks.store_dead_letter"


class MessageBroker(ABC):
    @abstractmethod
    def publish(self, envelope: TaskEnvelope, delay: float | None = None) -> None:
        """Durably enqueue; raises PublishError if the broker did not accept it"""

    @abstractmethod
    def ack(self, envelope: TaskEnvelope) -> None:
        """Done with this delivery"""

    @abstractmethod
    def nack(
        self,
        envelope: TaskEnvelope,
        *,
        requeue: bool = True,
        delay: float | None = None,
        reason: str | None = None,
    ) -> None:
        """Requeue (optionally after delay) or route to the dead-letter queue"""

    @abstractmethod
    def queue_depth(self) -> int:
        """Envelopes waiting in the task queue"""


class CeleryBroker(MessageBroker):
    def __init__(
        self,
        app: Celery,
        *,
        task_queue: str | None = None,
        dead_letter_queue: str | None = None,
    ):
        self._app = app
        self._task_queue = task_queue or settings.CELERY_TASK_QUEUE
        self._dead_letter_queue = dead_letter_queue or settings.CELERY_DEAD_LETTER_QUEUE

    def _send(self, name: str, args: list, *, task_id: str, queue: str, countdown: float | None) -> None:
        self._app.send_task(
            name,
            args=args,
            task_id=task_id,
            queue=queue,
            routing_key=queue,
            countdown=countdown,
        )

    def publish(self, envelope: TaskEnvelope, delay: float | None = None) -> None:
        try:
            self._send(
                EXECUTE_TASK_NAME,
                [envelope.to_message()],
                task_id=envelope.message_id,
                queue=self._task_queue,
                countdown=delay if delay and delay > 0 else None,
            )
        except (KombuError, OperationalError, OSError) as e:
            logger.error(
                "Envelope publish failed",
                extra_data={"envelope_id": envelope.envelope_id, "error": str(e)},
            )
            raise PublishError(envelope.envelope_id, str(e)) from e

        logger.info(
            "Envelope published",
            extra_data={
                "envelope_id": envelope.envelope_id,
                "attempt": envelope.attempt,
                "delay_seconds": delay,
            },
        )

    def ack(self, envelope: TaskEnvelope) -> None:
        logger.debug("Envelope acknowledged", extra_data={"message_id": envelope.message_id})

    def nack(
        self,
        envelope: TaskEnvelope,
        *,
        requeue: bool = True,
        delay: float | None = None,
        reason: str | None = None,
    ) -> None:
        if requeue:
            self.publish(envelope, delay=delay)
            return

        try:
            self._send(
                DEAD_LETTER_TASK_NAME,
                [envelope.to_message(), reason or "unspecified"],
                task_id=f"{envelope.message_id}:dead",
                queue=self._dead_letter_queue,
                countdown=None,
            )
        except (KombuError, OperationalError, OSError) as e:
            raise PublishError(envelope.envelope_id, str(e)) from e

        logger.warning(
            "Envelope dead-lettered",
            extra_data={
                "envelope_id": envelope.envelope_id,
                "attempt": envelope.attempt,
                "reason": reason,
            },
        )

    def queue_depth(self) -> int:
        with self._app.connection_for_read() as connection:
            channel = connection.default_channel
            declared = channel.queue_declare(queue=self._task_queue, passive=True)
            return int(declared.message_count)


@lru_cache(maxsize=1)
def get_broker() -> MessageBroker:
    """Process-wide broker; overridden in tests through the FastAPI dependency"""
    from reviewbot.workers.celery_app import celery_app

    return CeleryBroker(celery_app)
