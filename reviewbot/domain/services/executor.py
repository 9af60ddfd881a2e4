"""
Task Executor - runs one envelope to a terminal decision.

    claim -> resolve credentials -> run handler (bounded) -> record -> ack

The ledger claim is what makes at-least-once delivery safe: a redelivered
envelope whose key is already completed (or failed permanently) is
acknowledged without calling anything, and a key held under a live lease
by another worker is requeued without spending an attempt.

Failure handling:
- transient (TransientError, including timeouts and open circuits):
  requeue with RetryPolicy backoff until the attempt ceiling, then treat
  as permanent. The claim is released first so the retry can take it,
  except after a timeout where the abandoned call may still land; the
  lease has to expire instead.
- permanent (PermanentExecutionError, AuthFailure, anything unexpected):
  dead-letter, ledger -> failed_permanent, failure notice comment. If the
  dead-letter queue cannot be reached the key stays pending and the
  delivery is handed back, so a redelivery dead-letters it.
"""
from __future__ import annotations

import asyncio
import os
import socket
from enum import Enum
from typing import AsyncContextManager, Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from reviewbot.core import metrics
from reviewbot.core.config import settings
from reviewbot.core.credentials import CredentialIssuer
from reviewbot.core.exceptions import (
    AppException,
    PermanentExecutionError,
    PublishError,
    TaskTimeoutError,
    TransientError,
)
from reviewbot.core.logging import get_logger
from reviewbot.core.secrets import SecretStore
from reviewbot.domain.envelope import TaskEnvelope, TaskType
from reviewbot.domain.handlers import (
    CredentialScope,
    HandlerRegistry,
    HandlerSpec,
    TaskContext,
    handlers as default_handlers,
)
from reviewbot.domain.services.commit_signer import CommitSigner
from reviewbot.domain.services.ledger import ClaimResult, IdempotencyLedger
from reviewbot.domain.services.retry_policy import RetryPolicy
from reviewbot.workers.broker import MessageBroker

logger = get_logger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]

_MAX_NOTICE_REASON_CHARS = 300

FAILURE_NOTICE = (
    "I could not complete `{task_type}` for this pull request and gave up "
    "after {attempts} attempt(s):\n\n> {reason}\n\n"
    "A maintainer can requeue it once the cause is fixed."
)


class ExecutionOutcome(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"          # already completed / failed_permanent
    DEFERRED = "deferred"        # another worker holds a live lease
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class TaskExecutor:
    def __init__(
        self,
        *,
        broker: MessageBroker,
        session_factory: SessionFactory,
        issuer: CredentialIssuer,
        secret_store: SecretStore,
        retry_policy: RetryPolicy | None = None,
        registry: HandlerRegistry | None = None,
        worker_id: str | None = None,
        task_timeout: float | None = None,
        lease_seconds: int | None = None,
        contention_delay: float | None = None,
        signer: CommitSigner | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.broker = broker
        self.session_factory = session_factory
        self.issuer = issuer
        self.secret_store = secret_store
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.registry = registry or default_handlers
        self.worker_id = worker_id or default_worker_id()
        self.task_timeout = task_timeout or settings.TASK_TIMEOUT_SECONDS
        self.lease_seconds = lease_seconds or settings.LEDGER_LEASE_SECONDS
        self.contention_delay = (
            contention_delay if contention_delay is not None else settings.CONTENTION_REQUEUE_SECONDS
        )
        self._signer = signer
        self._transport = transport

    # ==================== Entry point ====================

    async def process(self, envelope: TaskEnvelope) -> ExecutionOutcome:
        task_type = envelope.task_type.value
        log_data = {"envelope_id": envelope.envelope_id, "attempt": envelope.attempt, "worker": self.worker_id}

        async with self.session_factory() as db:
            ledger = IdempotencyLedger(db, self.lease_seconds)
            claim = await ledger.try_claim(envelope.key, self.worker_id)

            if claim in (ClaimResult.ALREADY_COMPLETED, ClaimResult.FAILED_PERMANENT):
                logger.info("Redelivery skipped", extra_data={**log_data, "ledger": claim.value})
                metrics.record_skipped(task_type)
                self.broker.ack(envelope)
                return ExecutionOutcome.SKIPPED

            if claim == ClaimResult.ALREADY_PENDING:
                logger.info("Key held by another worker, requeueing", extra_data=log_data)
                self.broker.nack(envelope, requeue=True, delay=self.contention_delay)
                return ExecutionOutcome.DEFERRED

            current = envelope.with_attempt(envelope.attempt + 1)
            metrics.task_started()
            try:
                follow_ups = await self._execute(current)
            except Exception as exc:
                return await self._handle_failure(ledger, current, exc)
            finally:
                metrics.task_finished()

            await ledger.complete(current.key, self.worker_id)
            metrics.record_completed(task_type)
            logger.info(
                "Task completed",
                extra_data={**log_data, "attempt": current.attempt, "follow_ups": len(follow_ups)},
            )
            self._publish_follow_ups(current, follow_ups)
            self.broker.ack(current)
            return ExecutionOutcome.COMPLETED

    # ==================== Execution ====================

    def _get_signer(self) -> CommitSigner:
        if self._signer is None:
            self._signer = CommitSigner(self.secret_store.signing_key)
        return self._signer

    async def _build_context(self, envelope: TaskEnvelope, spec: HandlerSpec) -> TaskContext:
        ctx = TaskContext(envelope=envelope, transport=self._transport)
        for scope in spec.scopes:
            if scope == CredentialScope.INSTALLATION_TOKEN:
                if envelope.installation_id is None:
                    raise PermanentExecutionError(
                        "Envelope has no installation id",
                        details={"envelope_id": envelope.envelope_id},
                    )
                # blocks only this worker while a refresh is in flight
                ctx.installation_token = await asyncio.to_thread(
                    self.issuer.issue_installation_token, envelope.installation_id
                )
            elif scope == CredentialScope.CI_TOKEN:
                ctx.ci_token = self.secret_store.ci_token
            elif scope == CredentialScope.SIGNING_KEY:
                ctx.signer = self._get_signer()
        return ctx

    async def _execute(self, envelope: TaskEnvelope) -> list[TaskEnvelope]:
        spec = self.registry.get(envelope.task_type)
        ctx = await self._build_context(envelope, spec)
        try:
            return await asyncio.wait_for(spec.func(ctx), timeout=self.task_timeout)
        except asyncio.TimeoutError:
            raise TaskTimeoutError(envelope.task_type.value, self.task_timeout)

    # ==================== Failure handling ====================

    async def _handle_failure(
        self,
        ledger: IdempotencyLedger,
        envelope: TaskEnvelope,
        exc: Exception,
    ) -> ExecutionOutcome:
        task_type = envelope.task_type.value
        log_data = {
            "envelope_id": envelope.envelope_id,
            "attempt": envelope.attempt,
            "error_type": type(exc).__name__,
            "error": str(exc),
        }

        if isinstance(exc, TransientError):
            if self.retry_policy.should_retry(envelope.attempt):
                if not isinstance(exc, TaskTimeoutError):
                    await ledger.release(envelope.key, self.worker_id, error=str(exc))
                delay = self.retry_policy.delay_for(envelope.attempt, exc.retry_after)
                logger.warning(
                    "Transient failure, requeueing",
                    extra_data={**log_data, "delay_seconds": round(delay, 2)},
                )
                self.broker.nack(envelope, requeue=True, delay=delay)
                metrics.record_retried(task_type)
                return ExecutionOutcome.RETRIED
            reason = (
                f"attempts exhausted ({envelope.attempt}/{self.retry_policy.max_attempts}): {exc}"
            )
        elif isinstance(exc, AppException):
            reason = exc.message
        else:
            reason = f"unexpected {type(exc).__name__}: {exc}"
            logger.error("Unexpected error in task handler", extra_data=log_data, exc_info=exc)

        logger.error("Task failed permanently", extra_data={**log_data, "reason": reason})
        # dead-letter first: failed_permanent is only written once the DLQ holds the envelope
        try:
            self.broker.nack(envelope, requeue=False, reason=reason)
        except PublishError:
            if not isinstance(exc, TaskTimeoutError):
                await ledger.release(envelope.key, self.worker_id, error=reason)
            raise
        await ledger.fail(envelope.key, self.worker_id, reason)
        metrics.record_dead_lettered(task_type)
        self._publish_failure_notice(envelope, reason)
        return ExecutionOutcome.DEAD_LETTERED

    def _publish_failure_notice(self, envelope: TaskEnvelope, reason: str) -> None:
        if envelope.task_type == TaskType.COMMENT:
            return
        repository = envelope.payload.get("repository")
        number = envelope.payload.get("number")
        if not repository or not number:
            return

        notice = envelope.follow_up(
            TaskType.COMMENT,
            {
                "repository": repository,
                "number": number,
                "body": FAILURE_NOTICE.format(
                    task_type=envelope.task_type.value,
                    attempts=envelope.attempt,
                    reason=reason[:_MAX_NOTICE_REASON_CHARS],
                ),
            },
            suffix=f"{envelope.task_type.value}-failed",
        )
        try:
            self._publish(notice)
        except PublishError as e:
            logger.error(
                "Failure notice could not be published",
                extra_data={"envelope_id": notice.envelope_id, "error": str(e)},
            )

    # ==================== Publishing ====================

    def _publish(self, envelope: TaskEnvelope) -> None:
        self.broker.publish(envelope)
        metrics.record_published(envelope.task_type.value)

    def _publish_follow_ups(self, parent: TaskEnvelope, follow_ups: list[TaskEnvelope]) -> None:
        for follow_up in follow_ups:
            try:
                self._publish(follow_up)
            except PublishError as e:
                # the parent is already completed; keep the envelope for manual replay
                logger.error(
                    "Follow-up envelope could not be published",
                    extra_data={
                        "parent": parent.envelope_id,
                        "envelope": follow_up.to_message(),
                        "error": str(e),
                    },
                )
