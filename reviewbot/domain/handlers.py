"""
Task handlers - one async callable per task type.

A handler performs exactly one side effect for its envelope, raises the
error taxonomy (TransientExecutionError / PermanentExecutionError) on
failure and returns the follow-up envelopes to publish. Handlers never
retry and never touch the ledger; the executor does both.

Each handler declares the credential scopes it needs so the executor can
resolve them before the call.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

from reviewbot.core.credentials import Token
from reviewbot.core.exceptions import (
    PermanentExecutionError,
    TransientExecutionError,
    UnknownTaskTypeError,
)
from reviewbot.core.logging import get_logger, log_async_operation
from reviewbot.domain.envelope import TaskEnvelope, TaskType
from reviewbot.domain.services.circleci_client import CircleCIClient, pipeline_branch
from reviewbot.domain.services.commit_signer import CommitSigner, bot_identity, build_commit_object
from reviewbot.domain.services.github_client import GitHubClient

logger = get_logger(__name__)

# GitHub computes mergeability in the background after a push
_MERGEABILITY_RETRY_SECONDS = 10.0


class CredentialScope(str, Enum):
    INSTALLATION_TOKEN = "installation_token"
    CI_TOKEN = "ci_token"
    SIGNING_KEY = "signing_key"


@dataclass
class TaskContext:
    """Everything a handler may use; credentials are filled in per declared scope"""
    envelope: TaskEnvelope
    installation_token: Token | None = None
    ci_token: str | None = None
    signer: CommitSigner | None = None
    transport: httpx.AsyncBaseTransport | None = None

    @property
    def payload(self) -> dict[str, Any]:
        return self.envelope.payload

    def require(self, *names: str) -> list[Any]:
        """Payload values that must be present, else a permanent error"""
        missing = [name for name in names if self.payload.get(name) in (None, "", [])]
        if missing:
            raise PermanentExecutionError(
                f"{self.envelope.task_type.value} payload is missing {', '.join(missing)}",
                details={"missing": missing, "envelope_id": self.envelope.envelope_id},
            )
        return [self.payload[name] for name in names]

    def github(self) -> GitHubClient:
        if self.installation_token is None:
            raise PermanentExecutionError("Handler ran without an installation token")
        return GitHubClient(self.installation_token.authorization, transport=self.transport)

    def circleci(self) -> CircleCIClient:
        if not self.ci_token:
            raise PermanentExecutionError("Handler ran without a CI token")
        return CircleCIClient(self.ci_token, transport=self.transport)


Handler = Callable[[TaskContext], Awaitable[list[TaskEnvelope]]]


@dataclass(frozen=True)
class HandlerSpec:
    task_type: TaskType
    func: Handler
    scopes: tuple[CredentialScope, ...]


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[TaskType, HandlerSpec] = {}

    def register(self, task_type: TaskType, *scopes: CredentialScope):
        def decorator(func: Handler) -> Handler:
            self._handlers[task_type] = HandlerSpec(task_type, func, tuple(scopes))
            return func
        return decorator

    def get(self, task_type: TaskType) -> HandlerSpec:
        spec = self._handlers.get(task_type)
        if spec is None:
            raise UnknownTaskTypeError(getattr(task_type, "value", str(task_type)))
        return spec

    def __contains__(self, task_type: TaskType) -> bool:
        return task_type in self._handlers

    def task_types(self) -> list[TaskType]:
        return list(self._handlers)


handlers = HandlerRegistry()


# ==================== comment / label ====================


@handlers.register(TaskType.COMMENT, CredentialScope.INSTALLATION_TOKEN)
@log_async_operation("post_comment")
async def post_comment(ctx: TaskContext) -> list[TaskEnvelope]:
    repository, number, body = ctx.require("repository", "number", "body")
    await ctx.github().create_comment(repository, int(number), body)
    return []


@handlers.register(TaskType.LABEL, CredentialScope.INSTALLATION_TOKEN)
@log_async_operation("add_labels")
async def add_labels(ctx: TaskContext) -> list[TaskEnvelope]:
    repository, number, labels = ctx.require("repository", "number", "labels")
    await ctx.github().add_labels(repository, int(number), list(labels))
    return []


# ==================== CI ====================


@handlers.register(TaskType.TRIGGER_CI, CredentialScope.CI_TOKEN)
@log_async_operation("trigger_ci")
async def trigger_ci(ctx: TaskContext) -> list[TaskEnvelope]:
    (repository,) = ctx.require("repository")
    number = ctx.payload.get("number")
    head_ref = ctx.payload.get("head_ref")
    if not number and not head_ref:
        raise PermanentExecutionError(
            "trigger_ci needs a pull request number or a head ref",
            details={"envelope_id": ctx.envelope.envelope_id},
        )
    await ctx.circleci().trigger_pipeline(repository, pipeline_branch(number, head_ref))
    return []


# ==================== merge ====================


@handlers.register(TaskType.MERGE, CredentialScope.INSTALLATION_TOKEN)
@log_async_operation("prepare_merge")
async def prepare_merge(ctx: TaskContext) -> list[TaskEnvelope]:
    """Validate the PR and describe the squash commit; signing is a follow-up task"""
    repository, number = ctx.require("repository", "number")
    github = ctx.github()

    pr = await github.get_pull_request(repository, int(number))
    if pr.get("state") != "open" or pr.get("merged"):
        raise PermanentExecutionError(
            f"Pull request #{number} is not open",
            details={"repository": repository, "number": number, "state": pr.get("state")},
        )
    mergeable = pr.get("mergeable")
    if mergeable is None:
        raise TransientExecutionError(
            f"Mergeability of #{number} not computed yet",
            retry_after=_MERGEABILITY_RETRY_SECONDS,
        )
    if not mergeable:
        raise PermanentExecutionError(
            f"Pull request #{number} has conflicts with its base branch",
            details={"repository": repository, "number": number},
        )

    head_sha = pr["head"]["sha"]
    base_ref = pr["base"]["ref"]
    head_commit = await github.get_commit(repository, head_sha)
    base_sha = await github.get_branch_sha(repository, base_ref)

    message = f"{pr.get('title') or 'Merge pull request'} (#{number})"
    if (pr.get("body") or "").strip():
        message += "\n\n" + pr["body"].strip()

    return [
        ctx.envelope.follow_up(
            TaskType.SIGN_COMMIT,
            {
                "repository": repository,
                "number": number,
                "tree": head_commit["tree"]["sha"],
                "parents": [base_sha],
                "base_ref": base_ref,
                "head_sha": head_sha,
                "message": message,
                # fixed here so every attempt of sign_commit builds the same commit
                "timestamp": int(time.time()),
                "sender": ctx.payload.get("sender"),
            },
        )
    ]


@handlers.register(
    TaskType.SIGN_COMMIT,
    CredentialScope.INSTALLATION_TOKEN,
    CredentialScope.SIGNING_KEY,
)
@log_async_operation("sign_and_merge")
async def sign_and_merge(ctx: TaskContext) -> list[TaskEnvelope]:
    repository, number, tree, parents, base_ref, message, timestamp = ctx.require(
        "repository", "number", "tree", "parents", "base_ref", "message", "timestamp",
    )
    if ctx.signer is None:
        raise PermanentExecutionError("sign_commit ran without a signing key")
    github = ctx.github()

    current_tip = await github.get_branch_sha(repository, base_ref)
    if current_tip == parents[0]:
        identity = bot_identity(int(timestamp))
        raw = build_commit_object(
            tree=tree, parents=parents, author=identity, committer=identity, message=message,
        )
        signature = await asyncio.to_thread(ctx.signer.sign, raw)
        commit = await github.create_commit(
            repository,
            message=message,
            tree=tree,
            parents=parents,
            author=identity.as_api(),
            committer=identity.as_api(),
            signature=signature,
        )
        merged_sha = commit["sha"]
        await github.update_branch(repository, base_ref, merged_sha)
    else:
        # an earlier attempt may have moved the branch already; accept only our own commit
        tip = await github.get_commit(repository, current_tip)
        tip_parents = [parent["sha"] for parent in tip.get("parents", [])]
        if tip["tree"]["sha"] != tree or tip_parents != list(parents):
            raise PermanentExecutionError(
                f"{base_ref} moved while merging #{number}",
                details={"repository": repository, "expected": parents[0], "actual": current_tip},
            )
        merged_sha = current_tip

    await github.close_pull_request(repository, int(number))
    logger.info(
        "Pull request merged",
        extra_data={"repository": repository, "number": number, "sha": merged_sha},
    )
    return [
        ctx.envelope.follow_up(
            TaskType.COMMENT,
            {
                "repository": repository,
                "number": number,
                "body": f"Merged as {merged_sha} (signed squash commit onto `{base_ref}`).",
            },
        )
    ]
