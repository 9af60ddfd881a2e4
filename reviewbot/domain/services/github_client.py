"""
GitHub REST client used by the task handlers.

One client per task execution, authenticated with the installation token
the executor resolved. Every call goes through the GitHub circuit breaker
and HTTP failures are mapped onto the error taxonomy:

- network errors, timeouts, 5xx, 429 and rate-limited 403 -> transient
- any other 4xx -> permanent (retrying cannot fix a bad request)

The client never retries; the executor owns retries.
"""
from __future__ import annotations

import time
from typing import Any

import httpx

from reviewbot.core.circuit_breaker import CircuitBreaker, get_github_circuit_breaker
from reviewbot.core.config import settings
from reviewbot.core.exceptions import (
    ErrorCode,
    ExternalServiceError,
    PermanentExecutionError,
    ServiceTimeoutError,
    response_excerpt,
)
from reviewbot.core.logging import get_logger

logger = get_logger(__name__)

_SERVICE = "github"


def _retry_after_seconds(response: httpx.Response) -> float | None:
    """Retry-After, or the X-RateLimit-Reset epoch, as seconds from now"""
    header = response.headers.get("Retry-After")
    if header:
        try:
            return max(0.0, float(header))
        except ValueError:
            return None
    reset = response.headers.get("X-RateLimit-Reset")
    if reset:
        try:
            return max(0.0, float(reset) - time.time())
        except ValueError:
            return None
    return None


def is_transient_response(response: httpx.Response) -> bool:
    if response.status_code >= 500 or response.status_code == 429:
        return True
    return (
        response.status_code == 403
        and response.headers.get("X-RateLimit-Remaining") == "0"
    )


def raise_for_response(
    response: httpx.Response,
    operation: str,
    *,
    service: str = _SERVICE,
    error_code: ErrorCode = ErrorCode.GITHUB_ERROR,
) -> None:
    """Translate a non-2xx response into a transient or permanent error"""
    if response.is_success:
        return

    details = {"operation": operation, **response_excerpt(response)}
    if is_transient_response(response):
        raise ExternalServiceError(
            service_name=service,
            message=f"{service} {operation} failed with status {response.status_code}",
            error_code=error_code,
            retry_after=_retry_after_seconds(response),
            details=details,
        )
    raise PermanentExecutionError(
        message=f"{service} {operation} rejected with status {response.status_code}",
        error_code=error_code,
        details=details,
    )


class GitHubClient:
    def __init__(
        self,
        authorization: str,
        *,
        api_url: str | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
    ):
        self._authorization = authorization
        self._api_url = (api_url or settings.GITHUB_API_URL).rstrip("/")
        self._circuit_breaker = circuit_breaker or get_github_circuit_breaker()
        self._transport = transport
        self._timeout = timeout or settings.HTTP_TIMEOUT_SECONDS

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": self._authorization,
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": settings.BOT_LOGIN,
        }

    async def request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json: Any = None,
    ) -> Any:
        """Send one request through the circuit breaker; returns decoded JSON (or None)"""
        url = f"{self._api_url}{path}"

        async def _send() -> Any:
            try:
                async with httpx.AsyncClient(
                    timeout=self._timeout, transport=self._transport
                ) as client:
                    response = await client.request(method, url, json=json, headers=self._headers())
            except httpx.TimeoutException:
                raise ServiceTimeoutError(_SERVICE, self._timeout)
            except httpx.RequestError as exc:
                raise ExternalServiceError(
                    service_name=_SERVICE,
                    message=f"github {operation} network error: {exc}",
                    error_code=ErrorCode.GITHUB_ERROR,
                    details={"operation": operation, "network_error": True},
                )

            raise_for_response(response, operation)
            if response.status_code == 204 or not response.content:
                return None
            return response.json()

        return await self._circuit_breaker.execute(_send)

    # ==================== Issues / pull requests ====================

    async def create_comment(self, repository: str, number: int, body: str) -> dict:
        return await self.request(
            "POST", f"/repos/{repository}/issues/{number}/comments",
            "create_comment", json={"body": body},
        )

    async def add_labels(self, repository: str, number: int, labels: list[str]) -> list:
        return await self.request(
            "POST", f"/repos/{repository}/issues/{number}/labels",
            "add_labels", json={"labels": labels},
        )

    async def get_pull_request(self, repository: str, number: int) -> dict:
        return await self.request("GET", f"/repos/{repository}/pulls/{number}", "get_pull_request")

    async def close_pull_request(self, repository: str, number: int) -> dict:
        return await self.request(
            "PATCH", f"/repos/{repository}/pulls/{number}",
            "close_pull_request", json={"state": "closed"},
        )

    # ==================== Git data ====================

    async def get_commit(self, repository: str, sha: str) -> dict:
        return await self.request("GET", f"/repos/{repository}/git/commits/{sha}", "get_commit")

    async def get_branch_sha(self, repository: str, branch: str) -> str:
        data = await self.request("GET", f"/repos/{repository}/git/ref/heads/{branch}", "get_ref")
        return data["object"]["sha"]

    async def create_commit(
        self,
        repository: str,
        *,
        message: str,
        tree: str,
        parents: list[str],
        author: dict[str, str],
        committer: dict[str, str],
        signature: str | None = None,
    ) -> dict:
        body: dict[str, Any] = {
            "message": message,
            "tree": tree,
            "parents": parents,
            "author": author,
            "committer": committer,
        }
        if signature:
            body["signature"] = signature
        return await self.request("POST", f"/repos/{repository}/git/commits", "create_commit", json=body)

    async def update_branch(self, repository: str, branch: str, sha: str) -> dict:
        """Fast-forward only; GitHub answers 422 if sha does not descend from the tip"""
        return await self.request(
            "PATCH", f"/repos/{repository}/git/refs/heads/{branch}",
            "update_ref", json={"sha": sha, "force": False},
        )
