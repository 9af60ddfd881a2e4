"""
CircleCI v2 client - triggers a pipeline for a pull request.
"""
from __future__ import annotations

import httpx

from reviewbot.core.circuit_breaker import CircuitBreaker, get_circleci_circuit_breaker
from reviewbot.core.config import settings
from reviewbot.core.exceptions import ErrorCode, ExternalServiceError, ServiceTimeoutError
from reviewbot.core.logging import get_logger
from reviewbot.domain.services.github_client import raise_for_response

logger = get_logger(__name__)

_SERVICE = "circleci"


def pipeline_branch(number: int | None, head_ref: str | None) -> str:
    """Pull request refs also exist for forks, so prefer them over the head branch"""
    if number:
        return f"pull/{number}/head"
    if head_ref:
        return head_ref
    raise ValueError("either a pull request number or a head ref is required")


class CircleCIClient:
    def __init__(
        self,
        token: str,
        *,
        api_url: str | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
    ):
        self._token = token
        self._api_url = (api_url or settings.CIRCLECI_API_URL).rstrip("/")
        self._circuit_breaker = circuit_breaker or get_circleci_circuit_breaker()
        self._transport = transport
        self._timeout = timeout or settings.HTTP_TIMEOUT_SECONDS

    async def trigger_pipeline(self, repository: str, branch: str) -> dict:
        url = f"{self._api_url}/project/gh/{repository}/pipeline"
        headers = {"Circle-Token": self._token, "Accept": "application/json"}

        async def _send() -> dict:
            try:
                async with httpx.AsyncClient(
                    timeout=self._timeout, transport=self._transport
                ) as client:
                    response = await client.post(url, json={"branch": branch}, headers=headers)
            except httpx.TimeoutException:
                raise ServiceTimeoutError(_SERVICE, self._timeout)
            except httpx.RequestError as exc:
                raise ExternalServiceError(
                    service_name=_SERVICE,
                    message=f"circleci trigger_pipeline network error: {exc}",
                    error_code=ErrorCode.CIRCLECI_ERROR,
                    details={"network_error": True},
                )

            raise_for_response(
                response, "trigger_pipeline", service=_SERVICE, error_code=ErrorCode.CIRCLECI_ERROR,
            )
            return response.json()

        result = await self._circuit_breaker.execute(_send)
        logger.info(
            "CircleCI pipeline triggered",
            extra_data={
                "repository": repository,
                "branch": branch,
                "pipeline_number": result.get("number"),
            },
        )
        return result
