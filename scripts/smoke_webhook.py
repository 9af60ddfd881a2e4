"""
Smoke test against a running gateway.

- GET /health
- POST /api/github/webhook with a signed ping
- POST /api/github/webhook with an unsigned body (expects 401)
- POST the same signed delivery twice (expects "duplicate" the second time)

The webhook secret is read the same way the gateway reads it (APP_SECRET_FILE),
or from SMOKE_WEBHOOK_SECRET when set.
"""

from __future__ import annotations

import json
import os
import sys
import uuid
from pathlib import Path

import httpx

# allow running from any directory (python scripts/smoke_webhook.py)
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from reviewbot.api.dependencies.webhook_auth import compute_signature  # noqa: E402
from reviewbot.core.logging import get_logger, setup_logging  # noqa: E402
from reviewbot.core.secrets import get_secret_store  # noqa: E402


logger = get_logger(__name__)


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def _webhook_secret() -> bytes:
    explicit = os.environ.get("SMOKE_WEBHOOK_SECRET")
    if explicit:
        return explicit.encode("utf-8")
    return get_secret_store().webhook_secret


def _ping_payload() -> dict:
    return {"zen": "Design for failure.", "hook_id": 1, "repository": {"full_name": "smoke/test"}}


def _signed_headers(body: bytes, event: str, delivery_id: str, secret: bytes) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": delivery_id,
        "X-Hub-Signature-256": "sha256=" + compute_signature(secret, body),
    }


def _check_status(resp: httpx.Response, expected_status: int) -> None:
    if resp.status_code != expected_status:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} for {resp.request.method} {resp.request.url}. "
            f"Body: {(resp.text or '')[:500]}"
        )


def main() -> None:
    setup_logging(level="INFO", json_format=False)

    base_url = _base_url()
    timeout = _timeout_seconds()
    secret = _webhook_secret()
    webhook_url = f"{base_url}/api/github/webhook"

    logger.info("Starting smoke tests", extra_data={"base_url": base_url, "timeout_seconds": timeout})

    with httpx.Client(timeout=timeout) as client:
        resp = client.get(f"{base_url}/health")
        _check_status(resp, 200)

        body = json.dumps(_ping_payload()).encode("utf-8")
        delivery_id = f"smoke-{uuid.uuid4()}"

        logger.info("Posting signed ping", extra_data={"delivery_id": delivery_id})
        resp = client.post(webhook_url, content=body, headers=_signed_headers(body, "ping", delivery_id, secret))
        _check_status(resp, 200)

        logger.info("Posting unsigned ping")
        resp = client.post(
            webhook_url,
            content=body,
            headers={"Content-Type": "application/json", "X-GitHub-Event": "ping", "X-GitHub-Delivery": delivery_id},
        )
        _check_status(resp, 401)

        # an event nobody classifies: accepted with zero tasks, then deduplicated
        body = json.dumps({"action": "created", "repository": {"full_name": "smoke/test"}}).encode("utf-8")
        delivery_id = f"smoke-{uuid.uuid4()}"
        headers = _signed_headers(body, "star", delivery_id, secret)
        resp = client.post(webhook_url, content=body, headers=headers)
        _check_status(resp, 200)
        resp = client.post(webhook_url, content=body, headers=headers)
        _check_status(resp, 200)
        if resp.json().get("status") != "duplicate":
            raise RuntimeError(f"Redelivery was not deduplicated: {resp.text[:500]}")

    logger.info("Smoke tests completed successfully")


if __name__ == "__main__":
    main()
