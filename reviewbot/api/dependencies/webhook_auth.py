"""
GitHub webhook signature verification.

GitHub signs the exact request body with the webhook secret and sends
``X-Hub-Signature-256: sha256=<hex>`` (and the legacy
``X-Hub-Signature: sha1=<hex>``). The dependency returns the raw body only
when the signature matches, so the route never parses unauthenticated bytes.

Usage:
    @router.post("/webhook")
    async def github_webhook(
        body: bytes = Depends(verify_github_signature),
    ):
        ...
"""
import hashlib
import hmac

from fastapi import Depends, Request

from reviewbot.core import metrics
from reviewbot.core.exceptions import AuthFailure
from reviewbot.core.logging import get_logger
from reviewbot.core.secrets import SecretStore, get_secret_store

logger = get_logger(__name__)

_SIGNATURE_HEADERS = (
    ("X-Hub-Signature-256", "sha256=", hashlib.sha256),
    ("X-Hub-Signature", "sha1=", hashlib.sha1),
)


def compute_signature(secret: bytes, body: bytes, algorithm=hashlib.sha256) -> str:
    return hmac.new(secret, body, algorithm).hexdigest()


def signature_matches(secret: bytes, body: bytes, headers) -> bool:
    """sha256 header wins; sha1 is consulted only when sha256 is absent"""
    for header, prefix, algorithm in _SIGNATURE_HEADERS:
        value = headers.get(header)
        if value is None:
            continue
        if not value.startswith(prefix):
            return False
        expected = compute_signature(secret, body, algorithm)
        # constant-time comparison
        return hmac.compare_digest(value[len(prefix):].strip().lower(), expected)
    return False


async def verify_github_signature(
    request: Request,
    secret_store: SecretStore = Depends(get_secret_store),
) -> bytes:
    """Raw body of a correctly signed request; AuthFailure (401) otherwise"""
    body = await request.body()
    if not signature_matches(secret_store.webhook_secret, body, request.headers):
        metrics.record_webhook_rejected("signature")
        logger.warning(
            "Webhook signature verification failed",
            extra_data={
                "delivery_id": request.headers.get("X-GitHub-Delivery"),
                "has_sha256": "X-Hub-Signature-256" in request.headers,
                "has_sha1": "X-Hub-Signature" in request.headers,
            },
        )
        raise AuthFailure("Invalid webhook signature")
    return body
