"""
GitHub Webhook Gateway

    Received -> SignatureVerified -> Deduplicated -> Classified -> Published

Nothing is published for a request that fails any step. The response is
only 2xx once every envelope of the delivery is durably in the broker; a
classification or publish failure releases the dedup mark and answers 500
so GitHub redelivers.
"""
import json

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Header
from fastapi.concurrency import run_in_threadpool
from redis.exceptions import RedisError

from reviewbot.api.dependencies.webhook_auth import verify_github_signature
from reviewbot.core import metrics
from reviewbot.core.exceptions import ValidationException
from reviewbot.core.logging import get_logger
from reviewbot.core.redis_client import get_redis
from reviewbot.domain.services.classifier import EventClassifier
from reviewbot.domain.services.dedup_window import DeliveryDedupWindow
from reviewbot.workers.broker import MessageBroker, get_broker

logger = get_logger(__name__)

router = APIRouter()

_MAX_DELIVERY_ID_LENGTH = 200

_classifier: EventClassifier | None = None


def get_classifier() -> EventClassifier:
    global _classifier
    if _classifier is None:
        _classifier = EventClassifier()
    return _classifier


async def get_dedup_window() -> DeliveryDedupWindow | None:
    """None when Redis is down: the ledger still prevents duplicate side effects"""
    try:
        redis: aioredis.Redis = await get_redis()
    except (RedisError, OSError) as e:
        logger.warning("Dedup window unavailable, continuing without it", extra_data={"error": str(e)})
        return None
    return DeliveryDedupWindow(redis)


async def _try_mark(window: DeliveryDedupWindow | None, delivery_id: str) -> bool:
    if window is None:
        return True
    try:
        return await window.try_mark(delivery_id)
    except (RedisError, OSError) as e:
        logger.warning("Dedup check failed, continuing", extra_data={"delivery_id": delivery_id, "error": str(e)})
        return True


async def _forget(window: DeliveryDedupWindow | None, delivery_id: str) -> None:
    if window is None:
        return
    try:
        await window.forget(delivery_id)
    except (RedisError, OSError) as e:
        # the key expires on its own; until then redeliveries are treated as duplicates
        logger.error("Could not release dedup key", extra_data={"delivery_id": delivery_id, "error": str(e)})


def _parse_body(body: bytes) -> dict:
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        metrics.record_webhook_rejected("malformed_body")
        raise ValidationException("Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        metrics.record_webhook_rejected("malformed_body")
        raise ValidationException("Webhook body must be a JSON object")
    return payload


@router.post("/webhook")
async def github_webhook(
    body: bytes = Depends(verify_github_signature),
    x_github_event: str | None = Header(None),
    x_github_delivery: str | None = Header(None),
    broker: MessageBroker = Depends(get_broker),
    window: DeliveryDedupWindow | None = Depends(get_dedup_window),
    classifier: EventClassifier = Depends(get_classifier),
) -> dict:
    """Receive a GitHub App webhook and publish its tasks"""
    event = (x_github_event or "").strip()
    delivery_id = (x_github_delivery or "").strip()

    if not delivery_id:
        metrics.record_webhook_rejected("missing_delivery_id")
        raise ValidationException("Missing X-GitHub-Delivery header", field="X-GitHub-Delivery")
    if len(delivery_id) > _MAX_DELIVERY_ID_LENGTH:
        metrics.record_webhook_rejected("invalid_delivery_id")
        raise ValidationException("X-GitHub-Delivery header is too long", field="X-GitHub-Delivery")

    payload = _parse_body(body)
    metrics.record_webhook_received(event)

    if event == "ping":
        logger.info("GitHub ping received", extra_data={"delivery_id": delivery_id, "zen": payload.get("zen")})
        return {"status": "pong", "delivery_id": delivery_id, "tasks": []}

    if not await _try_mark(window, delivery_id):
        logger.info("Duplicate delivery ignored", extra_data={"delivery_id": delivery_id, "event": event})
        return {"status": "duplicate", "delivery_id": delivery_id}

    try:
        envelopes = classifier.classify(event, delivery_id, payload)
    except Exception:
        metrics.record_webhook_rejected("classify_failed")
        await _forget(window, delivery_id)
        raise

    try:
        for envelope in envelopes:
            await run_in_threadpool(broker.publish, envelope)
            metrics.record_published(envelope.task_type.value)
    except Exception:
        metrics.record_webhook_rejected("publish_failed")
        await _forget(window, delivery_id)
        raise

    logger.info(
        "Webhook accepted",
        extra_data={
            "delivery_id": delivery_id,
            "event": event,
            "action": payload.get("action"),
            "tasks": [e.task_type.value for e in envelopes],
        },
    )
    return {
        "status": "accepted",
        "delivery_id": delivery_id,
        "tasks": [
            {"envelope_id": e.envelope_id, "task_type": e.task_type.value} for e in envelopes
        ],
    }
