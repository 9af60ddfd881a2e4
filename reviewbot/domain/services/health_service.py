"""
Health checks - liveness (process is up) and readiness (dependencies).

Readiness covers the database (ledger), Redis (dedup window), the Celery
broker and the secret files. Error strings never expose infrastructure
details.
"""
import asyncio
from typing import Any

from sqlalchemy import text

from reviewbot.core.exceptions import SecretUnavailable
from reviewbot.core.logging import get_logger
from reviewbot.core.redis_client import get_redis
from reviewbot.core.secrets import get_secret_store
from reviewbot.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_BROKER = "error: broker_unavailable"
_ERROR_SECRETS = "error: secret_unavailable"


async def _check_db() -> str:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("Database health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


def _ping_broker() -> None:
    from reviewbot.workers.celery_app import celery_app

    with celery_app.connection_for_write() as connection:
        connection.ensure_connection(max_retries=1)


async def _check_broker() -> str:
    try:
        await asyncio.to_thread(_ping_broker)
        return _CHECK_OK
    except Exception as e:
        logger.warning("Broker health check failed", extra_data={"error": str(e)})
        return _ERROR_BROKER


async def _check_secrets() -> str:
    try:
        get_secret_store().load_all()
        return _CHECK_OK
    except SecretUnavailable as e:
        logger.warning("Secret health check failed", extra_data={"kind": e.kind})
        return _ERROR_SECRETS


async def check_readiness() -> dict[str, Any]:
    """
    status is "healthy" when every dependency answered, "degraded" otherwise;
    each dependency reports "ok" or "error: ...".
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "broker": await _check_broker(),
        "secrets": await _check_secrets(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {"status": overall_status, **checks}
