"""
Delivery dedup window at the gateway.

GitHub redelivers a webhook with the same X-GitHub-Delivery id when it
did not see a 2xx in time. SET NX EX on the delivery id turns those
redeliveries into a no-op without touching the database. The window is
an optimization only; the idempotency ledger remains the guarantee.
"""
import redis.asyncio as aioredis

from reviewbot.core.config import settings
from reviewbot.core.logging import get_logger

logger = get_logger(__name__)

_KEY_PREFIX = "webhook_delivery"


class DeliveryDedupWindow:
    def __init__(self, redis: aioredis.Redis, window_seconds: int | None = None):
        self.redis = redis
        self.window_seconds = window_seconds or settings.DEDUP_WINDOW_SECONDS

    @staticmethod
    def _key(delivery_id: str) -> str:
        return f"{_KEY_PREFIX}:{delivery_id}"

    async def try_mark(self, delivery_id: str) -> bool:
        """True the first time a delivery id is seen within the window (atomic)"""
        result = await self.redis.set(
            self._key(delivery_id), "1", nx=True, ex=self.window_seconds
        )
        return bool(result)

    async def forget(self, delivery_id: str) -> None:
        """Release the id so GitHub's redelivery is processed (used when publishing failed)"""
        await self.redis.delete(self._key(delivery_id))
        logger.info("Dedup key released", extra_data={"delivery_id": delivery_id})
