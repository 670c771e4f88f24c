"""Drop webhook redeliveries by claiming each platform message id in Redis."""

from typing import Optional

import redis.asyncio as redis_async

from shopbot.config import settings
from shopbot.logging_config import get_logger

logger = get_logger("dedup_service")

KEY_PREFIX = "shopbot:dedup"


class DeliveryDeduplicator:
    def __init__(self, redis_client=None, *, ttl_seconds: Optional[int] = None):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds or settings.dedup_ttl_seconds

    @classmethod
    def from_settings(cls) -> "DeliveryDeduplicator":
        if not settings.redis_url:
            return cls(None)
        client = redis_async.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=settings.redis_socket_timeout_seconds,
            socket_timeout=settings.redis_socket_timeout_seconds,
        )
        return cls(client)

    @property
    def enabled(self) -> bool:
        return self.redis_client is not None

    async def is_duplicate(self, scope: str, message_id: Optional[str]) -> bool:
        """Claim ``message_id`` for ``scope``; True if it was already claimed.

        Redis trouble never blocks message receipt: errors are logged and the
        event is processed.
        """
        if not message_id or not self.redis_client:
            return False

        key = f"{KEY_PREFIX}:{scope}:{message_id}"
        try:
            was_set = await self.redis_client.set(key, "1", ex=self.ttl_seconds, nx=True)
        except Exception as e:
            logger.warning(
                f"Dedup redis unavailable, processing anyway: {e}",
                extra={"context": {"scope": scope, "message_id": message_id}},
            )
            return False
        return not was_set

    async def release(self, scope: str, message_id: Optional[str]) -> None:
        """Forget a claim so a platform retry of a failed delivery is processed."""
        if not message_id or not self.redis_client:
            return
        try:
            await self.redis_client.delete(f"{KEY_PREFIX}:{scope}:{message_id}")
        except Exception as e:
            logger.warning(f"Dedup release failed: {e}", extra={"context": {"scope": scope, "message_id": message_id}})
