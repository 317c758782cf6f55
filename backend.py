from typing import List, Optional

import redis.asyncio as redis

from constants import BACKEND_TIMEOUT_SECONDS, REDIS_HOST, REDIS_PORT, REDIS_URL
from logging_config import get_logger
from redis_keys import REDIS_MESSAGES_KEY

logger = get_logger(__name__)


class RedisBackend:
    """Thin async wrapper over the Redis commands used for room message logs."""

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        if redis_client is None:
            # Creating the client does not connect; the first command does.
            redis_client = redis.from_url(
                REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=BACKEND_TIMEOUT_SECONDS,
                socket_timeout=BACKEND_TIMEOUT_SECONDS,
            )
            logger.info(f"Initializing RedisBackend for {REDIS_HOST}:{REDIS_PORT}")
        self.redis_client = redis_client

    def get_messages_key(self, room_id: str) -> str:
        return REDIS_MESSAGES_KEY.format(slug=room_id)

    async def ping(self) -> bool:
        return await self.redis_client.ping()

    async def push_message(self, room_id: str, payload: str, limit: int, ttl: int) -> None:
        """Append, trim to the newest `limit` entries and refresh the list TTL in one transaction."""
        key = self.get_messages_key(room_id)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            await pipe.rpush(key, payload).ltrim(key, -limit, -1).expire(key, ttl).execute()
        logger.debug(f"Pushed message to {key} (limit={limit}, ttl={ttl})")

    async def get_messages(self, room_id: str) -> List[str]:
        key = self.get_messages_key(room_id)
        return await self.redis_client.lrange(key, 0, -1)

    async def delete_messages(self, room_id: str) -> bool:
        key = self.get_messages_key(room_id)
        deleted = await self.redis_client.delete(key)
        logger.debug(f"Deleted {key}: {deleted}")
        return bool(deleted)

    async def close(self) -> None:
        await self.redis_client.aclose()
        logger.info("Redis client closed")


redis_backend = RedisBackend()
