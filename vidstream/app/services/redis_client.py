"""
Redis Client Service

Connection management plus JSON helpers for queue, registry and session keys.
"""
import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio import ConnectionPool

logger = logging.getLogger(__name__)


class RedisClient:
    """Redis client with connection pooling"""

    def __init__(self, redis_url: str = "redis://localhost:6379", client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.pool = None
        self.client = client
        self._connected = client is not None

    async def connect(self):
        """Initialize Redis connection pool"""
        try:
            self.pool = ConnectionPool.from_url(
                self.redis_url,
                max_connections=20,
                retry_on_timeout=True,
                socket_keepalive=True,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            # Test connection
            await self.client.ping()
            self._connected = True
            logger.info("Redis connection established")

        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self._connected = False
            raise

    async def disconnect(self):
        """Close Redis connection"""
        if self.client is not None and self.pool is not None:
            await self.client.aclose()
            await self.pool.disconnect()
        self._connected = False
        logger.info("Redis connection closed")

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def ensure_connected(self) -> redis.Redis:
        if not self._connected:
            await self.connect()
        return self.client

    async def set_json(self, key: str, value: Any, expire: Optional[int] = None) -> bool:
        client = await self.ensure_connected()
        return bool(await client.set(key, json.dumps(value, default=str), ex=expire))

    async def get_json(self, key: str) -> Optional[Any]:
        client = await self.ensure_connected()
        raw = await client.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Discarding undecodable value at {key}")
            return None
