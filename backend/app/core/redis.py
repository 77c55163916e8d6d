import json
import time
from typing import Any

import redis.asyncio as redis
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from app.core.config import settings
from app.core.logging import get_logger
from app.core.metrics import (
    cache_hits_total,
    cache_misses_total,
    redis_command_duration_seconds,
    redis_commands_total,
    redis_errors_total,
)

logger = get_logger(__name__)


class RedisClient:
    """Async Redis client wrapper with command metrics"""

    def __init__(self):
        self.client: redis.Redis | None = None

    async def connect(self):
        """
        Connect to Redis

        Raises:
            ConnectionError: If unable to connect to Redis
        """
        try:
            self.client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_keepalive=True,
                health_check_interval=30,
            )
            await self.client.ping()
            logger.info(
                "redis_connected", host=settings.REDIS_HOST, port=settings.REDIS_PORT
            )
        except Exception as e:
            logger.error(
                "redis_connect_failed",
                error_type=type(e).__name__,
                error_message=str(e),
            )
            raise

    async def disconnect(self):
        if self.client:
            await self.client.aclose()
            logger.info("redis_disconnected")

    async def _run(self, command: str, key: str, *args: Any) -> Any:
        """Execute one command against the pool, recording metrics and errors."""
        if not self.client:
            raise RuntimeError("Redis client not connected")

        start_time = time.time()
        try:
            result = await getattr(self.client, command)(key, *args)
        except (ConnectionError, TimeoutError) as e:
            redis_errors_total.labels(error_type="connection").inc()
            logger.error(
                "redis_command_failed", command=command, key=key, error_message=str(e)
            )
            raise
        except RedisError as e:
            redis_errors_total.labels(error_type="other").inc()
            logger.error(
                "redis_command_failed", command=command, key=key, error_message=str(e)
            )
            raise

        redis_commands_total.labels(command=command).inc()
        redis_command_duration_seconds.labels(command=command).observe(
            time.time() - start_time
        )
        return result

    async def get(self, key: str) -> str | None:
        result = await self._run("get", key)
        if result is not None:
            cache_hits_total.inc()
        else:
            cache_misses_total.inc()
        return result

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        if ttl:
            await self._run("setex", key, ttl, value)
        else:
            await self._run("set", key, value)
        return True

    async def delete(self, key: str) -> int:
        return await self._run("delete", key)

    async def exists(self, key: str) -> bool:
        return bool(await self._run("exists", key))

    async def ping(self) -> bool:
        """True if Redis answers, False otherwise (used by the readiness probe)"""
        if not self.client:
            return False
        try:
            await self.client.ping()
            return True
        except RedisError:
            return False

    async def get_json(self, key: str) -> dict[str, Any] | None:
        """
        Get and deserialize a JSON value

        Raises:
            ValueError: If the stored value is not valid JSON
        """
        value = await self.get(key)
        if not value:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in Redis key {key}") from e

    async def set_json(
        self, key: str, value: dict[str, Any], ttl: int | None = None
    ) -> bool:
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise TypeError(f"Value not JSON-serializable for key {key}") from e
        return await self.set(key, payload, ttl)


# Global Redis client instance
redis_client = RedisClient()
