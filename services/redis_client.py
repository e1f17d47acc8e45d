"""Redis client service for the proxy fulfillment service.

This module provides Redis connectivity, Lua script execution and the
notification queue used by the rest of the service layer.
"""

import json
from typing import Any, Awaitable, Dict, Optional, Sequence, Union, cast

import redis.asyncio as redis

from config import ApplicationConfig
from models import NotificationMessage
from utils import create_contextual_logger, log_exception


class RedisClient:
    """Async Redis client with connection management and queue operations."""

    def __init__(self, config: ApplicationConfig, client: Optional[redis.Redis] = None) -> None:
        """Initialize Redis client.

        An already constructed ``client`` may be supplied (e.g. an in-process
        fake); ``connect`` then only verifies it with a ping.
        """
        self.config = config
        self.logger = create_contextual_logger(__name__, service="redis_client")
        self._pool: Optional[redis.ConnectionPool] = None
        self._client: Optional[redis.Redis] = client
        self._connected = client is not None

    async def connect(self) -> None:
        """Establish Redis connection."""
        try:
            if self._client is None:
                self._pool = redis.ConnectionPool(
                    host=self.config.redis_host,
                    port=self.config.redis_port,
                    password=self.config.redis_password,
                    db=self.config.redis_db,
                    socket_timeout=self.config.redis_socket_timeout,
                    retry_on_timeout=self.config.redis_retry_on_timeout,
                    max_connections=self.config.redis_max_connections,
                    decode_responses=True,
                )
                self._client = redis.Redis(connection_pool=self._pool)

            await self._client.ping()
            self._connected = True

            self.logger.info(
                "Redis connection established successfully",
                serviceName="RedisClient",
                operationName="connect",
                host=self.config.redis_host,
                port=self.config.redis_port,
                db=self.config.redis_db,
                success=True,
            )
        except Exception as e:
            self._connected = False
            log_exception(
                self.logger,
                e,
                "Redis connection failed: RedisClient.connect",
                serviceName="RedisClient",
                operationName="connect",
                host=self.config.redis_host,
                port=self.config.redis_port,
                db=self.config.redis_db,
            )
            raise

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._connected = False
            self.logger.info("Disconnected from Redis")

    async def is_connected(self) -> bool:
        """Check Redis connection status."""
        if not self._client or not self._connected:
            return False

        try:
            await self._client.ping()
            return True
        except Exception:
            self._connected = False
            return False

    async def _ensure_connected(self) -> None:
        """Ensure Redis connection is established."""
        if not await self.is_connected():
            await self.connect()

    @property
    def client(self) -> redis.Redis:
        """Underlying redis client for stores that issue commands directly."""
        if self._client is None:
            raise RuntimeError("Redis client is not connected")
        return self._client

    async def eval_script(self, script: str, keys: Sequence[str], args: Sequence[Any]) -> Any:
        """Run a Lua script atomically on the server."""
        await self._ensure_connected()
        return await cast(
            Awaitable[Any],
            self.client.eval(script, len(keys), *keys, *[str(a) for a in args]),
        )

    async def push_message(
        self,
        queue: str,
        message: Union[Dict[str, Any], NotificationMessage],
        correlation_id: Optional[str] = None
    ) -> None:
        """Push message to Redis queue."""
        await self._ensure_connected()

        try:
            if isinstance(message, NotificationMessage):
                data = message.model_dump(mode="json")
            else:
                data = message

            serialized = json.dumps(data, default=str)
            await cast(Awaitable[int], self.client.lpush(queue, serialized))

            self.logger.debug(
                "Message pushed to queue",
                queue=queue,
                correlation_id=correlation_id,
                message_size=len(serialized),
            )
        except Exception as e:
            log_exception(
                self.logger,
                e,
                "Failed to push message to queue",
                queue=queue,
                correlation_id=correlation_id,
                message_type=type(message).__name__,
            )
            raise

    async def get_queue_length(self, queue: str) -> int:
        """Get the length of a queue."""
        await self._ensure_connected()

        try:
            return await cast(Awaitable[int], self.client.llen(queue))
        except Exception as e:
            self.logger.error(
                "Failed to get queue length",
                queue=queue,
                error=str(e),
            )
            return 0

    async def health_check(self) -> Dict[str, Any]:
        """Perform Redis health check."""
        try:
            if not await self.is_connected():
                return {
                    "status": "unhealthy",
                    "error": "Not connected to Redis"
                }

            test_key = "health_check_test"
            await self.client.set(test_key, "test_value", ex=5)
            value = await self.client.get(test_key)
            await self.client.delete(test_key)

            if value == "test_value":
                return {
                    "status": "healthy",
                    "host": self.config.redis_host,
                    "port": self.config.redis_port,
                    "db": self.config.redis_db,
                }
            return {
                "status": "unhealthy",
                "error": "Cache operations failed"
            }
        except Exception as e:
            return {
                "status": "unhealthy",
                "error": str(e)
            }
