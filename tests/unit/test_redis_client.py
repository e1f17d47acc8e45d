"""Unit tests for Redis client service."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from models import NotificationMessage, NotificationType
from services.redis_client import RedisClient


class TestRedisClient:
    """Test cases for RedisClient class."""

    @pytest.fixture
    def client(self, mock_config) -> RedisClient:
        """Create a Redis client instance for testing."""
        return RedisClient(mock_config)

    @pytest.mark.asyncio
    async def test_connect_success(self, client, mock_config) -> None:
        """Test successful Redis connection."""
        with patch("services.redis_client.redis") as mock_redis:
            mock_pool = AsyncMock()
            mock_client = AsyncMock()
            mock_redis.ConnectionPool.return_value = mock_pool
            mock_redis.Redis.return_value = mock_client

            await client.connect()

            assert client._connected is True
            mock_redis.ConnectionPool.assert_called_once_with(
                host=mock_config.redis_host,
                port=mock_config.redis_port,
                password=mock_config.redis_password,
                db=mock_config.redis_db,
                socket_timeout=mock_config.redis_socket_timeout,
                retry_on_timeout=mock_config.redis_retry_on_timeout,
                max_connections=mock_config.redis_max_connections,
                decode_responses=True,
            )
            mock_client.ping.assert_called_once()

    @pytest.mark.asyncio
    async def test_connect_failure(self, client) -> None:
        """Test Redis connection failure."""
        with patch("services.redis_client.redis") as mock_redis:
            mock_client = AsyncMock()
            mock_client.ping = AsyncMock(side_effect=ConnectionError("Connection failed"))
            mock_redis.Redis.return_value = mock_client

            with pytest.raises(ConnectionError):
                await client.connect()

            assert client._connected is False

    @pytest.mark.asyncio
    async def test_supplied_client_is_used(self, mock_config, fake_redis) -> None:
        """A prebuilt client is only pinged on connect."""
        client = RedisClient(mock_config, client=fake_redis)

        await client.connect()

        assert client.client is fake_redis
        assert await client.is_connected() is True

    @pytest.mark.asyncio
    async def test_disconnect(self, client) -> None:
        """Test Redis disconnection."""
        mock_client = AsyncMock()
        client._client = mock_client
        client._connected = True

        await client.disconnect()

        mock_client.aclose.assert_called_once()
        assert client._connected is False

    @pytest.mark.asyncio
    async def test_is_connected_false_on_ping_failure(self, client) -> None:
        """Test is_connected returns False when ping fails."""
        mock_client = AsyncMock()
        mock_client.ping = AsyncMock(side_effect=ConnectionError("Ping failed"))
        client._client = mock_client
        client._connected = True

        assert await client.is_connected() is False
        assert client._connected is False

    def test_client_property_requires_connection(self, client) -> None:
        with pytest.raises(RuntimeError):
            client.client

    @pytest.mark.asyncio
    async def test_eval_script_stringifies_arguments(self, redis_client) -> None:
        result = await redis_client.eval_script(
            "return {KEYS[1], ARGV[1], ARGV[2]}", ["some:key"], [42, True]
        )

        assert result == ["some:key", "42", "True"]

    @pytest.mark.asyncio
    async def test_push_notification_message(self, redis_client, fake_redis) -> None:
        """Test pushing a NotificationMessage object."""
        message = NotificationMessage(
            message_type=NotificationType.PROXY_READY,
            audience="customer",
            user_id="user-1",
            order_id="order-1",
            data={"proxy_ids": ["p-1"]},
        )

        await redis_client.push_message("queue:test", message, correlation_id="corr-1")

        [raw] = await fake_redis.lrange("queue:test", 0, -1)
        data = json.loads(raw)
        assert data["message_type"] == "proxy_ready"
        assert data["audience"] == "customer"
        assert data["data"] == {"proxy_ids": ["p-1"]}

    @pytest.mark.asyncio
    async def test_push_message_with_dict(self, redis_client, fake_redis) -> None:
        """Test pushing a dictionary message."""
        await redis_client.push_message("queue:test", {"test": "data"})
        await redis_client.push_message("queue:test", {"test": "more"})

        assert await redis_client.get_queue_length("queue:test") == 2
        assert json.loads(await fake_redis.rpop("queue:test")) == {"test": "data"}

    @pytest.mark.asyncio
    async def test_health_check(self, redis_client) -> None:
        """Test health check reports healthy against a live server."""
        health = await redis_client.health_check()

        assert health["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_health_check_not_connected(self, client) -> None:
        """Test health check when not connected."""
        health = await client.health_check()

        assert health["status"] == "unhealthy"
        assert health["error"] == "Not connected to Redis"
