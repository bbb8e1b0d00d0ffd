"""Unit tests for the Redis client singleton and reconciliation throttle."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis import ConnectionError as RedisConnectionError

from shared.redis_client import (
    THROTTLE_KEY_PREFIX,
    acquire_throttle,
    close_redis_client,
    get_redis_client,
)


class TestRedisClient:
    """Tests for Redis client singleton."""

    def test_get_redis_client_is_singleton(self):
        with patch("shared.redis_client.redis.from_url") as mock_from_url:
            mock_from_url.return_value = MagicMock()
            get_redis_client.cache_clear()

            result1 = get_redis_client()
            result2 = get_redis_client()

            assert result1 is result2
            assert mock_from_url.call_count == 1

        get_redis_client.cache_clear()

    def test_redis_client_configured_with_pool(self):
        with patch("shared.redis_client.redis.from_url") as mock_from_url:
            get_redis_client.cache_clear()
            get_redis_client()

            kwargs = mock_from_url.call_args.kwargs
            assert kwargs["max_connections"] == 20
            assert kwargs["decode_responses"] is True
            assert kwargs["retry_on_timeout"] is True

        get_redis_client.cache_clear()

    @pytest.mark.asyncio
    async def test_close_swallows_connection_error(self):
        mock_client = MagicMock()
        mock_client.aclose = AsyncMock(side_effect=RedisConnectionError("gone"))

        with patch("shared.redis_client.get_redis_client", return_value=mock_client):
            await close_redis_client()

        mock_client.aclose.assert_awaited_once()


class TestAcquireThrottle:
    @pytest.mark.asyncio
    async def test_first_call_acquires(self):
        mock_client = MagicMock()
        mock_client.set = AsyncMock(return_value=True)

        with patch("shared.redis_client.get_redis_client", return_value=mock_client):
            assert await acquire_throttle("user:abc", 30) is True

        mock_client.set.assert_awaited_once_with(
            f"{THROTTLE_KEY_PREFIX}:user:abc", "1", nx=True, ex=30
        )

    @pytest.mark.asyncio
    async def test_second_call_inside_window_is_throttled(self):
        mock_client = MagicMock()
        mock_client.set = AsyncMock(return_value=None)

        with patch("shared.redis_client.get_redis_client", return_value=mock_client):
            assert await acquire_throttle("barbershop:xyz", 30) is False

    @pytest.mark.asyncio
    async def test_redis_outage_does_not_block(self):
        mock_client = MagicMock()
        mock_client.set = AsyncMock(side_effect=RedisConnectionError("refused"))

        with patch("shared.redis_client.get_redis_client", return_value=mock_client):
            assert await acquire_throttle("user:abc", 30) is True
