"""Redis client configuration."""

import platform
import socket
from typing import List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from cream.core.config import settings
from cream.core.logging import logger


class RedisClient:
    """Redis client wrapper with connection pooling.

    Publishing and pushing share one pool. Blocking pops get their own pool,
    without a socket timeout, so a long ``BLPOP`` is not cut short.
    """

    def __init__(self):
        """Initialize Redis clients with separate pools."""
        self._client: Optional[redis.Redis] = None
        self._queue_client: Optional[redis.Redis] = None

    @property
    def client(self) -> redis.Redis:
        """Get or create the main Redis client."""
        if self._client is None:
            self._client = self._create_client(max_connections=50, socket_timeout=5)
        return self._client

    @property
    def queue_client(self) -> redis.Redis:
        """Get or create the Redis client used for blocking queue reads."""
        if self._queue_client is None:
            self._queue_client = self._create_client(max_connections=10, socket_timeout=None)
        return self._queue_client

    def _get_socket_keepalive_options(self) -> dict:
        """Get socket keepalive options based on the OS.

        Returns empty dict for macOS to avoid socket option errors.
        """
        if platform.system() == "Darwin":
            return {}
        if hasattr(socket, "TCP_KEEPIDLE"):
            return {
                socket.TCP_KEEPIDLE: 60,  # Start keepalive after 60s idle
                socket.TCP_KEEPINTVL: 10,  # Interval between keepalive probes
                socket.TCP_KEEPCNT: 6,  # Number of keepalive probes
            }
        return {}

    def _create_client(
        self, max_connections: int = 50, socket_timeout: Optional[float] = 5
    ) -> redis.Redis:
        """Create a Redis client with specified connection pool size."""
        pool = redis.ConnectionPool(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            db=settings.REDIS_DB,
            password=settings.REDIS_PASSWORD if settings.REDIS_PASSWORD else None,
            decode_responses=True,
            max_connections=max_connections,
            retry_on_timeout=True,
            socket_keepalive=True,
            socket_keepalive_options=self._get_socket_keepalive_options(),
            socket_connect_timeout=5,
            socket_timeout=socket_timeout,
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
        )

        return redis.Redis(connection_pool=pool)

    async def publish(self, channel: str, message: str) -> int:
        """Publish a message to a channel.

        Returns:
            The number of subscribers that received the message
        """
        return await self.client.publish(channel, message)

    async def push(self, queue: str, message: str) -> int:
        """Append a message to a list-backed queue.

        Returns:
            The length of the queue after the push
        """
        return await self.client.rpush(queue, message)

    async def pop(self, queues: List[str], timeout: int) -> Optional[Tuple[str, str]]:
        """Block until a message is available on one of ``queues``.

        Returns:
            ``(queue, message)``, or None if ``timeout`` seconds passed first
        """
        return await self.queue_client.blpop(queues, timeout=timeout)

    async def test_connection(self) -> bool:
        """Test Redis connection.

        Returns:
            True if connection is successful, False otherwise
        """
        try:
            await self.client.ping()
            logger.info("Redis connection successful")
            return True
        except Exception as e:
            logger.error(f"Redis connection failed: {e}")
            return False

    async def close(self) -> None:
        """Close Redis connection gracefully."""
        if self._client:
            await self._client.aclose()
        if self._queue_client:
            await self._queue_client.aclose()


# Create a global instance
redis_client = RedisClient()
