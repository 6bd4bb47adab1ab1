"""Redis connection with configurable connection pooling.

Pool configuration via environment variables:
- REDIS_URL: Connection URL (empty disables Redis; the analytics cache
  then treats every read as a miss)
- REDIS_SOCKET_TIMEOUT: Socket timeout in seconds (default: 5)
"""

import redis.asyncio as redis

from config import get_settings
from utils.logging import get_logger

logger = get_logger(__name__)

redis_client: redis.Redis | None = None


async def init_redis():
    """Initialize the Redis client if a URL is configured."""
    global redis_client
    settings = get_settings()

    if not settings.redis_url:
        logger.info("REDIS_URL not set; analytics cache disabled")
        return

    logger.info(
        f"Initializing Redis connection pool: "
        f"socket_timeout={settings.redis_socket_timeout}s"
    )

    redis_client = redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_socket_timeout,
    )
    await redis_client.ping()

    logger.info("Redis connection pool initialized successfully")


async def close_redis():
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None
        logger.info("Redis connection pool closed")


def get_redis() -> redis.Redis | None:
    """Get the Redis client."""
    return redis_client
