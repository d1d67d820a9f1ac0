"""Shared Redis connection.

One client backs three concerns: sliding-window counters
(``ratelimit:*``), login challenges (``login_challenge:*``) and, when
configured, the ``audit:security`` stream. Responses are decoded to ``str``.
"""

from redis.asyncio import Redis

from lexauth.config import get_settings

_client: Redis | None = None


async def init_redis() -> Redis:
    """Connect and ping; raises if Redis is unreachable at startup."""
    global _client

    settings = get_settings()
    client = Redis.from_url(
        settings.redis_url,
        max_connections=settings.redis_max_connections,
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_socket_connect_timeout,
        decode_responses=True,
        health_check_interval=30,
    )
    await client.ping()
    _client = client
    return client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


def get_redis() -> Redis | None:
    """The connected client, or ``None`` outside the application lifespan."""
    return _client
