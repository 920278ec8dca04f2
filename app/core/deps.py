from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from redis import asyncio as aioredis
from redis.asyncio import ConnectionPool, Redis
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings, Settings
from app.db.session import async_session

_redis_pool: ConnectionPool | None = None


async def get_settings_dep() -> Settings:
    return get_settings()


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session


def ensure_redis_pool(url: str) -> ConnectionPool:
    global _redis_pool
    settings = get_settings()
    if not url.startswith("rediss://") and settings.environment != "development":
        raise RuntimeError("Redis URL must use TLS (rediss://) outside development")
    if _redis_pool is None:
        _redis_pool = ConnectionPool.from_url(
            url,
            max_connections=64,
            decode_responses=True,
            socket_timeout=1.0,
            socket_connect_timeout=1.0,
            health_check_interval=30,
        )
    return _redis_pool


async def get_redis(settings: Settings = Depends(get_settings_dep)):
    pool = ensure_redis_pool(settings.redis_url)
    client: Redis = aioredis.Redis(connection_pool=pool)
    try:
        yield client
    finally:
        # keep the pool, drop only this client
        await client.aclose()


async def check_rate_limit(redis: Redis, key: str, limit: int, window: int) -> bool:
    current = await redis.incr(key)
    if current == 1:
        await redis.expire(key, window)
    return current <= limit


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def webhook_rate_limit(
    request: Request,
    redis: Redis = Depends(get_redis),
    settings: Settings = Depends(get_settings_dep),
) -> str:
    ip = client_ip(request)
    allowed = await check_rate_limit(
        redis, f"rl:webhook:{ip}", settings.webhook_rate_limit_max, settings.webhook_rate_limit_window
    )
    if not allowed:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Too many webhook deliveries")
    return ip
