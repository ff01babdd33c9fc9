"""Redis connection pool for the ARQ cron worker.

The API runs without Redis; the health endpoint reports it as unavailable
and scheduled passes can still be triggered through POST /api/scraper/cron.
"""

import logging

from arq.connections import ArqRedis, RedisSettings, create_pool
from redis.exceptions import RedisError

from catalog_scraper.config import get_settings

logger = logging.getLogger(__name__)

_redis_pool: ArqRedis | None = None


def redis_settings(redis_url: str | None = None) -> RedisSettings:
    """ARQ RedisSettings that fail fast instead of retrying."""
    base = RedisSettings.from_dsn(redis_url or get_settings().redis_url)
    base.conn_timeout = 2
    base.conn_retries = 0
    base.conn_retry_delay = 0
    return base


async def get_redis_pool() -> ArqRedis | None:
    """Cached pool, or None when Redis cannot be reached."""
    global _redis_pool
    if _redis_pool is not None:
        return _redis_pool
    try:
        _redis_pool = await create_pool(redis_settings())
        logger.info("Redis connection pool created")
    except (RedisError, OSError) as e:
        logger.warning(f"Redis unavailable: {e}")
        return None
    return _redis_pool


async def close_redis_pool() -> None:
    global _redis_pool
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None
        logger.info("Redis connection pool closed")


async def is_redis_available() -> bool:
    global _redis_pool
    pool = await get_redis_pool()
    if pool is None:
        return False
    try:
        await pool.ping()
        return True
    except (RedisError, OSError) as e:
        logger.warning(f"Redis ping failed: {e}")
        _redis_pool = None
        return False
