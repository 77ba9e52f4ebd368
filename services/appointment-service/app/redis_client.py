import redis.asyncio as redis

from .config import Settings


def create_redis(settings: Settings):
    if not settings.redis_url:
        return None
    return redis.from_url(settings.redis_url, decode_responses=True)
