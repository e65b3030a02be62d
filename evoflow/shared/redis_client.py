import redis.asyncio as redis

from evoflow.shared.config import Settings


def create_redis_client(settings: Settings) -> redis.Redis:
    return redis.from_url(settings.redis_url, decode_responses=True)
