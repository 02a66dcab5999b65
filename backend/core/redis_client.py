import logging

import redis
from redis.exceptions import RedisError

from config import settings

logger = logging.getLogger(__name__)


def create_redis_client(url: str = settings.redis_url) -> redis.Redis:
    """Connections are opened lazily on the first command."""
    return redis.Redis.from_url(url, decode_responses=True)


def test_connection(client: redis.Redis) -> bool:
    try:
        return bool(client.ping())
    except RedisError as exc:
        logger.warning("Redis ping failed: %s", exc)
        return False
