"""
Redis client utilities for short-lived per-user state
"""
import logging
import redis
from typing import Optional, List
from .error_handling import HistoryStoreError
from .settings import Settings, settings

logger = logging.getLogger(__name__)

def connect_redis(url: str = None, cfg: Settings = None) -> redis.Redis:
    cfg = cfg or settings
    return redis.Redis.from_url(
        url or cfg.redis_url,
        decode_responses=True,
        socket_timeout=cfg.redis_socket_timeout,
        socket_connect_timeout=cfg.redis_connect_timeout,
    )

class RedisClient:
    """Redis client wrapper; every backing-store failure surfaces as HistoryStoreError"""

    def __init__(self, client: redis.Redis = None):
        self.client = client if client is not None else connect_redis()

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    def close(self):
        self.client.close()

    # Bounded lists
    def push_bounded(self, key: str, value: str, size: int) -> List[str]:
        """Push to the front of a list, trim it to size and return it newest first"""
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.lpush(key, value)
            pipe.ltrim(key, 0, size - 1)
            pipe.lrange(key, 0, -1)
            results = pipe.execute()
            return list(results[2])
        except redis.RedisError as e:
            raise HistoryStoreError(f"push to {key} failed", e) from e

    # Plain slots
    def get_value(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except redis.RedisError as e:
            raise HistoryStoreError(f"get {key} failed", e) from e

    def set_value(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            self.client.set(key, value, ex=ttl_seconds)
        except redis.RedisError as e:
            raise HistoryStoreError(f"set {key} failed", e) from e

    def exists(self, key: str) -> bool:
        try:
            return bool(self.client.exists(key))
        except redis.RedisError as e:
            raise HistoryStoreError(f"exists {key} failed", e) from e
