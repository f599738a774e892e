from __future__ import annotations

import logging
import time
from typing import Optional

import redis

logger = logging.getLogger(__name__)

METRICS_KEY = "redis-cache:metrics"


class RedisCacheHandle:
    """CacheHandle backed by the Redis server the drop-in writes to."""

    def __init__(self, url: str, metrics_key: str = METRICS_KEY, client: Optional[redis.Redis] = None) -> None:
        self._url = url
        self._metrics_key = metrics_key
        self.client = client if client is not None else redis.from_url(url)

    def flush(self) -> bool:
        try:
            return bool(self.client.flushdb())
        except redis.RedisError as exc:
            logger.warning("cache flush failed: %s", exc)
            return False

    def status(self) -> Optional[bool]:
        try:
            return bool(self.client.ping())
        except redis.RedisError as exc:
            logger.info("cache ping failed: %s", exc)
            return False

    def discard_metrics(self, max_age_sec: int) -> int:
        cutoff = time.time() - max(0, int(max_age_sec))
        try:
            return int(self.client.zremrangebyscore(self._metrics_key, "-inf", cutoff))
        except redis.RedisError as exc:
            logger.warning("discarding metrics failed: %s", exc)
            return 0


class NullCacheHandle:
    """Used when no store is configured; nothing to flush or report."""

    def flush(self) -> bool:
        return False

    def status(self) -> Optional[bool]:
        return None

    def discard_metrics(self, max_age_sec: int) -> int:
        return 0


def build_cache_handle(url: str):
    if not url:
        logger.info("no redis url configured; cache operations are no-ops")
        return NullCacheHandle()
    logger.info("using redis cache handle")
    return RedisCacheHandle(url)
