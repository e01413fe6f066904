"""
Read-through redis cache in front of the crypto price provider.

Many watchers share one cache. Two watchers missing on the same coin at the
same time will both call the provider and both store the result; the later
write wins, which is harmless for a short-lived price.
"""

import json, logging
from typing import Any, Callable, Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)

DEFAULT_TTL = 30
KEY_PREFIX  = "ticker:crypto:"


class PriceCache:
    def __init__(self, client: "redis.Redis", ttl: int = DEFAULT_TTL):
        self.client = client
        self.ttl = max(1, int(ttl))

    @classmethod
    def from_url(cls, url: str, ttl: int = DEFAULT_TTL) -> Optional["PriceCache"]:
        """Build a cache from REDIS_URL; an empty url means run uncached."""
        if not url:
            return None
        return cls(redis.from_url(url, decode_responses=True), ttl)

    def get_or_compute(self, key: str, compute: Callable[[], Dict[str, Any]]) -> Tuple[Dict[str, Any], bool]:
        """
        Return (value, hit). On a miss `compute` is called and its result
        stored for `ttl` seconds. Provider errors raised by `compute` propagate
        untouched; redis errors degrade to an uncached lookup.
        """
        cache_key = KEY_PREFIX + key
        try:
            raw = self.client.get(cache_key)
        except redis.RedisError as e:
            logger.warning("Cache read failed for %s: %s", key, e)
            raw = None
        if raw is not None:
            return json.loads(raw), True

        value = compute()
        try:
            self.client.setex(cache_key, self.ttl, json.dumps(value))
        except redis.RedisError as e:
            logger.warning("Cache write failed for %s: %s", key, e)
        return value, False
