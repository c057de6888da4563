"""Redis-backed cache for derived queue values.

Every key is scoped by tenant and provider so that an appointment status
change only evicts its own provider's entries.  Values are stored as JSON
with a per-category TTL.  Redis is optional: without ``REDIS_URL`` the
cache is a no-op and every lookup misses.  Redis errors are logged and
treated as misses since cached values are never a source of truth.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date
from typing import Any, Optional, Tuple

import redis

import config

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis() -> Optional[redis.Redis]:
    """Get Redis client if configured and reachable."""
    global _redis_client
    if not config.REDIS_URL:
        return None

    if _redis_client is None:
        try:
            client = redis.from_url(config.REDIS_URL, decode_responses=True)
            client.ping()
            _redis_client = client
        except redis.RedisError as e:
            logger.warning("Redis connection failed: %s", e)
            return None

    return _redis_client


# ===== KEY LAYOUT =====

def provider_prefix(tenant_id: str, provider_id: str) -> str:
    return f"queue:{tenant_id}:{provider_id}:"


def status_key(tenant_id: str, provider_id: str) -> str:
    return provider_prefix(tenant_id, provider_id) + "status"


def wait_key(tenant_id: str, provider_id: str, appointment_id: int) -> str:
    return provider_prefix(tenant_id, provider_id) + f"wait:{appointment_id}"


def position_key(tenant_id: str, provider_id: str, appointment_id: int) -> str:
    return provider_prefix(tenant_id, provider_id) + f"position:{appointment_id}"


def service_rate_key(tenant_id: str, provider_id: str) -> str:
    return f"rates:{tenant_id}:{provider_id}:service"


def arrival_rate_key(tenant_id: str, provider_id: str, day: date) -> str:
    return f"rates:{tenant_id}:{provider_id}:arrival:{day.isoformat()}"


_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def _escape_glob(text: str) -> str:
    return _GLOB_SPECIAL.sub(r"\\\1", text)


class QueueCache:
    """Get/set/invalidate over a Redis client (or nothing)."""

    def __init__(self, client: Optional[redis.Redis] = None):
        self.client = client

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def get(self, key: str) -> Tuple[Optional[Any], bool]:
        if self.client is None:
            return None, False
        try:
            cached = self.client.get(key)
        except redis.RedisError as e:
            logger.warning("Redis get error key=%s: %s", key, e)
            return None, False
        if cached is None:
            return None, False
        try:
            return json.loads(cached), True
        except ValueError:
            logger.warning("Discarding undecodable cache entry key=%s", key)
            return None, False

    def set(self, key: str, value: Any, ttl: int) -> None:
        if self.client is None:
            return
        try:
            # SETEX replaces the entry atomically
            self.client.setex(key, ttl, json.dumps(value, default=str))
        except (redis.RedisError, TypeError) as e:
            logger.warning("Redis cache error key=%s: %s", key, e)

    def delete(self, *keys: str) -> int:
        if self.client is None or not keys:
            return 0
        try:
            return int(self.client.delete(*keys))
        except redis.RedisError as e:
            logger.warning("Redis delete error keys=%s: %s", keys, e)
            return 0

    def invalidate(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``; never a blanket flush."""
        if self.client is None:
            return 0
        if not prefix:
            raise ValueError("refusing to invalidate with an empty prefix")
        removed = 0
        try:
            batch = []
            for key in self.client.scan_iter(match=_escape_glob(prefix) + "*", count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += int(self.client.delete(*batch))
                    batch = []
            if batch:
                removed += int(self.client.delete(*batch))
        except redis.RedisError as e:
            logger.warning("Redis invalidate error prefix=%s: %s", prefix, e)
        return removed

    def invalidate_provider(self, tenant_id: str, provider_id: str, day: Optional[date] = None) -> int:
        """Evict a provider's queue views, plus that day's arrival rate."""
        removed = self.invalidate(provider_prefix(tenant_id, provider_id))
        if day is not None:
            removed += self.delete(arrival_rate_key(tenant_id, provider_id, day))
        logger.debug("Invalidated %d cache entries tenant=%s provider=%s", removed, tenant_id, provider_id)
        return removed
