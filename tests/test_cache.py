from unittest.mock import MagicMock

import pytest
import redis

from cache import (
    QueueCache,
    _escape_glob,
    arrival_rate_key,
    position_key,
    service_rate_key,
    status_key,
    wait_key,
)
from conftest import TODAY


def test_miss_then_hit(cache, redis_client):
    key = status_key("clinic-1", "dr-a")
    assert cache.get(key) == (None, False)

    cache.set(key, {"next_token": 3}, ttl=30)

    assert cache.get(key) == ({"next_token": 3}, True)
    assert 0 < redis_client.ttl(key) <= 30


def test_invalidate_provider_is_scoped(cache, redis_client):
    evicted = [
        status_key("clinic-1", "dr-a"),
        wait_key("clinic-1", "dr-a", 1),
        position_key("clinic-1", "dr-a", 1),
        arrival_rate_key("clinic-1", "dr-a", TODAY),
    ]
    kept = [
        service_rate_key("clinic-1", "dr-a"),
        status_key("clinic-1", "dr-b"),
        status_key("clinic-1", "dr-a2"),
        status_key("clinic-2", "dr-a"),
    ]
    for key in evicted + kept:
        cache.set(key, 1, ttl=60)

    assert cache.invalidate_provider("clinic-1", "dr-a", TODAY) == len(evicted)

    for key in evicted:
        assert redis_client.get(key) is None
    for key in kept:
        assert redis_client.get(key) is not None


def test_invalidate_escapes_glob_characters(cache, redis_client):
    cache.set(status_key("clinic-1", "dr*"), 1, ttl=60)
    cache.set(status_key("clinic-1", "dr-x"), 1, ttl=60)

    assert cache.invalidate_provider("clinic-1", "dr*") == 1
    assert redis_client.get(status_key("clinic-1", "dr-x")) is not None


def test_escape_glob():
    assert _escape_glob("a*b?[c]") == r"a\*b\?\[c\]"


def test_empty_prefix_is_refused(cache):
    with pytest.raises(ValueError):
        cache.invalidate("")


def test_disabled_cache_always_misses():
    cache = QueueCache(None)
    cache.set("k", 1, ttl=30)

    assert not cache.enabled
    assert cache.get("k") == (None, False)
    assert cache.invalidate_provider("clinic-1", "dr-a", TODAY) == 0


def test_redis_errors_are_misses():
    client = MagicMock()
    client.get.side_effect = redis.ConnectionError("down")
    client.setex.side_effect = redis.ConnectionError("down")
    client.scan_iter.side_effect = redis.ConnectionError("down")
    client.delete.side_effect = redis.ConnectionError("down")
    cache = QueueCache(client)

    assert cache.get("k") == (None, False)
    cache.set("k", 1, ttl=30)
    assert cache.invalidate_provider("clinic-1", "dr-a", TODAY) == 0


def test_undecodable_entry_is_a_miss(cache, redis_client):
    redis_client.set("queue:clinic-1:dr-a:status", "{not json")
    assert cache.get("queue:clinic-1:dr-a:status") == (None, False)
