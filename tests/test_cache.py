import fakeredis
import pytest

from backend.app.cache import CacheStore
from backend.app.errors import InfrastructureError


def test_set_get_and_ttl(fake_redis):
    cache = CacheStore()
    expires_at = cache.set("mixed:1:snapshot:v1", {"items": [1, 2]}, ttl=600)

    assert cache.get("mixed:1:snapshot:v1") == {"items": [1, 2]}
    value, exp = cache.get_entry("mixed:1:snapshot:v1")
    assert value == {"items": [1, 2]}
    assert abs(exp - expires_at) <= 1
    assert 0 < fake_redis.ttl("mixed:1:snapshot:v1") <= 600
    assert cache.get("missing") is None
    assert cache.get_entry("missing") is None


def test_page_entry_shares_snapshot_expiry(fake_redis):
    cache = CacheStore()
    expires_at = cache.set("mixed:1:snapshot:v1", {"snapshot_id": "s1"}, ttl=600)
    cache.set("mixed:1:page:abc", {"snapshot_id": "s1"}, ttl=600, expires_at=expires_at - 300)

    assert fake_redis.ttl("mixed:1:page:abc") <= 300


def test_delete_prefix_only_touches_that_user(fake_redis):
    cache = CacheStore()
    for key in ("mixed:1:snapshot:v1", "mixed:1:page:a", "mixed:1:page:b", "mixed:12:page:a", "analytics:daily_stats"):
        cache.set(key, {"k": key}, ttl=60)

    assert cache.delete_prefix("mixed:1:") == 3
    assert cache.get("mixed:12:page:a") == {"k": "mixed:12:page:a"}
    assert cache.get("analytics:daily_stats") is not None
    assert cache.delete_prefix("mixed:1:") == 0


def test_corrupted_value_is_a_miss(fake_redis):
    fake_redis.set("social_cf:stats:1", "{not json", ex=60)
    assert CacheStore().get("social_cf:stats:1") is None
    assert fake_redis.get("social_cf:stats:1") is None


def test_redis_errors_surface_as_infrastructure_errors():
    server = fakeredis.FakeServer()
    server.connected = False
    cache = CacheStore(fakeredis.FakeRedis(server=server, decode_responses=True))

    with pytest.raises(InfrastructureError):
        cache.get("mixed:1:snapshot:v1")
    with pytest.raises(InfrastructureError):
        cache.set("mixed:1:snapshot:v1", {}, ttl=60)
    with pytest.raises(InfrastructureError):
        cache.delete_prefix("mixed:1:")
