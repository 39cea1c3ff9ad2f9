import re

from planstream.services.cache.keys import plan_cache_key
from planstream.services.cache.store import (
    InMemoryCacheStore,
    NullCacheStore,
    RedisCacheStore,
    build_cache_store,
    cache_get,
    cache_set,
    parse_stored_value,
)

PROFILE = {"weight": 80, "goal": "cut"}
TARGETS = {"calories": 2000, "protein": 150}


def test_cache_key_layout():
    key = plan_cache_key("planstream:plan", "v4", 3, PROFILE, TARGETS, {"breakfast": 500})
    assert re.fullmatch(r"planstream:plan:v4:meals:day3:[0-9a-f]{16}", key)


def test_cache_key_is_stable_across_dict_ordering():
    a = plan_cache_key("p", "v4", 1, {"goal": "cut", "weight": 80}, {"protein": 150, "calories": 2000})
    b = plan_cache_key("p", "v4", 1, PROFILE, TARGETS)
    assert a == b


def test_cache_key_changes_with_day_targets_and_version():
    base = plan_cache_key("p", "v4", 1, PROFILE, TARGETS)
    assert plan_cache_key("p", "v4", 2, PROFILE, TARGETS) != base
    assert plan_cache_key("p", "v4", 1, PROFILE, {**TARGETS, "calories": 2100}) != base
    assert plan_cache_key("p", "v4", 1, PROFILE, TARGETS, {"lunch": 700}) != base
    assert plan_cache_key("p", "v5", 1, PROFILE, TARGETS).split(":")[-1] == base.split(":")[-1]
    assert plan_cache_key("p", "v5", 1, PROFILE, TARGETS) != base


def test_in_memory_store_expires_entries():
    now = [1000.0]
    store = InMemoryCacheStore(clock=lambda: now[0])
    store.set("k", {"meals": []}, ttl_s=10)
    assert parse_stored_value(store.get("k")) == {"meals": []}
    now[0] += 11
    assert store.get("k") is None


def test_parse_stored_value_handles_bytes_and_garbage():
    assert parse_stored_value(b'{"meals": [1]}') == {"meals": [1]}
    assert parse_stored_value("{not json") is None
    assert parse_stored_value(None) is None
    assert parse_stored_value({"already": "decoded"}) == {"already": "decoded"}


class ExplodingStore:
    def get(self, key):
        raise ConnectionError("redis down")

    def set(self, key, value, ttl_s):
        raise ConnectionError("redis down")


def test_cache_errors_read_as_miss_and_failed_write():
    store = ExplodingStore()
    assert cache_get(store, "k") is None
    assert cache_set(store, "k", {"meals": []}, ttl_s=60) is False


def test_redis_store_serializes_json_with_expiry():
    calls = {}

    class FakeRedis:
        def set(self, key, value, ex=None):
            calls["set"] = (key, value, ex)

        def get(self, key):
            return calls["set"][1].encode("utf-8")

    store = RedisCacheStore(FakeRedis())
    store.set("k", {"meals": [{"items": []}]}, ttl_s=86400)
    assert calls["set"] == ("k", '{"meals": [{"items": []}]}', 86400)
    assert parse_stored_value(store.get("k")) == {"meals": [{"items": []}]}


def test_empty_redis_url_disables_cache():
    store = build_cache_store("")
    assert isinstance(store, NullCacheStore)
    store.set("k", {"meals": []}, ttl_s=60)
    assert store.get("k") is None
