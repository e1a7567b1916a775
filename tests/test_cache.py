"""
Tests: TTL cache store with durable mirror (forrent/core/cache.py).

Run: pytest tests/test_cache.py -v
"""

import asyncio
import json

import pytest

from forrent.core.cache import CacheEntry, CacheKeys, CacheStore, Freshness
from forrent.core.storage import FileStorage, MemoryStorage, StorageError

PREFIX = "14forrent_cache_"


def _mirror(storage, key):
    raw = storage.get_item(PREFIX + key)
    return json.loads(raw) if raw is not None else None


# ═══════════════════════════════════════════════════════
# 1. Expiry
# ═══════════════════════════════════════════════════════


def test_get_after_ttl_returns_none_and_clears_mirror(cache, storage, clock):
    cache.set("x", {"a": 1}, 1000)
    assert _mirror(storage, "x")["data"] == {"a": 1}

    clock.advance(1001)

    assert cache.get("x") is None
    assert storage.get_item(PREFIX + "x") is None
    assert "x" not in cache.keys()


def test_has_after_ttl_is_false(cache, clock):
    cache.set("x", {"a": 1}, 1000)
    clock.advance(1001)
    assert cache.has("x") is False


def test_entry_expires_exactly_at_ttl(cache, clock):
    cache.set("x", 1, 1000)
    clock.advance(999)
    assert cache.get("x") == 1
    clock.advance(1)
    assert cache.get("x") is None


def test_zero_ttl_is_never_valid(cache):
    cache.set("instant", "v", 0)
    assert cache.has("instant") is False


def test_no_sliding_expiration(cache, clock):
    cache.set("k", "v", 1000)
    clock.advance(600)
    assert cache.get("k") == "v"
    clock.advance(600)
    assert cache.get("k") is None


# ═══════════════════════════════════════════════════════
# 2. Overwrite / delete / clear
# ═══════════════════════════════════════════════════════


def test_set_twice_overwrites(cache, storage, clock):
    cache.set("k", "first", 1000)
    clock.advance(500)
    cache.set("k", "second", 1000)

    assert cache.get("k") == "second"
    assert _mirror(storage, "k")["data"] == "second"
    clock.advance(900)
    assert cache.get("k") == "second"


def test_delete_is_idempotent(cache, storage):
    cache.set("k", "v")
    cache.delete("k")
    cache.delete("k")
    assert cache.get("k") is None
    assert storage.get_item(PREFIX + "k") is None


def test_clear_only_touches_prefixed_keys(cache, storage):
    storage.set_item("unrelated", "keep me")
    cache.set("a", 1)
    cache.set("b", 2)

    cache.clear()

    assert cache.keys() == []
    assert storage.keys() == ["unrelated"]


def test_delete_matching(cache):
    cache.set("listings:search:loft", [1])
    cache.set("listings:filtered:{}", [2])
    cache.set("user:1:favorites", [3])

    removed = cache.delete_matching(lambda k: k.startswith("listings:"))

    assert removed == 2
    assert cache.keys() == ["user:1:favorites"]


# ═══════════════════════════════════════════════════════
# 3. Staleness classification
# ═══════════════════════════════════════════════════════


def test_get_with_staleness(cache, clock):
    cache.set("stats", {"n": 1}, 15 * 60 * 1000)

    read = cache.get_with_staleness("stats", 10 * 60 * 1000)
    assert read.freshness is Freshness.FRESH
    assert read.value == {"n": 1}

    clock.advance(12 * 60 * 1000)
    read = cache.get_with_staleness("stats", 10 * 60 * 1000)
    assert read.freshness is Freshness.STALE
    assert read.age_ms == 12 * 60 * 1000

    clock.advance(3 * 60 * 1000)
    read = cache.get_with_staleness("stats", 10 * 60 * 1000)
    assert read.freshness is Freshness.MISSING
    assert read.value is None
    assert not cache.has("stats")


# ═══════════════════════════════════════════════════════
# 4. Loading from the durable mirror
# ═══════════════════════════════════════════════════════


def test_load_keeps_valid_drops_expired_and_corrupt(storage, clock):
    now = clock()
    storage.set_item(PREFIX + "fresh", CacheEntry("ok", now - 1000, 60_000).to_json())
    storage.set_item(PREFIX + "old", CacheEntry("gone", now - 120_000, 60_000).to_json())
    storage.set_item(PREFIX + "broken", "{not json")
    storage.set_item(PREFIX + "no-data", json.dumps({"timestamp": now, "ttl": 1000}))
    storage.set_item("other_app_key", "untouched")

    store = CacheStore(storage, clock=clock)
    loaded = store.load()

    assert loaded == 1
    assert store.get("fresh") == "ok"
    assert sorted(storage.keys()) == sorted([PREFIX + "fresh", "other_app_key"])


def test_loaded_entry_keeps_original_timestamp(storage, clock):
    storage.set_item(PREFIX + "k", CacheEntry("v", clock() - 50_000, 60_000).to_json())
    store = CacheStore(storage, clock=clock)
    store.load()

    clock.advance(10_001)
    assert store.get("k") is None


# ═══════════════════════════════════════════════════════
# 5. Durable failures
# ═══════════════════════════════════════════════════════


def test_quota_exceeded_keeps_memory_and_evicts_oldest_quarter(clock):
    storage = MemoryStorage(quota_bytes=700)
    store = CacheStore(storage, clock=clock)
    for i in range(4):
        store.set(f"k{i}", "x" * 50, 60_000)
        clock.advance(10)
    assert len(storage) == 4

    store.set("big", "y" * 1000, 60_000)

    assert store.get("big") == "y" * 1000
    assert storage.get_item(PREFIX + "big") is None
    # ceil(4 * 0.25) == 1 → only the oldest mirror entry is dropped
    assert storage.get_item(PREFIX + "k0") is None
    assert storage.get_item(PREFIX + "k1") is not None
    # memory is authoritative, evicted mirror entries stay readable
    assert store.get("k0") == "x" * 50


def test_failed_overwrite_does_not_resurrect_old_value_after_restart(clock):
    storage = MemoryStorage(quota_bytes=400)
    store = CacheStore(storage, clock=clock)
    store.set("k", "old", 60_000)
    assert _mirror(storage, "k")["data"] == "old"

    store.set("k", "N" * 500, 60_000)

    assert store.get("k") == "N" * 500
    assert storage.get_item(PREFIX + "k") is None

    restarted = CacheStore(storage, clock=clock)
    restarted.load()
    assert restarted.get("k") is None


def test_unserializable_value_stays_in_memory(cache, storage):
    value = {"when": object()}
    cache.set("k", value)
    assert cache.get("k") is value
    assert storage.get_item(PREFIX + "k") is None


def test_unserializable_overwrite_drops_previous_mirror(cache, storage, clock):
    cache.set("k", "old", 60_000)
    cache.set("k", {"when": object()}, 60_000)

    assert storage.get_item(PREFIX + "k") is None
    restarted = CacheStore(storage, clock=clock)
    restarted.load()
    assert restarted.get("k") is None


class _BrokenStorage(MemoryStorage):
    def remove_item(self, key):
        raise StorageError("disk gone")


def test_remove_failures_are_not_raised(clock):
    store = CacheStore(_BrokenStorage(), clock=clock)
    store.set("k", "v", 10)
    clock.advance(20)
    assert store.get("k") is None
    store.clear()


# ═══════════════════════════════════════════════════════
# 6. Sweep
# ═══════════════════════════════════════════════════════


def test_cleanup_expired_removes_from_both_layers(cache, storage, clock):
    cache.set("short", 1, 1000)
    cache.set("long", 2, 60_000)
    clock.advance(5000)

    assert cache.cleanup_expired() == 1
    assert cache.keys() == ["long"]
    assert storage.get_item(PREFIX + "short") is None


@pytest.mark.asyncio
async def test_sweep_task_runs_and_stops(storage, clock):
    store = CacheStore(storage, clock=clock, sweep_interval_s=0.01)
    store.set("k", 1, 1000)
    clock.advance(2000)

    store.start()
    await asyncio.sleep(0.05)
    await store.stop()

    assert store.keys() == []
    assert storage.get_item(PREFIX + "k") is None


# ═══════════════════════════════════════════════════════
# 7. File-backed mirror
# ═══════════════════════════════════════════════════════


def test_file_storage_survives_restart(tmp_path, clock):
    path = tmp_path / "cache.json"
    first = CacheStore(FileStorage(path), clock=clock)
    first.set("listings:available", [{"id": "a"}], 60_000)

    second = CacheStore(FileStorage(path), clock=clock)
    assert second.load() == 1
    assert second.get("listings:available") == [{"id": "a"}]


def test_file_storage_corrupt_file_starts_empty(tmp_path):
    path = tmp_path / "cache.json"
    path.write_text("[[[", encoding="utf-8")
    assert FileStorage(path).keys() == []


def test_cache_keys_are_stable():
    assert CacheKeys.hot_deals(8) == "listings:hotdeals:8"
    assert CacheKeys.by_id("abc") == "listings:id:abc"
    assert CacheKeys.filtered({"b": 1, "a": 2}) == CacheKeys.filtered({"a": 2, "b": 1})
    assert CacheKeys.user_favorites("u1") == "user:u1:favorites"
