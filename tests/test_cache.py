from resilient_fetch.cache import CacheStore


def test_round_trip_before_ttl(clock):
    cache = CacheStore(capacity=10, ttl_s=60, clock=clock)
    value = {"title": "Hello", "tags": ["a", "b"]}
    cache.put("A", value)

    clock.advance(30)
    assert cache.get("A") == value


def test_miss_after_ttl(clock):
    cache = CacheStore(capacity=10, ttl_s=60, clock=clock)
    cache.put("A", {"x": 1})

    clock.advance(61)
    assert cache.get("A") is None
    assert len(cache) == 0
    assert cache.stats().expirations == 1


def test_per_entry_ttl_override(clock):
    cache = CacheStore(capacity=10, ttl_s=60, clock=clock)
    cache.put("short", 1, ttl_s=5)
    cache.put("long", 2)

    clock.advance(10)
    assert cache.get("short") is None
    assert cache.get("long") == 2


def test_lru_eviction_keeps_capacity(clock):
    cache = CacheStore(capacity=2, ttl_s=60, clock=clock)
    cache.put("a", 1)
    cache.put("b", 2)
    cache.get("a")  # "b" is now least recently used
    cache.put("c", 3)

    assert len(cache) == 2
    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3
    assert cache.stats().evictions == 1


def test_expired_entries_go_before_live_ones(clock):
    cache = CacheStore(capacity=2, ttl_s=60, clock=clock)
    cache.put("old", 1, ttl_s=1)
    cache.put("fresh", 2)
    clock.advance(5)
    cache.get("fresh")
    cache.put("new", 3)

    assert cache.get("fresh") == 2
    assert cache.get("new") == 3
    assert cache.stats().evictions == 0


def test_overwrite_is_last_writer_wins(clock):
    cache = CacheStore(capacity=2, ttl_s=60, clock=clock)
    cache.put("k", "first")
    cache.put("k", "second")

    assert cache.get("k") == "second"
    assert len(cache) == 1


def test_stats_clear_and_cleanup(clock):
    cache = CacheStore(capacity=10, ttl_s=60, clock=clock)
    cache.put("a", 1)
    cache.put("b", 2, ttl_s=1)
    cache.get("a")
    cache.get("missing")

    stats = cache.stats()
    assert (stats.hits, stats.misses) == (1, 1)
    assert stats.hit_rate == 0.5
    assert stats.miss_rate == 0.5

    clock.advance(2)
    assert cache.cleanup() == 1
    assert cache.clear() == 1
    assert len(cache) == 0
