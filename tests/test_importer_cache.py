from graph_ingest.importer.cache import MemoryCache, cached, get_cache, mapping_cache_key


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_memory_cache_expires_entries_after_ttl():
    clock = FakeClock()
    cache = MemoryCache(default_ttl=10, clock=clock)

    cache.set("key", {"id": 1})
    assert cache.get("key") == {"id": 1}

    clock.now += 11
    assert cache.get("key") is None


def test_zero_ttl_disables_caching_and_negative_never_expires():
    clock = FakeClock()
    cache = MemoryCache(default_ttl=0, clock=clock)

    assert cache.set("key", 1) is False
    assert cache.get("key") is None

    cache.set("forever", 2, ttl=-1)
    clock.now += 10_000
    assert cache.get("forever") == 2


def test_delete_prefix_and_flush():
    cache = MemoryCache()
    cache.set(mapping_cache_key(1, "a"), 1)
    cache.set(mapping_cache_key(1, "b"), 2)
    cache.set(mapping_cache_key(2, "a"), 3)

    assert cache.delete_prefix("type_mappings:1:") == 2
    assert cache.get(mapping_cache_key(2, "a")) == 3
    cache.flush()
    assert cache.get(mapping_cache_key(2, "a")) is None


def test_cached_loads_once(app):
    calls = []

    def loader():
        calls.append(1)
        return {"value": 5}

    cache = get_cache()
    assert cached("demo", loader, cache=cache) == {"value": 5}
    assert cached("demo", loader, cache=cache) == {"value": 5}
    assert len(calls) == 1
    assert get_cache() is app.extensions["importer"]["cache"]
