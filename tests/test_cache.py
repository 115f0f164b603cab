from kgraph.utils.cache import TTLCache, text_key


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_get_returns_miss_then_hit():
    cache = TTLCache(ttl_seconds=10)
    assert cache.get("k") == (False, None)
    cache.set("k", [1, 2])
    assert cache.get("k") == (True, [1, 2])
    stats = cache.get_stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TTLCache(ttl_seconds=5, clock=clock)
    cache.set("k", "v")
    clock.now = 4.9
    assert cache.get("k") == (True, "v")
    clock.now = 5.0
    assert cache.get("k") == (False, None)
    assert len(cache) == 0


def test_lru_eviction_when_full():
    cache = TTLCache(maxsize=2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)
    assert cache.get("b") == (False, None)
    assert cache.get("a") == (True, 1)
    assert cache.get("c") == (True, 3)


def test_clear_and_invalidate():
    cache = TTLCache()
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.invalidate("a") is True
    assert cache.invalidate("a") is False
    assert cache.clear() == 1
    assert len(cache) == 0


def test_text_key_is_stable_and_separates_parts():
    assert text_key("scope", 0.7, "text") == text_key("scope", 0.7, "text")
    assert text_key("ab", "c") != text_key("a", "bc")
