import threading

from core.cache import ResponseCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = ResponseCache(default_ttl=30, clock=clock)
    cache.set("dashboard:t:b:/stats:{}", {"orders": 3}, ttl_seconds=15)

    clock.now += 14
    assert cache.get("dashboard:t:b:/stats:{}") == {"orders": 3}
    clock.now += 1
    assert cache.get("dashboard:t:b:/stats:{}") is None
    assert len(cache) == 0


def test_least_recently_used_entry_is_evicted():
    cache = ResponseCache(max_entries=2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)

    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3


def test_invalidate_by_prefix():
    cache = ResponseCache()
    for key in ("dashboard:t1:b1:/x:{}", "dashboard:t2:b1:/x:{}", "analytics:t1:b1:/y:{}"):
        cache.set(key, {})

    assert cache.invalidate("dashboard:") == 2
    assert len(cache) == 1


def test_keys_are_scoped_and_param_order_insensitive():
    first = ResponseCache.build_key("analytics", "t1", "b1", "/summary", {"days": 7, "a": 1})
    second = ResponseCache.build_key("analytics", "t1", "b1", "/summary", {"a": 1, "days": 7})
    other_branch = ResponseCache.build_key("analytics", "t1", "b2", "/summary", {"a": 1, "days": 7})

    assert first == second
    assert first != other_branch
    assert ResponseCache.build_key("dashboard", None, None, "/stats").startswith("dashboard:global:all:")


def test_stats_track_hit_rate():
    cache = ResponseCache()
    cache.set("k", "v")
    cache.get("k")
    cache.get("missing")

    stats = cache.stats()
    assert (stats["hits"], stats["misses"], stats["hit_rate"]) == (1, 1, "50.0%")

    assert ResponseCache().stats()["hit_rate"] == "0%"


def test_interleaved_readers_and_invalidators():
    cache = ResponseCache(max_entries=8, default_ttl=60)
    errors = []

    def readers():
        try:
            for i in range(2000):
                key = f"dashboard:t:b:/p{i % 12}:{{}}"
                if cache.get(key) is None:
                    cache.set(key, {"i": i})
        except Exception as exc:
            errors.append(exc)

    def invalidators():
        try:
            for _ in range(2000):
                cache.invalidate("dashboard:")
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=readers) for _ in range(4)]
    threads += [threading.Thread(target=invalidators) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(cache) <= 8
