"""
Unit tests for PeerCache.

Tests:
- LRU eviction at capacity
- Age measured from set/touch, not lookups
- Membership tests do not affect recency
"""

from mochimap.network.cache import PeerCache
from mochimap.types import PeerNode


class Clock:
    """Manually advanced clock."""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestCapacity:
    """Test size bound."""

    def test_evicts_least_recently_used(self):
        cache = PeerCache(max_size=2, max_age=100)
        cache.set("1.1.1.1", PeerNode("1.1.1.1"))
        cache.set("2.2.2.2", PeerNode("2.2.2.2"))
        cache.get("1.1.1.1")
        cache.set("3.3.3.3", PeerNode("3.3.3.3"))

        assert sorted(cache.keys()) == ["1.1.1.1", "3.3.3.3"]

    def test_contains_does_not_refresh_recency(self):
        cache = PeerCache(max_size=2, max_age=100)
        cache.set("1.1.1.1", PeerNode("1.1.1.1"))
        cache.set("2.2.2.2", PeerNode("2.2.2.2"))
        assert "1.1.1.1" in cache
        cache.set("3.3.3.3", PeerNode("3.3.3.3"))
        assert "1.1.1.1" not in cache


class TestAge:
    """Test TTL handling."""

    def test_entry_expires(self):
        clock = Clock()
        cache = PeerCache(max_size=10, max_age=60, clock=clock)
        cache.set("1.1.1.1", PeerNode("1.1.1.1"))
        clock.now += 59
        assert cache.get("1.1.1.1") is not None
        clock.now += 1
        assert cache.get("1.1.1.1") is None
        assert len(cache) == 0

    def test_get_does_not_extend_age(self):
        clock = Clock()
        cache = PeerCache(max_size=10, max_age=60, clock=clock)
        cache.set("1.1.1.1", PeerNode("1.1.1.1"))
        clock.now += 50
        cache.get("1.1.1.1")
        clock.now += 20
        assert "1.1.1.1" not in cache

    def test_touch_restarts_age(self):
        clock = Clock()
        cache = PeerCache(max_size=10, max_age=60, clock=clock)
        cache.set("1.1.1.1", PeerNode("1.1.1.1"))
        clock.now += 50
        assert cache.touch("1.1.1.1")
        clock.now += 50
        assert "1.1.1.1" in cache

    def test_touch_missing(self):
        cache = PeerCache()
        assert not cache.touch("9.9.9.9")

    def test_values_prunes_expired(self):
        clock = Clock()
        cache = PeerCache(max_size=10, max_age=60, clock=clock)
        cache.set("1.1.1.1", PeerNode("1.1.1.1"))
        clock.now += 30
        cache.set("2.2.2.2", PeerNode("2.2.2.2"))
        clock.now += 40
        assert [n.ip for n in cache.values()] == ["2.2.2.2"]

    def test_delete_and_clear(self):
        cache = PeerCache()
        cache.set("1.1.1.1", PeerNode("1.1.1.1"))
        cache.set("2.2.2.2", PeerNode("2.2.2.2"))
        assert cache.delete("1.1.1.1")
        assert not cache.delete("1.1.1.1")
        cache.clear()
        assert len(cache) == 0

    def test_prune_counts_expired(self):
        clock = Clock()
        cache = PeerCache(max_size=10, max_age=60, clock=clock)
        cache.set("1.1.1.1", PeerNode("1.1.1.1"))
        cache.set("2.2.2.2", PeerNode("2.2.2.2"))
        clock.now += 60
        assert cache.prune() == 2
        assert cache.keys() == []

    def test_set_replaces_node_and_restarts_age(self):
        clock = Clock()
        cache = PeerCache(max_size=10, max_age=60, clock=clock)
        cache.set("1.1.1.1", PeerNode("1.1.1.1", chain_height=1))
        clock.now += 50
        cache.set("1.1.1.1", PeerNode("1.1.1.1", chain_height=2))
        clock.now += 50
        assert cache.get("1.1.1.1").chain_height == 2
        assert len(cache) == 1
