"""
Unit tests for the probe result cache
"""

import os
import sys

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from imagery.probe_cache import ProbeCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestProbeCache:
    """Test cases for ProbeCache"""

    def test_miss_then_hit(self):
        """Test a stored value is returned until it expires"""
        clock = FakeClock()
        cache = ProbeCache(ttl=300.0, clock=clock)
        assert cache.get("k") is None
        cache.put("k", "timeline")
        clock.now += 299.0
        assert cache.get("k") == "timeline"
        assert cache.stats()["hits"] == 1
        assert cache.stats()["misses"] == 1

    def test_expired_entry_evicted(self):
        """Test entries past their TTL are dropped on access"""
        clock = FakeClock()
        cache = ProbeCache(ttl=300.0, clock=clock)
        cache.put("k", 1)
        clock.now += 300.0
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_oldest_evicted_when_full(self):
        """Test the bound evicts the oldest insert first"""
        cache = ProbeCache(ttl=60.0, max_entries=2, clock=FakeClock())
        cache.put("a", 1)
        cache.put("b", 2)
        cache.put("c", 3)
        assert cache.get("a") is None
        assert cache.get("b") == 2 and cache.get("c") == 3

    def test_put_overwrites_and_refreshes(self):
        """Test re-putting a key replaces the value and its expiry"""
        clock = FakeClock()
        cache = ProbeCache(ttl=10.0, clock=clock)
        cache.put("k", "old")
        clock.now += 8.0
        cache.put("k", "new")
        clock.now += 8.0
        assert cache.get("k") == "new"

    def test_put_purges_expired(self):
        """Test expired entries do not occupy capacity"""
        clock = FakeClock()
        cache = ProbeCache(ttl=5.0, max_entries=2, clock=clock)
        cache.put("a", 1)
        clock.now += 10.0
        cache.put("b", 2)
        assert len(cache) == 1

    def test_clear(self):
        """Test clear empties the cache"""
        cache = ProbeCache()
        cache.put("k", 1)
        cache.clear()
        assert len(cache) == 0

    @pytest.mark.parametrize("kwargs", [{"ttl": 0}, {"ttl": -1}, {"max_entries": 0}])
    def test_invalid_limits(self, kwargs):
        """Test non-positive limits are rejected"""
        with pytest.raises(ValueError):
            ProbeCache(**kwargs)
