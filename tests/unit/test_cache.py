"""Unit tests for the state cache."""

from specster.cache import StateCache
from specster.models import Phase, SpecificationState


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestStateCache:
    """Test cases for StateCache."""

    def test_get_returns_independent_copies(self):
        """Mutating a returned state does not change the cache."""
        cache = StateCache(ttl=300)
        cache.put("checkout", SpecificationState.create("checkout"))

        copy = cache.get("checkout")
        copy.workflow.current_phase = Phase.DESIGN

        assert cache.get("checkout").current_phase == Phase.INIT

    def test_put_stores_a_copy(self):
        """Mutating the original after put does not change the cache."""
        cache = StateCache(ttl=300)
        state = SpecificationState.create("checkout")
        cache.put("checkout", state)

        state.metadata.description = "changed"

        assert cache.get("checkout").metadata.description == ""

    def test_entries_expire(self):
        """Entries older than the TTL are evicted on access."""
        clock = FakeClock()
        cache = StateCache(ttl=300, clock=clock)
        cache.put("checkout", SpecificationState.create("checkout"))

        clock.now = 299.0
        assert "checkout" in cache
        clock.now = 301.0
        assert cache.get("checkout") is None
        assert len(cache) == 0

    def test_purge_expired(self):
        """purge_expired drops only stale entries."""
        clock = FakeClock()
        cache = StateCache(ttl=10, clock=clock)
        cache.put("old", SpecificationState.create("old"))
        clock.now = 8.0
        cache.put("fresh", SpecificationState.create("fresh"))

        clock.now = 12.0

        assert cache.purge_expired() == 1
        assert "fresh" in cache

    def test_invalidate_and_clear(self):
        """Entries can be removed individually or all at once."""
        cache = StateCache()
        cache.put("a", SpecificationState.create("a"))
        cache.put("b", SpecificationState.create("b"))

        cache.invalidate("a")
        assert cache.get("a") is None
        cache.clear()
        assert len(cache) == 0
