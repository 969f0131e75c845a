"""Tests for caverna.core.prompt_cache - LRU cache of rendered prompts."""

from __future__ import annotations

import threading

import pytest

from caverna.core.catalog import Catalog
from caverna.core.prompt_builder import PromptTemplateEngine, compute_fingerprint
from caverna.core.prompt_cache import PromptCache

POSES = ["arms-crossed", "pointing-forward", "sitting-on-rock", "holding-cave-map"]


def _selection(pose: str = "arms-crossed") -> dict:
    return {"pose": pose, "outfit": "hoodie-sweatpants", "footwear": "nike-air-max-90"}


class FakeTime:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class CountingRenderer:
    """Wraps the engine and counts calls."""

    def __init__(self, catalog: Catalog) -> None:
        self.engine = PromptTemplateEngine(catalog)
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, selection):
        with self._lock:
            self.calls += 1
        return self.engine.render(selection)


@pytest.fixture
def renderer(catalog: Catalog) -> CountingRenderer:
    return CountingRenderer(catalog)


class TestGetOrRender:
    """Test hits and misses."""

    def test_miss_then_hit(self, renderer):
        cache = PromptCache()
        first = cache.get_or_render(_selection(), renderer)
        second = cache.get_or_render(_selection(), renderer)
        assert first == second
        assert renderer.calls == 1

    def test_cold_and_warm_results_equal(self, renderer):
        """A fresh cache produces the same value a warm one returns."""
        warm = PromptCache()
        warm.get_or_render(_selection(), renderer)
        cached = warm.get_or_render(_selection(), renderer)
        cold = PromptCache().get_or_render(_selection(), renderer)
        assert cached == cold

    def test_equivalent_selections_share_entry(self, renderer):
        cache = PromptCache()
        cache.get_or_render(_selection(), renderer)
        cache.get_or_render({**_selection(), "prop": "", "frameId": "01A"}, renderer)
        assert renderer.calls == 1
        assert len(cache) == 1

    def test_concurrent_misses_render_once(self, renderer):
        cache = PromptCache()
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            cache.get_or_render(_selection(), renderer)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert renderer.calls == 1

    def test_render_error_not_cached(self, renderer):
        cache = PromptCache()

        def broken(_selection):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            cache.get_or_render(_selection(), broken)
        assert len(cache) == 0


class TestEviction:
    """Test LRU bounds."""

    def test_least_recently_used_evicted(self, renderer):
        cache = PromptCache(max_entries=2)
        cache.get_or_render(_selection(POSES[0]), renderer)
        cache.get_or_render(_selection(POSES[1]), renderer)
        cache.get_or_render(_selection(POSES[0]), renderer)  # refresh
        cache.get_or_render(_selection(POSES[2]), renderer)

        assert cache.contains(_selection(POSES[0]))
        assert not cache.contains(_selection(POSES[1]))
        assert cache.stats()["evictions"] == 1

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            PromptCache(max_entries=0)


class TestExpiry:
    """Test TTL handling."""

    def test_expired_entry_rerenders(self, renderer):
        clock = FakeTime()
        cache = PromptCache(ttl_seconds=60, clock=clock)
        cache.get_or_render(_selection(), renderer)
        clock.now += 61
        assert not cache.contains(_selection())
        cache.get_or_render(_selection(), renderer)
        assert renderer.calls == 2

    def test_entry_within_ttl_hits(self, renderer):
        clock = FakeTime()
        cache = PromptCache(ttl_seconds=60, clock=clock)
        cache.get_or_render(_selection(), renderer)
        clock.now += 30
        cache.get_or_render(_selection(), renderer)
        assert renderer.calls == 1

    def test_prune_expired(self, renderer):
        clock = FakeTime()
        cache = PromptCache(ttl_seconds=10, clock=clock)
        cache.get_or_render(_selection(POSES[0]), renderer)
        clock.now += 5
        cache.get_or_render(_selection(POSES[1]), renderer)
        clock.now += 6
        assert cache.prune_expired() == 1
        assert len(cache) == 1

    def test_prune_without_ttl_is_noop(self, renderer):
        cache = PromptCache()
        cache.get_or_render(_selection(), renderer)
        assert cache.prune_expired() == 0


class TestMaintenance:
    """Test stats, invalidation and warming."""

    def test_stats(self, renderer):
        cache = PromptCache(max_entries=5)
        cache.get_or_render(_selection(), renderer)
        cache.get_or_render(_selection(), renderer)
        cache.get_or_render(_selection(), renderer)
        stats = cache.stats()
        assert stats["entries"] == 1
        assert stats["max_entries"] == 5
        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["hit_rate"] == pytest.approx(2 / 3)

    def test_empty_stats(self):
        assert PromptCache().stats()["hit_rate"] == 0.0

    def test_peek_does_not_count(self, renderer):
        cache = PromptCache()
        cache.get_or_render(_selection(), renderer)
        entry = cache.peek(compute_fingerprint(_selection()))
        assert entry is not None
        assert entry.hit_count == 0
        assert cache.stats()["hits"] == 0
        assert cache.peek("0" * 64) is None

    def test_invalidate(self, renderer):
        cache = PromptCache()
        cache.get_or_render(_selection(), renderer)
        assert cache.invalidate(_selection()) is True
        assert cache.invalidate(_selection()) is False

    def test_clear_resets_counters(self, renderer):
        cache = PromptCache()
        cache.get_or_render(_selection(), renderer)
        cache.get_or_render(_selection(), renderer)
        assert cache.clear() == 1
        assert cache.stats()["hits"] == 0
        assert len(cache) == 0

    def test_warm_skips_cached(self, renderer):
        cache = PromptCache()
        cache.get_or_render(_selection(POSES[0]), renderer)
        added = cache.warm([_selection(p) for p in POSES[:3]], renderer)
        assert added == 2
        assert len(cache) == 3
