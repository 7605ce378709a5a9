"""Tests for the embedding cache."""

import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from echovault.embedding_cache import (
    EmbeddingCache,
    InMemoryCacheRepository,
    JSONFileCacheRepository,
)
from echovault.governor import CostGovernor
from echovault.models import CachedVector
from echovault.schemas import Priority


MODEL = "local-hashed-tfidf"


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestEmbeddingCache:
    """Test the in-memory behaviour of EmbeddingCache."""

    def setup_method(self):
        """Set up test fixtures."""
        self.clock = FakeClock()
        self.repository = InMemoryCacheRepository()
        self.cache = EmbeddingCache(self.repository, max_entries=10, clock=self.clock)

    def test_put_then_get(self):
        """A stored vector is returned unchanged."""
        self.cache.put("hello world", [0.1, 0.2, 0.3], model=MODEL)

        assert self.cache.get("hello world", model=MODEL) == [0.1, 0.2, 0.3]
        assert ("hello world", MODEL) in self.cache
        assert len(self.cache) == 1

    def test_model_is_part_of_the_key(self):
        """The same text under another model is a miss."""
        self.cache.put("hello", [1.0], model=MODEL)
        assert self.cache.get("hello", model="text-embedding-3-small") is None

    def test_miss(self):
        """Unknown text is a miss and counted as one."""
        assert self.cache.get("nothing here") is None
        assert self.cache.stats().misses == 1

    def test_ttl_expiry(self):
        """Entries past their TTL are misses and are removed."""
        self.cache.put("short lived", [1.0, 2.0], ttl_seconds=10)
        self.clock.advance(11)

        assert self.cache.get("short lived") is None
        assert len(self.cache) == 0
        assert self.cache.stats().expired_removed == 1

    def test_invalid_put(self):
        """Empty vectors and non-positive TTLs are rejected."""
        with pytest.raises(ValueError):
            self.cache.put("x", [])
        with pytest.raises(ValueError):
            self.cache.put("x", [1.0], ttl_seconds=0)

    def test_max_entries_must_be_positive(self):
        """A cache must hold at least one entry."""
        with pytest.raises(ValueError):
            EmbeddingCache(max_entries=0)

    def test_capacity_evicts_unused_entries(self):
        """A full cache evicts the least useful entry first."""
        for i in range(10):
            self.cache.put(f"text {i}", [float(i)])
        for i in range(1, 10):
            self.cache.get(f"text {i}")

        self.cache.put("text 10", [10.0])

        assert len(self.cache) == 10
        assert ("text 0", "default") not in self.cache
        assert ("text 10", "default") in self.cache
        assert self.cache.stats().evictions == 1

    def test_recency_breaks_ties(self):
        """Among unused entries the stalest is evicted."""
        for i in range(10):
            self.cache.put(f"text {i}", [float(i)])
            self.clock.advance(86400)

        removed = self.cache.evict()

        assert removed == 1
        assert ("text 0", "default") not in self.cache

    def test_cleanup_expired(self):
        """cleanup_expired purges regardless of capacity."""
        self.cache.put("a", [1.0], ttl_seconds=5)
        self.cache.put("b", [1.0], ttl_seconds=500)
        self.clock.advance(10)

        assert self.cache.cleanup_expired() == 1
        assert len(self.cache) == 1

    def test_every_mutation_is_persisted(self):
        """put and get both write through to the repository."""
        saves = self.repository.save_count
        self.cache.put("persist me", [1.0])
        self.cache.get("persist me")
        assert self.repository.save_count == saves + 2

    def test_clear(self):
        """clear drops entries and counters."""
        self.cache.put("a", [1.0])
        self.cache.get("a")
        self.cache.clear()

        stats = self.cache.stats()
        assert stats.total_entries == 0
        assert stats.hits == 0
        assert self.repository.load() == {}

    def test_stats(self):
        """Stats report hit rate and the most used entries."""
        self.cache.put("popular", [1.0, 2.0])
        for _ in range(3):
            self.cache.get("popular")
        self.cache.get("missing")

        stats = self.cache.stats()
        assert stats.hits == 3
        assert stats.misses == 1
        assert stats.hit_rate == pytest.approx(0.75)
        assert stats.top_hits[0] == ("popular", 3)
        assert stats.memory_usage_bytes > 0


class TestGetOrCompute:
    """Test compute-through lookups."""

    def setup_method(self):
        """Set up test fixtures."""
        self.cache = EmbeddingCache()
        self.calls = []

    def _compute(self, text):
        self.calls.append(text)
        return [float(len(text)), 1.0]

    def test_computes_once(self):
        """The second lookup is served from the cache."""
        first = self.cache.get_or_compute("note", self._compute, model=MODEL)
        second = self.cache.get_or_compute("note", self._compute, model=MODEL)

        assert first == second == [4.0, 1.0]
        assert self.calls == ["note"]

    def test_budget_denial_skips_compute(self):
        """A paid miss over budget returns None without computing."""
        governor = CostGovernor(default_daily_limit_usd=0.0)

        result = self.cache.get_or_compute(
            "note",
            self._compute,
            governor=governor,
            estimated_cost_usd=0.01,
            priority=Priority.LOW,
            user_id="user_1",
        )

        assert result is None
        assert self.calls == []

    def test_free_compute_ignores_governor(self):
        """Zero-cost computation never consults the budget."""
        governor = CostGovernor(default_daily_limit_usd=0.0)
        result = self.cache.get_or_compute("note", self._compute, governor=governor)
        assert result == [4.0, 1.0]


class TestJSONFileRepository:
    """Test durable persistence."""

    def test_survives_restart(self):
        """Entries written by one cache are read by the next."""
        clock = FakeClock()
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "cache" / "embeddings.json"

            cache = EmbeddingCache(JSONFileCacheRepository(path), clock=clock)
            cache.put("remember me", [0.5, 0.25], model=MODEL)

            reopened = EmbeddingCache(JSONFileCacheRepository(path), clock=clock)
            assert reopened.get("remember me", model=MODEL) == [0.5, 0.25]

    def test_expired_entries_dropped_on_load(self):
        """Entries that expired while stored are not loaded."""
        clock = FakeClock()
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "embeddings.json"

            cache = EmbeddingCache(JSONFileCacheRepository(path), clock=clock)
            cache.put("old", [1.0], ttl_seconds=60)
            clock.advance(120)

            reopened = EmbeddingCache(JSONFileCacheRepository(path), clock=clock)
            assert len(reopened) == 0

    def test_corrupt_file_starts_empty(self):
        """An unreadable snapshot yields an empty cache."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "embeddings.json"
            path.write_text("{not json", encoding="utf-8")

            cache = EmbeddingCache(JSONFileCacheRepository(path))
            assert len(cache) == 0

    def test_no_temp_files_left(self):
        """Atomic writes leave only the snapshot behind."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "embeddings.json"
            cache = EmbeddingCache(JSONFileCacheRepository(path))
            cache.put("a", [1.0])
            cache.put("b", [2.0])

            assert [p.name for p in Path(tmpdir).iterdir()] == ["embeddings.json"]


class TestCachedVector:
    """Test the cache entry model."""

    def test_dict_round_trip(self):
        """to_dict and from_dict preserve every field."""
        entry = CachedVector(
            fingerprint="abc",
            vector=(0.1, 0.2),
            model=MODEL,
            created_at=100.0,
            ttl_seconds=50.0,
            hit_count=2,
            last_accessed_at=120.0,
            text_excerpt="hello",
        )
        assert CachedVector.from_dict(entry.to_dict()) == entry

    def test_retention_score(self):
        """Hits dominate; recency adds at most one point."""
        fresh = CachedVector("a", (1.0,), MODEL, 0.0, 1e9, hit_count=0, last_accessed_at=0.0)
        used = CachedVector("b", (1.0,), MODEL, 0.0, 1e9, hit_count=1, last_accessed_at=0.0)

        assert fresh.retention_score(0.0) == pytest.approx(1.0)
        assert used.retention_score(86400.0) == pytest.approx(1.5)
        assert fresh.retention_score(86400.0 * 9) == pytest.approx(0.1)


class TestBackgroundSweep:
    """Test the periodic cleanup thread."""

    def test_sweep_removes_expired(self):
        """The daemon sweep purges expired entries on its own."""
        clock = FakeClock()
        cache = EmbeddingCache(cleanup_interval_seconds=0.01, clock=clock)
        cache.put("soon gone", [1.0], ttl_seconds=1)
        clock.advance(5)

        cache.start_cleanup()
        try:
            deadline = time.time() + 2.0
            while len(cache) and time.time() < deadline:
                time.sleep(0.01)
        finally:
            cache.stop_cleanup()

        assert len(cache) == 0


class TestConcurrentAccess:
    """Test EmbeddingCache shared across threads."""

    WRITERS = 8
    PER_WRITER = 25
    STALE = 50

    def _vector(self, writer, i):
        return [writer + i / 1000, -float(i), writer * 0.125]

    def _work(self, cache, writer):
        results = []
        for i in range(self.PER_WRITER):
            text = f"note {writer}-{i}"
            assert cache.get(text, model=MODEL) is None
            cache.put(text, self._vector(writer, i), model=MODEL)
            results.append((cache.get(text, model=MODEL), cache.get(text, model=MODEL)))
        return writer, results

    def test_parallel_get_put_with_cleanup(self):
        """Writers and an expiry sweep share the cache without losing entries or counts."""
        clock = FakeClock()
        cache = EmbeddingCache(max_entries=1000, clock=clock)
        for i in range(self.STALE):
            cache.put(f"stale {i}", [1.0], model=MODEL, ttl_seconds=1)
        clock.advance(5)

        done = threading.Event()
        removed = []

        def sweep():
            while not done.is_set():
                removed.append(cache.cleanup_expired())
            removed.append(cache.cleanup_expired())

        sweeper = threading.Thread(target=sweep)
        sweeper.start()
        try:
            with ThreadPoolExecutor(max_workers=self.WRITERS) as pool:
                outcomes = list(pool.map(lambda w: self._work(cache, w), range(self.WRITERS)))
        finally:
            done.set()
            sweeper.join(timeout=5)

        for writer, results in outcomes:
            for i, (first, second) in enumerate(results):
                assert first == self._vector(writer, i)
                assert second == self._vector(writer, i)

        stored = self.WRITERS * self.PER_WRITER
        stats = cache.stats(top_n=stored)
        assert sum(removed) == self.STALE
        assert stats.total_entries == stored
        assert len(cache) == stored
        assert stats.hits == stored * 2
        assert stats.misses == stored
        assert stats.expired_removed == self.STALE
        assert {count for _, count in stats.top_hits} == {2}
