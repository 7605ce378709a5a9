"""
Embedding cache for EchoVault.

Content-addressed (text, model) -> vector store with TTL expiry and
usage-weighted eviction. Entries live in memory and are persisted through
a CacheRepository after every mutation.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import math
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol, Sequence

from echovault.models import CachedVector
from echovault.schemas import Priority


logger = logging.getLogger("echovault.embedding_cache")


DEFAULT_MAX_ENTRIES = 1000
DEFAULT_TTL_SECONDS = 7 * 24 * 3600
DEFAULT_CLEANUP_INTERVAL_SECONDS = 3600
EVICTION_FRACTION = 0.1


class CacheRepository(Protocol):
    """Durable storage for cache entries."""

    def load(self) -> Dict[str, CachedVector]:
        ...

    def save(self, entries: Dict[str, CachedVector]) -> None:
        ...

    def clear(self) -> None:
        ...


class InMemoryCacheRepository:
    """Repository that keeps a snapshot in memory (tests, ephemeral sessions)."""

    def __init__(self):
        self._snapshot: Dict[str, CachedVector] = {}
        self.save_count = 0

    def load(self) -> Dict[str, CachedVector]:
        return dict(self._snapshot)

    def save(self, entries: Dict[str, CachedVector]) -> None:
        self._snapshot = dict(entries)
        self.save_count += 1

    def clear(self) -> None:
        self._snapshot = {}


class JSONFileCacheRepository:
    """
    Repository backed by a single JSON file.

    Writes go to a temp file first and are moved into place, so a crash
    mid-write leaves the previous snapshot intact.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Dict[str, CachedVector]:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        entries = {}
        for item in data.get("entries", []):
            entry = CachedVector.from_dict(item)
            entries[entry.fingerprint] = entry
        return entries

    def save(self, entries: Dict[str, CachedVector]) -> None:
        payload = {"version": 1, "entries": [e.to_dict() for e in entries.values()]}
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".echovault-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


@dataclass
class CacheStats:
    """Snapshot of cache health."""
    total_entries: int
    hits: int
    misses: int
    hit_rate: float
    evictions: int
    expired_removed: int
    memory_usage_bytes: int
    oldest_created_at: Optional[float]
    newest_created_at: Optional[float]
    top_hits: list[tuple[str, int]]


class EmbeddingCache:
    """
    Thread-safe embedding cache.

    Mutations hold a single lock; entries are immutable, so the background
    sweep never observes a partially updated entry.

    Example:
        ```python
        cache = EmbeddingCache(JSONFileCacheRepository("embeddings.json"))
        cache.put("hello world", vector, model="local-hashed-tfidf")
        cache.get("hello world", model="local-hashed-tfidf")
        ```
    """

    def __init__(
        self,
        repository: Optional[CacheRepository] = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.repository = repository or InMemoryCacheRepository()
        self.max_entries = max_entries
        self.default_ttl_seconds = default_ttl_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, CachedVector] = {}

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expired_removed = 0

        self._stop_event = threading.Event()
        self._cleanup_thread: Optional[threading.Thread] = None

        self._load()

    # =========================================================================
    # Persistence
    # =========================================================================

    def _load(self) -> None:
        try:
            loaded = self.repository.load()
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("embedding cache load failed, starting empty: %s", e)
            return
        now = self._clock()
        self._entries = {k: v for k, v in loaded.items() if not v.is_expired(now)}
        dropped = len(loaded) - len(self._entries)
        if dropped:
            logger.info("dropped %d expired embeddings on load", dropped)
            self._persist()

    def _persist(self) -> None:
        # Caller holds the lock (or is single-threaded during init).
        try:
            self.repository.save(dict(self._entries))
        except (OSError, ValueError, TypeError) as e:
            logger.warning("embedding cache write failed: %s", e)

    # =========================================================================
    # Core API
    # =========================================================================

    @staticmethod
    def fingerprint(text: str, model: str) -> str:
        return hashlib.sha256(f"{model}\x00{text}".encode("utf-8")).hexdigest()

    def get(self, text: str, model: str = "default") -> Optional[list[float]]:
        """Return the cached vector, or None on miss or expiry."""
        key = self.fingerprint(text, model)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            now = self._clock()
            if entry.is_expired(now):
                del self._entries[key]
                self._expired_removed += 1
                self._misses += 1
                self._persist()
                return None
            self._entries[key] = dataclasses.replace(
                entry,
                hit_count=entry.hit_count + 1,
                last_accessed_at=now,
            )
            self._hits += 1
            self._persist()
            return list(entry.vector)

    def put(
        self,
        text: str,
        vector: Sequence[float],
        model: str = "default",
        ttl_seconds: Optional[float] = None,
    ) -> CachedVector:
        """Store a vector, evicting low-value entries if the cache is full."""
        if not vector:
            raise ValueError("vector cannot be empty")
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")

        key = self.fingerprint(text, model)
        with self._lock:
            now = self._clock()
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_locked(now)
            entry = CachedVector(
                fingerprint=key,
                vector=tuple(float(v) for v in vector),
                model=model,
                created_at=now,
                ttl_seconds=ttl,
                hit_count=0,
                last_accessed_at=now,
                text_excerpt=text[:100],
            )
            self._entries[key] = entry
            self._persist()
            return entry

    def evict(self) -> int:
        """Evict the lowest-scoring 10% of entries. Returns the count removed."""
        with self._lock:
            removed = self._evict_locked(self._clock())
            if removed:
                self._persist()
            return removed

    def _evict_locked(self, now: float) -> int:
        if not self._entries:
            return 0
        count = max(1, math.floor(len(self._entries) * EVICTION_FRACTION))
        ranked = sorted(
            self._entries.values(),
            key=lambda e: (e.retention_score(now), e.created_at),
        )
        for entry in ranked[:count]:
            del self._entries[entry.fingerprint]
        self._evictions += count
        logger.debug("evicted %d embeddings", count)
        return count

    def cleanup_expired(self) -> int:
        """Purge TTL-expired entries regardless of capacity."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            if expired:
                self._expired_removed += len(expired)
                self._persist()
                logger.info("removed %d expired embeddings", len(expired))
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            try:
                self.repository.clear()
            except OSError as e:
                logger.warning("embedding cache clear failed: %s", e)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, item: tuple[str, str]) -> bool:
        text, model = item
        entry = self._entries.get(self.fingerprint(text, model))
        return entry is not None and not entry.is_expired(self._clock())

    # =========================================================================
    # Compute-through
    # =========================================================================

    def get_or_compute(
        self,
        text: str,
        compute: Callable[[str], Sequence[float]],
        model: str = "default",
        ttl_seconds: Optional[float] = None,
        governor=None,
        priority: Priority = Priority.MEDIUM,
        estimated_cost_usd: float = 0.0,
        user_id: str = "default",
    ) -> Optional[list[float]]:
        """
        Return a cached vector or compute and store it.

        When a governor is given and the computation costs money, the miss is
        checked against the budget first; a deferred or denied request
        returns None without calling `compute`.
        """
        cached = self.get(text, model)
        if cached is not None:
            return cached

        if governor is not None and estimated_cost_usd > 0:
            decision = governor.should_proceed(
                "embed",
                est_tokens=max(1, len(text) // 4),
                est_cost_usd=estimated_cost_usd,
                priority=priority,
                user_id=user_id,
            )
            if not decision.allowed:
                logger.info(
                    "embedding for %s skipped: %s",
                    user_id,
                    decision.suggested_action.value,
                )
                return None

        vector = list(compute(text))
        self.put(text, vector, model=model, ttl_seconds=ttl_seconds)
        return vector

    # =========================================================================
    # Background sweep
    # =========================================================================

    def start_cleanup(self) -> None:
        """Start the periodic expiry sweep on a daemon thread."""
        if self._cleanup_thread is not None and self._cleanup_thread.is_alive():
            return
        self._stop_event.clear()
        self._cleanup_thread = threading.Thread(
            target=self._cleanup_loop,
            name="echovault-cache-sweep",
            daemon=True,
        )
        self._cleanup_thread.start()

    def stop_cleanup(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._cleanup_thread is not None:
            self._cleanup_thread.join(timeout)
            self._cleanup_thread = None

    def _cleanup_loop(self) -> None:
        while not self._stop_event.wait(self.cleanup_interval_seconds):
            try:
                self.cleanup_expired()
            except Exception as e:
                logger.error("embedding cache sweep failed: %s", e)

    # =========================================================================
    # Stats
    # =========================================================================

    def stats(self, top_n: int = 5) -> CacheStats:
        with self._lock:
            entries = list(self._entries.values())
            hits, misses = self._hits, self._misses
            evictions, expired = self._evictions, self._expired_removed

        lookups = hits + misses
        memory = sum(len(e.vector) * 8 + len(e.fingerprint) + len(e.text_excerpt) for e in entries)
        created = [e.created_at for e in entries]
        top = sorted(entries, key=lambda e: e.hit_count, reverse=True)[:top_n]
        return CacheStats(
            total_entries=len(entries),
            hits=hits,
            misses=misses,
            hit_rate=hits / lookups if lookups else 0.0,
            evictions=evictions,
            expired_removed=expired,
            memory_usage_bytes=memory,
            oldest_created_at=min(created) if created else None,
            newest_created_at=max(created) if created else None,
            top_hits=[(e.text_excerpt, e.hit_count) for e in top],
        )
