"""Persisted data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
import uuid


DAY_SECONDS = 86400.0


@dataclass(frozen=True)
class CachedVector:
    """
    Embedding cache entry.

    Frozen so a concurrent sweep never sees a half-updated entry; updates
    go through dataclasses.replace.
    """
    fingerprint: str
    vector: tuple[float, ...]
    model: str
    created_at: float  # epoch seconds
    ttl_seconds: float
    hit_count: int = 0
    last_accessed_at: float = 0.0
    text_excerpt: str = ""

    def is_expired(self, now: float) -> bool:
        return now > self.created_at + self.ttl_seconds

    def retention_score(self, now: float) -> float:
        """hit_count plus a recency bonus in (0, 1]; lowest is evicted first."""
        age_days = max(0.0, now - self.last_accessed_at) / DAY_SECONDS
        return self.hit_count + 1.0 / (1.0 + age_days)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "vector": list(self.vector),
            "model": self.model,
            "created_at": self.created_at,
            "ttl_seconds": self.ttl_seconds,
            "hit_count": self.hit_count,
            "last_accessed_at": self.last_accessed_at,
            "text_excerpt": self.text_excerpt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CachedVector":
        return cls(
            fingerprint=data["fingerprint"],
            vector=tuple(float(v) for v in data["vector"]),
            model=data["model"],
            created_at=float(data["created_at"]),
            ttl_seconds=float(data["ttl_seconds"]),
            hit_count=int(data.get("hit_count", 0)),
            last_accessed_at=float(data.get("last_accessed_at", data["created_at"])),
            text_excerpt=data.get("text_excerpt", ""),
        )


@dataclass
class BudgetLedgerEntry:
    """Per-user, per-day spend accumulator. Additive only."""
    user_id: str
    date: str  # ISO date, UTC
    daily_limit_usd: float
    spent_usd: float = 0.0
    spent_tokens_in: int = 0
    spent_tokens_out: int = 0
    reserved_usd: float = 0.0  # held by requests still in flight

    @property
    def remaining_usd(self) -> float:
        return max(0.0, self.daily_limit_usd - self.spent_usd - self.reserved_usd)


@dataclass
class CacheEntry:
    """Server-side cached gateway result."""
    user_id: str
    fingerprint: str
    result: dict[str, Any]
    model: str
    tokens_estimated: int
    expires_at: datetime
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class AuditLogEntry:
    """One row per gateway request, whatever path it took."""
    user_id: str
    operation: str
    model: Optional[str]
    request_tokens: int
    response_tokens: int
    cost_usd: float
    latency_ms: int
    cache_hit: bool
    fingerprint: str
    prompt_chars: int = 0
    outcome: str = "ok"  # ok, cache_hit, denied, error
    escalated: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    log_id: str = field(default_factory=lambda: uuid.uuid4().hex)
