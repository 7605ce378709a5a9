"""Storage backends for budget ledgers, gateway cache entries, and audit logs."""

from __future__ import annotations

import copy
import json
import sqlite3
import threading
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from echovault.models import AuditLogEntry, BudgetLedgerEntry, CacheEntry


class CacheStoreError(Exception):
    """Raised when the gateway cache cannot be read or written."""
    pass


class GatewayStore(Protocol):
    """Transactional ledger/cache/audit store, scoped per user."""

    def get_ledger(self, user_id: str, day: str) -> Optional[BudgetLedgerEntry]:
        ...

    def ensure_ledger(self, user_id: str, day: str, default_limit_usd: float) -> BudgetLedgerEntry:
        ...

    def set_daily_limit(self, user_id: str, day: str, limit_usd: float) -> BudgetLedgerEntry:
        ...

    def get_cache(self, user_id: str, fingerprint: str, now: datetime) -> Optional[CacheEntry]:
        ...

    def reserve(self, ledger_key: Tuple[str, str, float], amount_usd: float) -> Tuple[bool, BudgetLedgerEntry]:
        ...

    def release(self, user_id: str, day: str, amount_usd: float) -> Optional[BudgetLedgerEntry]:
        ...

    def commit_completion(
        self,
        ledger_key: Tuple[str, str, float],
        cost_usd: float,
        tokens_in: int,
        tokens_out: int,
        audit: AuditLogEntry,
        cache_entry: Optional[CacheEntry] = None,
        reserved_usd: float = 0.0,
    ) -> BudgetLedgerEntry:
        ...

    def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        ...

    def list_audit(self, user_id: Optional[str] = None) -> List[AuditLogEntry]:
        ...

    def purge_expired_cache(self, now: datetime) -> int:
        ...


class InMemoryStorage:
    """In-memory storage backend (default)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ledgers: Dict[Tuple[str, str], BudgetLedgerEntry] = {}
        self._cache: Dict[Tuple[str, str], CacheEntry] = {}
        self._audit: List[AuditLogEntry] = []

    def get_ledger(self, user_id: str, day: str) -> Optional[BudgetLedgerEntry]:
        entry = self._ledgers.get((user_id, day))
        return copy.copy(entry) if entry else None

    def ensure_ledger(self, user_id: str, day: str, default_limit_usd: float) -> BudgetLedgerEntry:
        with self._lock:
            entry = self._ledgers.setdefault(
                (user_id, day),
                BudgetLedgerEntry(user_id=user_id, date=day, daily_limit_usd=default_limit_usd),
            )
            return copy.copy(entry)

    def set_daily_limit(self, user_id: str, day: str, limit_usd: float) -> BudgetLedgerEntry:
        with self._lock:
            entry = self._ledgers.setdefault(
                (user_id, day),
                BudgetLedgerEntry(user_id=user_id, date=day, daily_limit_usd=limit_usd),
            )
            entry.daily_limit_usd = limit_usd
            return copy.copy(entry)

    def get_cache(self, user_id: str, fingerprint: str, now: datetime) -> Optional[CacheEntry]:
        entry = self._cache.get((user_id, fingerprint))
        if entry is None or entry.is_expired(now):
            return None
        return entry

    def reserve(self, ledger_key: Tuple[str, str, float], amount_usd: float) -> Tuple[bool, BudgetLedgerEntry]:
        """Hold `amount_usd` if spent + reserved + amount fits the limit."""
        user_id, day, default_limit = ledger_key
        with self._lock:
            entry = self._ledgers.setdefault(
                (user_id, day),
                BudgetLedgerEntry(user_id=user_id, date=day, daily_limit_usd=default_limit),
            )
            if entry.spent_usd + entry.reserved_usd + amount_usd > entry.daily_limit_usd:
                return False, copy.copy(entry)
            entry.reserved_usd += amount_usd
            return True, copy.copy(entry)

    def release(self, user_id: str, day: str, amount_usd: float) -> Optional[BudgetLedgerEntry]:
        with self._lock:
            entry = self._ledgers.get((user_id, day))
            if entry is None:
                return None
            entry.reserved_usd = max(0.0, entry.reserved_usd - amount_usd)
            return copy.copy(entry)

    def commit_completion(
        self,
        ledger_key: Tuple[str, str, float],
        cost_usd: float,
        tokens_in: int,
        tokens_out: int,
        audit: AuditLogEntry,
        cache_entry: Optional[CacheEntry] = None,
        reserved_usd: float = 0.0,
    ) -> BudgetLedgerEntry:
        user_id, day, default_limit = ledger_key
        with self._lock:
            if cache_entry is not None:
                self._cache[(cache_entry.user_id, cache_entry.fingerprint)] = cache_entry
            entry = self._ledgers.setdefault(
                (user_id, day),
                BudgetLedgerEntry(user_id=user_id, date=day, daily_limit_usd=default_limit),
            )
            entry.spent_usd += cost_usd
            entry.spent_tokens_in += tokens_in
            entry.spent_tokens_out += tokens_out
            entry.reserved_usd = max(0.0, entry.reserved_usd - reserved_usd)
            self._audit.append(audit)
            return copy.copy(entry)

    def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._lock:
            self._audit.append(entry)
        return entry

    def list_audit(self, user_id: Optional[str] = None) -> List[AuditLogEntry]:
        if user_id is None:
            return list(self._audit)
        return [e for e in self._audit if e.user_id == user_id]

    def list_ledgers(self, user_id: str) -> List[BudgetLedgerEntry]:
        return sorted(
            (copy.copy(e) for (uid, _), e in self._ledgers.items() if uid == user_id),
            key=lambda e: e.date,
        )

    def purge_expired_cache(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, e in self._cache.items() if e.is_expired(now)]
            for key in expired:
                del self._cache[key]
            return len(expired)


class SQLiteStorage:
    """SQLite-backed storage backend."""

    def __init__(self, db_path: str = "echovault.db"):
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS llm_budgets (
                user_id TEXT NOT NULL,
                date TEXT NOT NULL,
                daily_limit_usd REAL NOT NULL DEFAULT 0.50,
                spent_usd REAL NOT NULL DEFAULT 0,
                spent_tokens_in INTEGER NOT NULL DEFAULT 0,
                spent_tokens_out INTEGER NOT NULL DEFAULT 0,
                reserved_usd REAL NOT NULL DEFAULT 0,
                PRIMARY KEY (user_id, date)
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ai_cache (
                user_id TEXT NOT NULL,
                key TEXT NOT NULL,
                result TEXT NOT NULL,
                model TEXT NOT NULL,
                tokens_estimated INTEGER NOT NULL DEFAULT 0,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (user_id, key)
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ai_logs (
                log_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                operation TEXT NOT NULL,
                model TEXT,
                request_tokens INTEGER NOT NULL,
                response_tokens INTEGER NOT NULL,
                cost_usd REAL NOT NULL,
                latency_ms INTEGER NOT NULL,
                prompt_chars INTEGER NOT NULL,
                cache_hit INTEGER NOT NULL,
                request_fingerprint TEXT NOT NULL,
                outcome TEXT NOT NULL,
                escalated INTEGER NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_cache_expires ON ai_cache(expires_at)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_user ON ai_logs(user_id)")
        self._conn.commit()

    # =========================================================================
    # Ledger
    # =========================================================================

    def _row_to_ledger(self, row: sqlite3.Row) -> BudgetLedgerEntry:
        return BudgetLedgerEntry(
            user_id=row["user_id"],
            date=row["date"],
            daily_limit_usd=row["daily_limit_usd"],
            spent_usd=row["spent_usd"],
            spent_tokens_in=row["spent_tokens_in"],
            spent_tokens_out=row["spent_tokens_out"],
            reserved_usd=row["reserved_usd"],
        )

    def get_ledger(self, user_id: str, day: str) -> Optional[BudgetLedgerEntry]:
        row = self._conn.execute(
            "SELECT * FROM llm_budgets WHERE user_id = ? AND date = ?",
            (user_id, day),
        ).fetchone()
        if not row:
            return None
        return self._row_to_ledger(row)

    def ensure_ledger(self, user_id: str, day: str, default_limit_usd: float) -> BudgetLedgerEntry:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO llm_budgets (user_id, date, daily_limit_usd)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id, date) DO NOTHING
                """,
                (user_id, day, default_limit_usd),
            )
        return self.get_ledger(user_id, day)

    def set_daily_limit(self, user_id: str, day: str, limit_usd: float) -> BudgetLedgerEntry:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO llm_budgets (user_id, date, daily_limit_usd)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id, date) DO UPDATE SET
                    daily_limit_usd=excluded.daily_limit_usd
                """,
                (user_id, day, limit_usd),
            )
        return self.get_ledger(user_id, day)

    def reserve(self, ledger_key: Tuple[str, str, float], amount_usd: float) -> Tuple[bool, BudgetLedgerEntry]:
        """Hold `amount_usd` if spent + reserved + amount fits the limit."""
        user_id, day, default_limit = ledger_key
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO llm_budgets (user_id, date, daily_limit_usd)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id, date) DO NOTHING
                """,
                (user_id, day, default_limit),
            )
            # Check and hold in one statement so other writers cannot interleave.
            cur = self._conn.execute(
                """
                UPDATE llm_budgets SET reserved_usd = reserved_usd + ?
                WHERE user_id = ? AND date = ?
                  AND spent_usd + reserved_usd + ? <= daily_limit_usd
                """,
                (amount_usd, user_id, day, amount_usd),
            )
            granted = cur.rowcount == 1
            ledger = self.get_ledger(user_id, day)
        return granted, ledger

    def release(self, user_id: str, day: str, amount_usd: float) -> Optional[BudgetLedgerEntry]:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE llm_budgets SET reserved_usd = MAX(0, reserved_usd - ?) WHERE user_id = ? AND date = ?",
                (amount_usd, user_id, day),
            )
            return self.get_ledger(user_id, day)

    def list_ledgers(self, user_id: str) -> List[BudgetLedgerEntry]:
        rows = self._conn.execute(
            "SELECT * FROM llm_budgets WHERE user_id = ? ORDER BY date ASC",
            (user_id,),
        ).fetchall()
        return [self._row_to_ledger(row) for row in rows]

    # =========================================================================
    # Cache
    # =========================================================================

    def get_cache(self, user_id: str, fingerprint: str, now: datetime) -> Optional[CacheEntry]:
        try:
            row = self._conn.execute(
                "SELECT * FROM ai_cache WHERE user_id = ? AND key = ? AND expires_at > ?",
                (user_id, fingerprint, now.isoformat()),
            ).fetchone()
            if not row:
                return None
            return CacheEntry(
                user_id=row["user_id"],
                fingerprint=row["key"],
                result=json.loads(row["result"]),
                model=row["model"],
                tokens_estimated=row["tokens_estimated"],
                expires_at=_parse_time(row["expires_at"]),
                created_at=_parse_time(row["created_at"]),
            )
        except (sqlite3.Error, json.JSONDecodeError) as e:
            raise CacheStoreError(f"cache read failed: {e}") from e

    def _write_cache(self, entry: CacheEntry) -> None:
        try:
            self._conn.execute(
                """
                INSERT INTO ai_cache (user_id, key, result, model, tokens_estimated, expires_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, key) DO UPDATE SET
                    result=excluded.result,
                    model=excluded.model,
                    tokens_estimated=excluded.tokens_estimated,
                    expires_at=excluded.expires_at,
                    created_at=excluded.created_at
                """,
                (
                    entry.user_id,
                    entry.fingerprint,
                    json.dumps(entry.result),
                    entry.model,
                    entry.tokens_estimated,
                    entry.expires_at.isoformat(),
                    entry.created_at.isoformat(),
                ),
            )
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise CacheStoreError(f"cache write failed: {e}") from e

    def purge_expired_cache(self, now: datetime) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "DELETE FROM ai_cache WHERE expires_at <= ?",
                (now.isoformat(),),
            )
        return cur.rowcount

    # =========================================================================
    # Completion (cache + ledger + audit, one transaction)
    # =========================================================================

    def commit_completion(
        self,
        ledger_key: Tuple[str, str, float],
        cost_usd: float,
        tokens_in: int,
        tokens_out: int,
        audit: AuditLogEntry,
        cache_entry: Optional[CacheEntry] = None,
        reserved_usd: float = 0.0,
    ) -> BudgetLedgerEntry:
        user_id, day, default_limit = ledger_key
        with self._lock, self._conn:
            # Cache row first: a retry after a crash is served from cache.
            if cache_entry is not None:
                self._write_cache(cache_entry)
            self._conn.execute(
                """
                INSERT INTO llm_budgets (user_id, date, daily_limit_usd, spent_usd, spent_tokens_in, spent_tokens_out)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, date) DO UPDATE SET
                    spent_usd=spent_usd + excluded.spent_usd,
                    spent_tokens_in=spent_tokens_in + excluded.spent_tokens_in,
                    spent_tokens_out=spent_tokens_out + excluded.spent_tokens_out,
                    reserved_usd=MAX(0, reserved_usd - ?)
                """,
                (user_id, day, default_limit, cost_usd, tokens_in, tokens_out, reserved_usd),
            )
            self._insert_audit(audit)
        return self.get_ledger(user_id, day)

    # =========================================================================
    # Audit
    # =========================================================================

    def _insert_audit(self, entry: AuditLogEntry) -> None:
        self._conn.execute(
            """
            INSERT INTO ai_logs (
                log_id, user_id, operation, model, request_tokens, response_tokens,
                cost_usd, latency_ms, prompt_chars, cache_hit, request_fingerprint,
                outcome, escalated, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.log_id,
                entry.user_id,
                entry.operation,
                entry.model,
                entry.request_tokens,
                entry.response_tokens,
                entry.cost_usd,
                entry.latency_ms,
                entry.prompt_chars,
                1 if entry.cache_hit else 0,
                entry.fingerprint,
                entry.outcome,
                1 if entry.escalated else 0,
                entry.created_at.isoformat(),
            ),
        )

    def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._lock, self._conn:
            self._insert_audit(entry)
        return entry

    def _row_to_audit(self, row: sqlite3.Row) -> AuditLogEntry:
        return AuditLogEntry(
            user_id=row["user_id"],
            operation=row["operation"],
            model=row["model"],
            request_tokens=row["request_tokens"],
            response_tokens=row["response_tokens"],
            cost_usd=row["cost_usd"],
            latency_ms=row["latency_ms"],
            cache_hit=bool(row["cache_hit"]),
            fingerprint=row["request_fingerprint"],
            prompt_chars=row["prompt_chars"],
            outcome=row["outcome"],
            escalated=bool(row["escalated"]),
            created_at=_parse_time(row["created_at"]),
            log_id=row["log_id"],
        )

    def list_audit(self, user_id: Optional[str] = None) -> List[AuditLogEntry]:
        if user_id is None:
            rows = self._conn.execute("SELECT * FROM ai_logs ORDER BY created_at ASC").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM ai_logs WHERE user_id = ? ORDER BY created_at ASC",
                (user_id,),
            ).fetchall()
        return [self._row_to_audit(row) for row in rows]

    def export_audit(self) -> List[Dict[str, Any]]:
        return [asdict(e) for e in self.list_audit()]

    def close(self) -> None:
        self._conn.close()


def _parse_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
