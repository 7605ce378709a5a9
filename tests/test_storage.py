"""Tests for storage backends."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
import tempfile

import pytest

from echovault.models import AuditLogEntry, CacheEntry
from echovault.storage import CacheStoreError, InMemoryStorage, SQLiteStorage


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
DAY = "2026-03-01"


def _audit(user_id="user_1", cost=0.01, outcome="ok", cache_hit=False):
    return AuditLogEntry(
        user_id=user_id,
        operation="chat",
        model="gpt-4o-mini",
        request_tokens=100,
        response_tokens=50,
        cost_usd=cost,
        latency_ms=12,
        cache_hit=cache_hit,
        fingerprint="fp",
        outcome=outcome,
    )


def _cache_entry(user_id="user_1", fingerprint="fp", ttl=timedelta(hours=1)):
    return CacheEntry(
        user_id=user_id,
        fingerprint=fingerprint,
        result={"content": "ok", "confidence": 0.9},
        model="gpt-4o-mini",
        tokens_estimated=5,
        expires_at=NOW + ttl,
        created_at=NOW,
    )


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    """Both backends, behind the same contract."""
    if request.param == "memory":
        yield InMemoryStorage()
        return
    with tempfile.TemporaryDirectory() as tmpdir:
        backend = SQLiteStorage(db_path=f"{tmpdir}/echovault.db")
        yield backend
        backend.close()


def test_ensure_ledger_creates_once(storage):
    """ensure_ledger creates a zeroed row and keeps later changes."""
    ledger = storage.ensure_ledger("user_1", DAY, 0.5)
    assert ledger.spent_usd == 0.0
    assert ledger.daily_limit_usd == 0.5

    storage.set_daily_limit("user_1", DAY, 2.0)
    assert storage.ensure_ledger("user_1", DAY, 0.5).daily_limit_usd == 2.0


def test_commit_completion_is_additive(storage):
    """Spend and token counters only ever grow."""
    key = ("user_1", DAY, 0.5)
    storage.commit_completion(key, 0.01, 100, 50, _audit())
    ledger = storage.commit_completion(key, 0.02, 10, 5, _audit(cost=0.02))

    assert ledger.spent_usd == pytest.approx(0.03)
    assert ledger.spent_tokens_in == 110
    assert ledger.spent_tokens_out == 55
    assert len(storage.list_audit("user_1")) == 2


def test_set_daily_limit_keeps_spend(storage):
    """Changing the limit does not reset spend."""
    storage.commit_completion(("user_1", DAY, 0.5), 0.2, 0, 0, _audit(cost=0.2))
    ledger = storage.set_daily_limit("user_1", DAY, 1.0)

    assert ledger.daily_limit_usd == 1.0
    assert ledger.spent_usd == pytest.approx(0.2)
    assert ledger.remaining_usd == pytest.approx(0.8)


def test_cache_round_trip(storage):
    """A committed cache row is readable until it expires."""
    storage.commit_completion(("user_1", DAY, 0.5), 0.01, 1, 1, _audit(), cache_entry=_cache_entry())

    hit = storage.get_cache("user_1", "fp", NOW + timedelta(minutes=30))
    assert hit is not None
    assert hit.result == {"content": "ok", "confidence": 0.9}
    assert hit.model == "gpt-4o-mini"

    assert storage.get_cache("user_1", "fp", NOW + timedelta(hours=2)) is None


def test_cache_is_scoped_per_user(storage):
    """One user's cache row is invisible to another."""
    storage.commit_completion(("user_1", DAY, 0.5), 0.01, 1, 1, _audit(), cache_entry=_cache_entry())
    assert storage.get_cache("user_2", "fp", NOW) is None


def test_purge_expired_cache(storage):
    """Expired rows are deleted, live ones kept."""
    key = ("user_1", DAY, 0.5)
    storage.commit_completion(key, 0.0, 0, 0, _audit(), cache_entry=_cache_entry("user_1", "old", timedelta(minutes=1)))
    storage.commit_completion(key, 0.0, 0, 0, _audit(), cache_entry=_cache_entry("user_1", "new", timedelta(days=1)))

    assert storage.purge_expired_cache(NOW + timedelta(hours=1)) == 1
    assert storage.get_cache("user_1", "new", NOW + timedelta(hours=1)) is not None


def test_audit_listing(storage):
    """Audit rows are filtered by user and keep their outcome."""
    storage.append_audit(_audit("user_1", outcome="denied", cost=0.0))
    storage.append_audit(_audit("user_2", outcome="cache_hit", cost=0.0, cache_hit=True))

    rows = storage.list_audit("user_2")
    assert len(rows) == 1
    assert rows[0].outcome == "cache_hit"
    assert rows[0].cache_hit is True
    assert len(storage.list_audit()) == 2


def test_list_ledgers(storage):
    """Ledgers are listed per user, oldest first."""
    storage.ensure_ledger("user_1", "2026-03-02", 0.5)
    storage.ensure_ledger("user_1", DAY, 0.5)
    storage.ensure_ledger("user_2", DAY, 0.5)

    assert [l.date for l in storage.list_ledgers("user_1")] == [DAY, "2026-03-02"]


def test_reserve_holds_within_limit(storage):
    """A reservation is granted only while spent + held + amount fits."""
    key = ("user_1", DAY, 0.5)

    granted, ledger = storage.reserve(key, 0.3)
    assert granted is True
    assert ledger.reserved_usd == pytest.approx(0.3)
    assert ledger.remaining_usd == pytest.approx(0.2)

    granted, ledger = storage.reserve(key, 0.3)
    assert granted is False
    assert ledger.reserved_usd == pytest.approx(0.3)


def test_release_returns_the_hold(storage):
    """Released money can be reserved again, and never goes negative."""
    key = ("user_1", DAY, 0.5)
    storage.reserve(key, 0.4)

    ledger = storage.release("user_1", DAY, 0.4)
    assert ledger.reserved_usd == 0.0
    assert storage.release("user_1", DAY, 1.0).reserved_usd == 0.0
    assert storage.reserve(key, 0.4)[0] is True
    assert storage.release("nobody", DAY, 0.1) is None


def test_commit_settles_the_hold(storage):
    """Committing with reserved_usd moves the hold into spend."""
    key = ("user_1", DAY, 0.5)
    storage.reserve(key, 0.05)

    ledger = storage.commit_completion(key, 0.03, 10, 5, _audit(cost=0.03), reserved_usd=0.05)

    assert ledger.spent_usd == pytest.approx(0.03)
    assert ledger.reserved_usd == 0.0
    assert ledger.remaining_usd == pytest.approx(0.47)


def test_concurrent_reservations_never_overcommit(storage):
    """Racing reservations grant exactly what the limit allows."""
    key = ("user_1", DAY, 0.5)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: storage.reserve(key, 0.125)[0], range(20)))

    assert results.count(True) == 4
    assert storage.get_ledger("user_1", DAY).reserved_usd == pytest.approx(0.5)


def test_sqlite_storage_persists_records():
    """SQLite storage should persist ledgers and audit rows across instances."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = f"{tmpdir}/echovault.db"

        storage = SQLiteStorage(db_path=db_path)
        storage.commit_completion(("user_1", DAY, 0.5), 0.01, 100, 50, _audit(), cache_entry=_cache_entry())
        storage.close()

        storage2 = SQLiteStorage(db_path=db_path)
        assert storage2.get_ledger("user_1", DAY).spent_usd == pytest.approx(0.01)
        assert storage2.get_cache("user_1", "fp", NOW) is not None
        records = storage2.export_audit()
        assert len(records) == 1
        assert records[0]["user_id"] == "user_1"
        storage2.close()


def test_sqlite_unserializable_result_raises_cache_error():
    """A cache row that cannot be encoded fails the whole transaction."""
    with tempfile.TemporaryDirectory() as tmpdir:
        storage = SQLiteStorage(db_path=f"{tmpdir}/echovault.db")
        bad = _cache_entry()
        bad.result = {"value": object()}

        with pytest.raises(CacheStoreError):
            storage.commit_completion(("user_1", DAY, 0.5), 0.01, 1, 1, _audit(), cache_entry=bad)

        assert storage.get_ledger("user_1", DAY) is None
        assert storage.list_audit("user_1") == []
        storage.close()
