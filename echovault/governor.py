"""
Cost Governor for EchoVault.

Estimates request cost, checks it against each user's daily ledger, and
records realized spend. Budget pressure is reported as a typed decision
(proceed / defer / deny), never as an exception.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from echovault.config import get_daily_limit, get_pricing
from echovault.models import AuditLogEntry, BudgetLedgerEntry, CacheEntry
from echovault.schemas import BudgetReservation, CostDecision, Priority, SuggestedAction
from echovault.storage import CacheStoreError, GatewayStore, InMemoryStorage
from echovault.validation import ValidationError, validate_cost


logger = logging.getLogger("echovault.governor")


WARNING_THRESHOLD = 0.8


class CostGovernor:
    """
    Per-user daily budget enforcement.

    Example:
        ```python
        governor = CostGovernor(SQLiteStorage("echovault.db"))

        decision = governor.should_proceed(
            "chat", est_tokens=600, est_cost_usd=0.002,
            priority=Priority.HIGH, user_id="user_123",
        )
        if decision.allowed:
            ...
        ```
    """

    def __init__(
        self,
        storage: Optional[GatewayStore] = None,
        default_daily_limit_usd: Optional[float] = None,
        pricing: Optional[dict[str, dict[str, float]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.default_daily_limit_usd = (
            get_daily_limit() if default_daily_limit_usd is None else default_daily_limit_usd
        )
        validate_cost(self.default_daily_limit_usd, name="default_daily_limit_usd")
        self._pricing = pricing
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # =========================================================================
    # Pricing
    # =========================================================================

    @property
    def pricing(self) -> dict[str, dict[str, float]]:
        return self._pricing if self._pricing is not None else get_pricing()

    def estimate_cost(self, model: str, tokens_in: int, tokens_out: int = 0) -> float:
        """Cost in USD from per-1M-token prices. Unknown models fall back to the priciest entry."""
        rates = self.pricing.get(model)
        if rates is None:
            rates = max(self.pricing.values(), key=lambda r: r["input"] + r["output"])
            logger.warning("no pricing for model %s, using most expensive rate", model)
        return (tokens_in * rates["input"] + tokens_out * rates["output"]) / 1_000_000

    # =========================================================================
    # Ledger
    # =========================================================================

    def today(self) -> str:
        return self._clock().date().isoformat()

    def get_ledger(self, user_id: str) -> BudgetLedgerEntry:
        """Read or create today's ledger row for a user."""
        return self.storage.ensure_ledger(user_id, self.today(), self.default_daily_limit_usd)

    def set_daily_limit(self, user_id: str, limit_usd: float) -> BudgetLedgerEntry:
        validate_cost(limit_usd, name="limit_usd")
        return self.storage.set_daily_limit(user_id, self.today(), limit_usd)

    def remaining(self, user_id: str) -> float:
        return self.get_ledger(user_id).remaining_usd

    # =========================================================================
    # Decisions
    # =========================================================================

    def should_proceed(
        self,
        operation: str,
        est_tokens: int,
        est_cost_usd: float,
        priority: Priority = Priority.MEDIUM,
        user_id: str = "default",
    ) -> CostDecision:
        """
        Check whether an operation fits today's remaining budget.

        Args:
            operation: Operation name (chat, embed, ...), for logs.
            est_tokens: Estimated total tokens.
            est_cost_usd: Estimated cost in USD.
            priority: LOW requests are deferred instead of denied.
            user_id: Ledger owner.

        Returns:
            CostDecision with allowed flag and suggested action.
        """
        self._validate_estimate(est_tokens, est_cost_usd)
        ledger = self.get_ledger(user_id)
        return self._decide(ledger, operation, est_cost_usd, Priority(priority), user_id)

    def reserve(
        self,
        operation: str,
        est_tokens: int,
        est_cost_usd: float,
        priority: Priority = Priority.MEDIUM,
        user_id: str = "default",
    ) -> CostDecision:
        """
        Like should_proceed, but atomically holds the estimate when allowed.

        The returned decision carries the reservation; settle it with
        record_completion or give it back with release.
        """
        self._validate_estimate(est_tokens, est_cost_usd)
        day = self.today()
        granted, ledger = self.storage.reserve(
            (user_id, day, self.default_daily_limit_usd), est_cost_usd,
        )
        if not granted:
            return self._decide(ledger, operation, est_cost_usd, Priority(priority), user_id)

        # The returned ledger already holds our estimate; count it once.
        ledger.reserved_usd -= est_cost_usd
        decision = self._decide(ledger, operation, est_cost_usd, Priority(priority), user_id)
        decision.reservation = BudgetReservation(user_id=user_id, date=day, amount_usd=est_cost_usd)
        return decision

    def extend(self, reservation: BudgetReservation, extra_cost_usd: float) -> bool:
        """Hold `extra_cost_usd` more on an existing reservation, if it fits."""
        validate_cost(extra_cost_usd, name="extra_cost_usd")
        granted, _ = self.storage.reserve(
            (reservation.user_id, reservation.date, self.default_daily_limit_usd), extra_cost_usd,
        )
        if granted:
            reservation.amount_usd += extra_cost_usd
        return granted

    def release(self, reservation: Optional[BudgetReservation]) -> None:
        """Give back a reservation that will not be spent."""
        if reservation is None or reservation.amount_usd <= 0:
            return
        self.storage.release(reservation.user_id, reservation.date, reservation.amount_usd)
        reservation.amount_usd = 0.0

    def _validate_estimate(self, est_tokens: int, est_cost_usd: float) -> None:
        validate_cost(est_cost_usd, name="est_cost_usd")
        if est_tokens < 0:
            raise ValidationError(f"est_tokens cannot be negative, got {est_tokens}")

    def _decide(
        self,
        ledger: BudgetLedgerEntry,
        operation: str,
        est_cost_usd: float,
        priority: Priority,
        user_id: str,
    ) -> CostDecision:
        committed = ledger.spent_usd + ledger.reserved_usd
        remaining = ledger.daily_limit_usd - committed
        projected = committed + est_cost_usd

        if projected > ledger.daily_limit_usd:
            action = SuggestedAction.DEFER if priority == Priority.LOW else SuggestedAction.DENY
            reason = (
                f"daily budget exceeded for {operation}: "
                f"${ledger.spent_usd:.4f} spent + ${ledger.reserved_usd:.4f} in flight "
                f"+ ${est_cost_usd:.4f} estimated "
                f"> ${ledger.daily_limit_usd:.4f} limit"
            )
            logger.info("%s for user %s: %s", action.value, user_id, reason)
            return CostDecision(
                allowed=False,
                suggested_action=action,
                estimated_cost_usd=est_cost_usd,
                remaining_usd=max(0.0, remaining),
                reason=reason,
            )

        warnings = []
        if ledger.daily_limit_usd > 0 and projected / ledger.daily_limit_usd >= WARNING_THRESHOLD:
            warnings.append(
                f"daily budget at {projected / ledger.daily_limit_usd * 100:.1f}% "
                f"(${projected:.4f} of ${ledger.daily_limit_usd:.4f})"
            )

        return CostDecision(
            allowed=True,
            suggested_action=SuggestedAction.PROCEED,
            estimated_cost_usd=est_cost_usd,
            remaining_usd=remaining,
            warnings=warnings,
        )

    def can_absorb(self, user_id: str, extra_cost_usd: float) -> bool:
        """Whether `extra_cost_usd` still fits today's remaining budget."""
        ledger = self.get_ledger(user_id)
        return ledger.spent_usd + ledger.reserved_usd + extra_cost_usd <= ledger.daily_limit_usd

    # =========================================================================
    # Recording
    # =========================================================================

    def record_completion(
        self,
        user_id: str,
        cost_usd: float,
        tokens_in: int,
        tokens_out: int,
        audit: AuditLogEntry,
        cache_entry: Optional[CacheEntry] = None,
        reservation: Optional[BudgetReservation] = None,
    ) -> BudgetLedgerEntry:
        """
        Add realized spend, the cache row, and the audit row in one transaction.

        A reservation is settled in the same transaction and charged to the
        day it was taken on. A failed cache write is logged and the spend is
        recorded without it.
        """
        validate_cost(cost_usd)
        day = reservation.date if reservation else self.today()
        held = reservation.amount_usd if reservation else 0.0
        key = (user_id, day, self.default_daily_limit_usd)
        try:
            return self.storage.commit_completion(
                key, cost_usd, tokens_in, tokens_out, audit, cache_entry=cache_entry, reserved_usd=held,
            )
        except CacheStoreError as e:
            if cache_entry is None:
                raise
            logger.warning("cache write failed, recording spend without cache: %s", e)
            return self.storage.commit_completion(
                key, cost_usd, tokens_in, tokens_out, audit, cache_entry=None, reserved_usd=held,
            )

    def record_spend(
        self,
        user_id: str,
        cost_usd: float,
        tokens_in: int = 0,
        tokens_out: int = 0,
        operation: str = "external",
        model: Optional[str] = None,
    ) -> BudgetLedgerEntry:
        """Record spend made outside the gateway."""
        audit = AuditLogEntry(
            user_id=user_id,
            operation=operation,
            model=model,
            request_tokens=tokens_in,
            response_tokens=tokens_out,
            cost_usd=cost_usd,
            latency_ms=0,
            cache_hit=False,
            fingerprint="",
        )
        return self.record_completion(user_id, cost_usd, tokens_in, tokens_out, audit)

    # =========================================================================
    # Reports
    # =========================================================================

    def get_user_report(self, user_id: str) -> dict[str, Any]:
        """Today's ledger plus audit totals for a user."""
        ledger = self.get_ledger(user_id)
        entries = self.storage.list_audit(user_id)
        calls = [e for e in entries if e.outcome == "ok"]
        by_model: dict[str, float] = {}
        for entry in calls:
            by_model[entry.model or "unknown"] = by_model.get(entry.model or "unknown", 0.0) + entry.cost_usd

        return {
            "user_id": user_id,
            "date": ledger.date,
            "daily_limit_usd": ledger.daily_limit_usd,
            "spent_usd": ledger.spent_usd,
            "remaining_usd": ledger.remaining_usd,
            "spent_tokens_in": ledger.spent_tokens_in,
            "spent_tokens_out": ledger.spent_tokens_out,
            "requests": len(entries),
            "cache_hits": sum(1 for e in entries if e.cache_hit),
            "denied": sum(1 for e in entries if e.outcome == "denied"),
            "escalations": sum(1 for e in entries if e.escalated),
            "cost_by_model": by_model,
        }
