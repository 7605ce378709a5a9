"""
Escalation policy for EchoVault.

Decides whether a low-confidence answer earns one more attempt on a
stronger model. The number of attempts is bounded and there is no backoff.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional


@dataclass
class EscalationDecision:
    """Outcome of an escalation check."""
    escalate: bool
    reason: str
    next_model: Optional[str] = None


@dataclass
class EscalationPolicy:
    """
    Bounded, confidence-triggered re-attempt policy.

    Attributes:
        max_attempts: Total model calls allowed, first call included.
        confidence_threshold: Answers below this are considered weak.
        cost_ceiling_usd: Optional cap on the extra estimated cost of one attempt.
        enabled: Master switch.
        ladder: Models in escalation order, cheapest first.
        is_low_confidence: Optional custom predicate replacing the threshold check.
    """
    max_attempts: int = 2
    confidence_threshold: float = 0.75
    cost_ceiling_usd: Optional[float] = None
    enabled: bool = True
    ladder: list[str] = field(default_factory=list)
    is_low_confidence: Optional[Callable[[float], bool]] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must be between 0 and 1")

    def low_confidence(self, confidence: float) -> bool:
        if self.is_low_confidence is not None:
            return self.is_low_confidence(confidence)
        return confidence < self.confidence_threshold

    def model_for_attempt(self, attempt: int, default: str) -> str:
        """Model for the 0-based attempt number; the ladder's last rung repeats."""
        if not self.ladder:
            return default
        return self.ladder[min(attempt, len(self.ladder) - 1)]

    def decide(
        self,
        attempts_made: int,
        confidence: float,
        current_model: str,
        extra_cost_usd: float,
        budget_allows: Callable[[float], bool],
    ) -> EscalationDecision:
        """
        Check whether to make another attempt.

        Args:
            attempts_made: Calls already made for this request.
            confidence: Confidence of the latest answer.
            current_model: Model that produced it.
            extra_cost_usd: Estimated cost of the next attempt.
            budget_allows: Callback telling whether the extra cost still fits.
        """
        if not self.enabled:
            return EscalationDecision(False, "escalation disabled")
        if not self.low_confidence(confidence):
            return EscalationDecision(False, f"confidence {confidence:.2f} is sufficient")
        if attempts_made >= self.max_attempts:
            return EscalationDecision(False, f"max attempts ({self.max_attempts}) reached")

        next_model = self.model_for_attempt(attempts_made, current_model)
        if next_model == current_model:
            return EscalationDecision(False, "no stronger model available")
        if self.cost_ceiling_usd is not None and extra_cost_usd > self.cost_ceiling_usd:
            return EscalationDecision(
                False,
                f"extra cost ${extra_cost_usd:.6f} above ceiling ${self.cost_ceiling_usd:.6f}",
            )
        if not budget_allows(extra_cost_usd):
            return EscalationDecision(False, "remaining budget cannot absorb escalation")

        return EscalationDecision(
            True,
            f"confidence {confidence:.2f} below threshold, escalating to {next_model}",
            next_model=next_model,
        )
