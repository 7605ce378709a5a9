"""
Complexity Classifier for EchoVault.

Scores text into a 0..1 complexity value and suggests whether the cheap
local engine or a paid remote model should handle it.
"""

import dataclasses
import re
from typing import Optional, Union

from echovault.config import TIER_THRESHOLDS
from echovault.schemas import (
    ClassificationContext,
    ComplexityFactors,
    ComplexityScore,
    TextUnit,
    Tier,
    UserTier,
)


DOMAIN_TERMS = (
    "algorithme", "algorithm", "api", "backend", "database", "framework",
    "machine learning", "intelligence artificielle", "artificial intelligence",
    "blockchain", "cybersécurité", "cybersecurity", "devops", "microservices",
    "cloud", "kubernetes", "docker", "typescript", "python",
    "médical", "medical", "juridique", "legal", "financier", "financial",
    "scientifique", "scientific", "académique", "academic",
)

AFFECT_TERMS = (
    "amour", "love", "haine", "hate", "joie", "joy", "tristesse", "sadness",
    "colère", "anger", "peur", "fear", "surprise", "dégoût", "disgust",
    "anxiété", "anxiety", "stress", "dépression", "depression", "euphorie",
    "nostalgie", "nostalgia", "mélancolie", "passion", "frustration",
    "espoir", "hope", "désespoir", "despair",
)

# Factor weights; they sum to 1.0
WEIGHTS = {
    "length": 0.30,
    "domain": 0.25,
    "affect": 0.20,
    "multilingual": 0.15,
    "context": 0.10,
}


class ComplexityClassifier:
    """
    Pure, deterministic complexity scoring.

    Factors:
    - Length ratio (300 words saturates)
    - Domain vocabulary density
    - Affect vocabulary density
    - Non-primary-language script
    - Context bonus (long audio, multi-turn)
    """

    def __init__(
        self,
        domain_terms: tuple[str, ...] = DOMAIN_TERMS,
        affect_terms: tuple[str, ...] = AFFECT_TERMS,
        thresholds: Optional[dict[str, float]] = None,
    ):
        self.domain_terms = tuple(t.lower() for t in domain_terms)
        self.affect_terms = tuple(t.lower() for t in affect_terms)
        self.thresholds = dict(thresholds or TIER_THRESHOLDS)

        # Cyrillic, Greek, Arabic, Hebrew, Devanagari, Thai, CJK, kana, Hangul
        self._foreign_script_pattern = re.compile(
            '[\u0400-\u04ff\u0370-\u03ff\u0600-\u06ff\u0590-\u05ff'
            '\u0900-\u097f\u0e00-\u0e7f\u4e00-\u9fff\u3040-\u30ff\uac00-\ud7af]'
        )
        self._domain_pattern = self._term_pattern(self.domain_terms)
        self._affect_pattern = self._term_pattern(self.affect_terms)

    @staticmethod
    def _term_pattern(terms: tuple[str, ...]) -> re.Pattern:
        alternation = "|".join(re.escape(t) for t in sorted(terms, key=len, reverse=True))
        return re.compile(rf"\b(?:{alternation})\b")

    def classify(
        self,
        text: Union[str, TextUnit],
        context: Optional[ClassificationContext] = None,
    ) -> ComplexityScore:
        """
        Score text complexity.

        Args:
            text: Raw string or TextUnit.
            context: Optional audio/conversation context.

        Returns:
            ComplexityScore with factors, suggested tier, and reasoning.
        """
        if isinstance(text, TextUnit):
            text = text.text
        context = context or ClassificationContext()

        if not text or not text.strip():
            return ComplexityScore(
                score=0.0,
                factors=ComplexityFactors(0.0, 0.0, 0.0, 0.0, 0.0),
                suggested_tier=Tier.LOCAL,
                reasoning="empty text",
            )

        normalized = text.lower()
        word_count = len(normalized.split())

        length = min(word_count / 300, 1.0)
        domain_hits = len(set(self._domain_pattern.findall(normalized)))
        domain = min(domain_hits / 5, 1.0)
        affect_hits = len(set(self._affect_pattern.findall(normalized)))
        affect = min(affect_hits / 3, 1.0)
        multilingual = 0.8 if self._foreign_script_pattern.search(text) else 0.0
        context_weight = self._context_weight(context)

        raw = (
            length * WEIGHTS["length"]
            + domain * WEIGHTS["domain"]
            + affect * WEIGHTS["affect"]
            + multilingual * WEIGHTS["multilingual"]
            + context_weight * WEIGHTS["context"]
        )
        score = round(min(raw, 1.0), 2)

        threshold = self.threshold_for(context.user_tier)
        tier = Tier.REMOTE if score > threshold else Tier.LOCAL

        factors = ComplexityFactors(
            length=length,
            domain_term_density=domain,
            affect_density=affect,
            multilingual=multilingual,
            context_weight=context_weight,
        )
        return ComplexityScore(
            score=score,
            factors=factors,
            suggested_tier=tier,
            reasoning=self._build_reasoning(factors, word_count, domain_hits, affect_hits, score, threshold),
        )

    def threshold_for(self, user_tier: UserTier) -> float:
        """Score above which the remote tier is suggested."""
        key = user_tier.value if isinstance(user_tier, UserTier) else str(user_tier)
        return self.thresholds.get(key, self.thresholds.get(UserTier.FREE.value, 0.75))

    def _context_weight(self, context: ClassificationContext) -> float:
        weight = 0.0
        if context.duration_seconds > 180:
            weight += 0.3
        if context.previous_messages > 2:
            weight += 0.2
        if context.has_audio:
            weight += 0.1
        return min(weight, 1.0)

    def _build_reasoning(
        self,
        factors: ComplexityFactors,
        word_count: int,
        domain_hits: int,
        affect_hits: int,
        score: float,
        threshold: float,
    ) -> str:
        reasons = []
        if factors.length > 0.5:
            reasons.append(f"long text ({word_count} words)")
        if domain_hits:
            reasons.append(f"{domain_hits} domain terms")
        if affect_hits:
            reasons.append(f"{affect_hits} affect terms")
        if factors.multilingual:
            reasons.append("foreign script")
        if factors.context_weight > 0:
            reasons.append("rich context")
        if not reasons:
            reasons.append("simple text")
        verdict = "remote" if score > threshold else "local"
        return f"{', '.join(reasons)}; score {score:.2f} vs threshold {threshold:.2f} -> {verdict}"


def force_tier(score: ComplexityScore, tier: Tier) -> ComplexityScore:
    """Override the suggested tier of an existing score."""
    return dataclasses.replace(
        score,
        suggested_tier=tier,
        reasoning=f"{score.reasoning} (forced {tier.value})",
    )
