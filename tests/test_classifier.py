"""Tests for the ComplexityClassifier component."""

import pytest

from echovault import classify
from echovault.classifier import ComplexityClassifier, force_tier
from echovault.schemas import ClassificationContext, Origin, TextUnit, Tier, UserTier


HEAVY_TEXT = (
    "algorithm api backend database kubernetes docker love fear hope "
    + "note " * 300
)


class TestComplexityClassifier:
    """Test suite for ComplexityClassifier."""

    def setup_method(self):
        """Set up test fixtures."""
        self.classifier = ComplexityClassifier()

    def test_empty_text(self):
        """Empty or blank text scores zero and stays local."""
        for text in ("", "   \n\t"):
            result = self.classifier.classify(text)
            assert result.score == 0.0
            assert result.suggested_tier == Tier.LOCAL
            assert result.reasoning == "empty text"

    def test_short_reminder_is_local(self):
        """A short everyday note is cheap to handle."""
        result = self.classifier.classify("Rappel: réunion demain à 10h")

        assert result.score < 0.1
        assert result.suggested_tier == Tier.LOCAL
        assert "simple text" in result.reasoning

    def test_score_bounds(self):
        """Scores stay within [0, 1] for any input."""
        samples = [
            "hi",
            HEAVY_TEXT,
            "Привет мир " * 500,
            "stress anxiety fear hate love joy " * 100,
        ]
        for text in samples:
            result = self.classifier.classify(
                text,
                ClassificationContext(has_audio=True, duration_seconds=900, previous_messages=10),
            )
            assert 0.0 <= result.score <= 1.0

    def test_classification_is_idempotent(self):
        """Same input and context always yield the same score."""
        context = ClassificationContext(previous_messages=3)
        first = self.classifier.classify(HEAVY_TEXT, context)
        second = self.classifier.classify(HEAVY_TEXT, context)
        assert first == second

    def test_free_threshold_is_strict(self):
        """A score equal to the free threshold does not go remote."""
        result = self.classifier.classify(HEAVY_TEXT)

        assert result.score == pytest.approx(0.75)
        assert result.suggested_tier == Tier.LOCAL

    def test_pro_tier_lower_threshold(self):
        """Pro users go remote at a lower score."""
        result = self.classifier.classify(
            HEAVY_TEXT, ClassificationContext(user_tier=UserTier.PRO),
        )
        assert result.suggested_tier == Tier.REMOTE
        assert self.classifier.threshold_for(UserTier.PRO) < self.classifier.threshold_for(UserTier.FREE)

    def test_context_pushes_over_threshold(self):
        """Long audio adds enough context weight to go remote."""
        result = self.classifier.classify(
            HEAVY_TEXT, ClassificationContext(has_audio=True, duration_seconds=240),
        )
        assert result.factors.context_weight == pytest.approx(0.4)
        assert result.suggested_tier == Tier.REMOTE
        assert "rich context" in result.reasoning

    def test_domain_and_affect_factors(self):
        """Domain and affect terms are counted once each, on word boundaries."""
        result = self.classifier.classify("Python python API and some anxiety about the database")

        assert result.factors.domain_term_density == pytest.approx(3 / 5)
        assert result.factors.affect_density == pytest.approx(1 / 3)

    def test_terms_match_whole_words_only(self):
        """Substrings of longer words are not domain terms."""
        result = self.classifier.classify("rapidly clouding skies")
        assert result.factors.domain_term_density == 0.0

    def test_foreign_script(self):
        """Non-Latin scripts raise the multilingual factor."""
        result = self.classifier.classify("Привет, как дела?")
        assert result.factors.multilingual == pytest.approx(0.8)
        assert "foreign script" in result.reasoning

        latin = self.classifier.classify("Bonjour, ça va ?")
        assert latin.factors.multilingual == 0.0

    def test_text_unit_input(self):
        """TextUnit input scores like its raw text."""
        unit = TextUnit(text="Rappel: réunion demain", origin=Origin.TRANSCRIPT)
        assert self.classifier.classify(unit) == self.classifier.classify("Rappel: réunion demain")

    def test_custom_thresholds(self):
        """Thresholds can be overridden per tier."""
        classifier = ComplexityClassifier(thresholds={"free": 0.2, "pro": 0.1})
        result = classifier.classify("kubernetes docker python api backend")
        assert result.suggested_tier == Tier.REMOTE

    def test_force_tier(self):
        """Forcing a tier keeps the score and notes the override."""
        result = self.classifier.classify("Rappel: réunion demain à 10h")
        forced = force_tier(result, Tier.REMOTE)

        assert forced.suggested_tier == Tier.REMOTE
        assert forced.score == result.score
        assert "forced remote" in forced.reasoning

    def test_module_level_classify(self):
        """The package-level helper uses a default classifier."""
        assert classify("hello") == ComplexityClassifier().classify("hello")
