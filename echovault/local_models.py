"""
Local Inference Engine for EchoVault.

Zero-cost, no-network text models: extractive summarization, hashed TF-IDF
embeddings, keyword categorization, and answerability assessment. Every
result carries a confidence score so callers can decide whether to
escalate to a paid model.
"""

import hashlib
import json
import logging
import math
import re
import time
from collections import Counter
from itertools import combinations
from typing import Any, Optional, Sequence

from echovault.schemas import (
    AnswerabilityResult,
    CategorizationResult,
    Chunk,
    EmbeddingResult,
    SummaryResult,
    SummaryStyle,
)
from echovault.text import (
    STOPWORDS,
    content_terms,
    normalize_text,
    terms,
    truncate,
    words,
)
from echovault.validation import validate_dimensions, validate_max_length, validate_text


logger = logging.getLogger("echovault.local_models")


SUMMARY_MODEL = "local-extractive"
EMBEDDING_MODEL = "local-hashed-tfidf"
DEFAULT_DIMENSIONS = 384
ANSWERABILITY_THRESHOLD = 0.6
FALLBACK_CONFIDENCE = 0.3

_SENTENCE_SPLIT = re.compile(r'(?<=[.!?…])\s+(?=["\'(\[A-ZÀ-ÖØ-Þ0-9])')

TRANSITION_WORDS = frozenset(
    "cependant néanmoins ensuite enfin donc ainsi puis toutefois également "
    "however therefore then finally also moreover furthermore thus meanwhile first second".split()
)

IMPORTANCE_MARKERS = frozenset(
    "important essentiel principal clé majeur crucial key main critical essential".split()
)

CATEGORIES: dict[str, tuple[str, ...]] = {
    "personal": ("vie", "famille", "ami", "amis", "personnel", "intime", "privé", "souvenir",
                 "family", "friend", "friends", "personal", "memory"),
    "work": ("travail", "bureau", "projet", "équipe", "client", "réunion", "professionnel",
             "work", "office", "project", "team", "meeting", "deadline"),
    "learning": ("apprendre", "étudier", "formation", "cours", "lecture", "découverte",
                 "learn", "study", "course", "reading", "lesson"),
    "creative": ("idée", "créer", "inspiration", "art", "design", "musique", "écriture",
                 "idea", "create", "music", "writing"),
    "health": ("santé", "médecin", "sport", "exercice", "bien-être", "nutrition",
               "health", "doctor", "exercise", "workout", "sleep"),
    "travel": ("voyage", "vacances", "découvrir", "pays", "culture", "aventure",
               "travel", "trip", "holiday", "vacation", "flight"),
    "technology": ("tech", "ordinateur", "application", "code", "digital", "innovation",
                   "computer", "software", "app"),
    "finance": ("argent", "budget", "investir", "économie", "dépense", "revenus",
                "money", "invest", "expense", "income", "savings"),
}
DEFAULT_CATEGORY = "general"

EMOTIONS: dict[str, tuple[str, ...]] = {
    "joyful": ("heureux", "heureuse", "joie", "content", "ravi", "super", "génial", "happy", "glad", "great"),
    "sad": ("triste", "déprimé", "mélancolique", "down", "sad", "unhappy"),
    "excited": ("excité", "enthousiaste", "motivé", "énergique", "excited", "thrilled", "motivated"),
    "calm": ("calme", "serein", "paisible", "tranquille", "calm", "peaceful", "relaxed"),
    "stressed": ("stress", "stressé", "anxieux", "nerveux", "tendu", "stressed", "anxious", "nervous"),
}

POSITIVE_WORDS = frozenset(
    "bien bon bonne super génial parfait excellent good great perfect excellent happy love".split()
)
NEGATIVE_WORDS = frozenset(
    "mal mauvais nul horrible terrible catastrophe bad awful terrible horrible sad hate".split()
)

CONTRADICTORY_PAIRS = (
    ("oui", "non"),
    ("yes", "no"),
    ("vrai", "faux"),
    ("true", "false"),
    ("possible", "impossible"),
    ("correct", "incorrect"),
)


def _keyword_pattern(keywords: Sequence[str]) -> re.Pattern:
    alternation = "|".join(re.escape(k) for k in sorted(keywords, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternation})\b")


_CATEGORY_PATTERNS = {name: _keyword_pattern(kw) for name, kw in CATEGORIES.items()}
_EMOTION_PATTERNS = {name: _keyword_pattern(kw) for name, kw in EMOTIONS.items()}


def _stable_hash(term: str, seed: int) -> int:
    """Process-independent hash; Python's hash() is salted per run."""
    digest = hashlib.blake2b(
        term.encode("utf-8"),
        digest_size=8,
        person=f"echovault-{seed}".encode("utf-8"),
    ).digest()
    return int.from_bytes(digest, "big")


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_SPLIT.split(text) if s.strip()]


class LocalInferenceEngine:
    """
    Synchronous local models with per-capability result caches.

    Nothing here touches the network. Summaries and categories degrade to
    naive defaults instead of raising.
    """

    def __init__(self, cache_enabled: bool = True, max_cache_size: int = 256):
        self.cache_enabled = cache_enabled
        self.max_cache_size = max_cache_size
        self._caches: dict[str, dict[str, Any]] = {
            "summarize": {},
            "embed": {},
            "categorize": {},
            "answerability": {},
        }

    # =========================================================================
    # Result caches
    # =========================================================================

    def _cache_key(self, operation: str, text: str, options: dict[str, Any]) -> str:
        payload = json.dumps(options, sort_keys=True, default=str)
        raw = f"{operation}|{text[:500]}|{len(text)}|{payload}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def _cache_get(self, operation: str, key: str) -> Optional[Any]:
        if not self.cache_enabled:
            return None
        return self._caches[operation].get(key)

    def _cache_put(self, operation: str, key: str, value: Any) -> None:
        if not self.cache_enabled:
            return
        cache = self._caches[operation]
        if len(cache) >= self.max_cache_size:
            # Remove oldest entry (simple FIFO)
            oldest = next(iter(cache))
            del cache[oldest]
        cache[key] = value

    def clear_cache(self) -> None:
        for cache in self._caches.values():
            cache.clear()

    def cache_sizes(self) -> dict[str, int]:
        return {name: len(cache) for name, cache in self._caches.items()}

    # =========================================================================
    # Summarize
    # =========================================================================

    def summarize(
        self,
        text: str,
        max_length: int = 150,
        style: SummaryStyle = SummaryStyle.CONCISE,
        min_quality: float = 0.5,
        language: str = "auto",
    ) -> SummaryResult:
        """
        Extractive summary bounded by `max_length` characters.

        Args:
            text: Text to summarize.
            max_length: Hard upper bound on the summary length.
            style: concise, detailed, or bulleted.
            min_quality: Validation score below which the literal
                truncation fallback is used.
            language: "en" weights sentence position less than other languages.

        Returns:
            SummaryResult; never raises for string input.
        """
        validate_text(text)
        validate_max_length(max_length)
        style = SummaryStyle(style)
        start = time.perf_counter()

        if not text.strip():
            return SummaryResult(
                text="",
                confidence=0.0,
                model=SUMMARY_MODEL,
                validation_score=0.0,
                fallback_reason="empty_input",
            )

        options = {"max_length": max_length, "style": style.value, "min_quality": min_quality, "language": language}
        key = self._cache_key("summarize", text, options)
        cached = self._cache_get("summarize", key)
        if cached is not None:
            return cached

        try:
            result = self._summarize(text, max_length, style, min_quality, language)
        except Exception as e:
            logger.error("local summarization failed, using fallback: %s", e)
            result = self._fallback_summary(normalize_text(text), max_length, f"error: {e}")

        result.processing_time_ms = (time.perf_counter() - start) * 1000
        self._cache_put("summarize", key, result)
        return result

    def _summarize(
        self,
        text: str,
        max_length: int,
        style: SummaryStyle,
        min_quality: float,
        language: str,
    ) -> SummaryResult:
        clean = normalize_text(text)
        sentences = [
            s for s in split_sentences(clean)
            if len(s) > 10 and s[-1] in ".!?…"
        ]
        if not sentences:
            return self._fallback_summary(clean, max_length, "no_sentences")

        keywords = self._top_keywords(clean)
        scored = [
            (self._score_sentence(s, i, sentences, keywords, language), i, s)
            for i, s in enumerate(sentences)
        ]
        scored.sort(key=lambda item: item[0], reverse=True)

        selected: list[tuple[int, str]] = []
        length = 0
        for _, index, sentence in scored:
            if length + len(sentence) <= max_length:
                selected.append((index, sentence))
                length += len(sentence) + 1
            if len(selected) >= 3 and length > max_length * 0.8:
                break

        if not selected:
            return self._fallback_summary(clean, max_length, "no_sentence_fits")

        selected.sort()
        summary = self._format_summary([s for _, s in selected], style, max_length)

        validation = self._validate_summary(clean, summary, keywords)
        if validation < min_quality:
            return self._fallback_summary(
                clean,
                max_length,
                f"quality_below_threshold ({validation:.2f} < {min_quality:.2f})",
                validation_score=validation,
            )

        return SummaryResult(
            text=summary,
            confidence=min(0.9, 0.5 + validation * 0.4),
            model=SUMMARY_MODEL,
            validation_score=validation,
        )

    def _top_keywords(self, text: str, limit: int = 10) -> set[str]:
        counts = Counter(t for t in terms(text, min_length=4) if t not in STOPWORDS)
        return {term for term, _ in counts.most_common(limit)}

    def _score_sentence(
        self,
        sentence: str,
        index: int,
        sentences: list[str],
        keywords: set[str],
        language: str,
    ) -> float:
        total = len(sentences)
        sentence_words = words(sentence)
        sentence_terms = [w for w in sentence_words if len(w) > 2]

        # Position: openings and closings carry the gist
        relative = index / max(1, total - 1)
        if relative < 0.3:
            position = 1.0
        elif relative > 0.7:
            position = 0.7
        else:
            position = 0.4
        position_weight = 0.15 if language == "en" else 0.20

        avg_length = sum(len(s) for s in sentences) / total
        length = 1.0 - min(1.0, abs(1.0 - len(sentence) / max(1.0, avg_length)))

        hits = sum(1 for t in sentence_terms if t in keywords)
        keyword = min(1.0, 2.0 * hits / max(1, len(sentence_terms)))
        if any(w in IMPORTANCE_MARKERS for w in sentence_words):
            keyword = min(1.0, keyword + 0.2)

        informativeness = len(set(sentence_terms)) / max(1, len(sentence_words))

        coherence = 0.5
        if sentence_words and sentence_words[0] in TRANSITION_WORDS:
            coherence += 0.3
        if sentence.count("(") == sentence.count(")") and sentence.count('"') % 2 == 0:
            coherence += 0.2

        score = (
            position * position_weight
            + length * 0.25
            + keyword * 0.30
            + informativeness * 0.20
            + min(coherence, 1.0) * 0.10
        )

        avg_word_length = sum(len(w) for w in sentence_words) / max(1, len(sentence_words))
        if min(1.0, avg_word_length / 8) > 0.8:
            score *= 0.9
        if len(sentence_words) < 5:
            score *= 0.5
        return score

    def _format_summary(self, sentences: list[str], style: SummaryStyle, max_length: int) -> str:
        if style == SummaryStyle.BULLETED:
            summary = "\n".join(f"• {s}" for s in sentences)
        else:
            summary = " ".join(sentences)
        return truncate(summary, max_length)

    def _validate_summary(self, original: str, summary: str, keywords: set[str]) -> float:
        summary_terms = set(terms(summary, min_length=4))
        coverage = len(keywords & summary_terms) / len(keywords) if keywords else 0.5

        parts = split_sentences(summary.replace("• ", ""))
        complete = sum(1 for p in parts if p.rstrip()[-1:] in ".!?…")
        coherence = complete / len(parts) if parts else 0.0

        ratio = len(summary) / max(1, len(original))
        compression = 1.0 if 0.1 <= ratio <= 0.5 else 0.5

        stripped = summary.lstrip("• ")
        structure = 1.0 if stripped[:1].isupper() and summary.rstrip()[-1:] in ".!?…" else 0.5

        return coverage * 0.4 + coherence * 0.3 + compression * 0.2 + structure * 0.1

    def _fallback_summary(
        self,
        text: str,
        max_length: int,
        reason: str,
        validation_score: Optional[float] = None,
    ) -> SummaryResult:
        summary = ""
        for sentence in split_sentences(text):
            candidate = f"{summary} {sentence}".strip() if summary else sentence
            if len(candidate) > max_length:
                break
            summary = candidate
        if not summary:
            summary = truncate(text, max_length)
        return SummaryResult(
            text=summary,
            confidence=FALLBACK_CONFIDENCE,
            model=SUMMARY_MODEL,
            validation_score=validation_score,
            fallback_reason=reason,
        )

    # =========================================================================
    # Embed
    # =========================================================================

    def embed(
        self,
        text: str,
        dimensions: int = DEFAULT_DIMENSIONS,
        model: str = EMBEDDING_MODEL,
    ) -> EmbeddingResult:
        """
        Deterministic hashed TF-IDF vector, L2-normalized.

        Each term lands in three buckets (weights 0.6/0.3/0.1) and, when longer
        than four characters, its stem adds a fourth lower-weight bucket.
        """
        validate_text(text)
        validate_dimensions(dimensions)
        start = time.perf_counter()

        options = {"dimensions": dimensions, "model": model}
        key = self._cache_key("embed", text, options)
        cached = self._cache_get("embed", key)
        if cached is not None:
            return cached

        term_list = terms(text)
        if not term_list:
            return EmbeddingResult(
                vector=[0.0] * dimensions,
                confidence=0.0,
                dimensions=dimensions,
                model=model,
                processing_time_ms=(time.perf_counter() - start) * 1000,
            )

        vector = [0.0] * dimensions
        counts = Counter(term_list)
        total = len(term_list)
        for term, count in counts.items():
            tf = count / total
            vector[_stable_hash(term, 1) % dimensions] += tf * 0.6
            vector[_stable_hash(term, 2) % dimensions] += tf * 0.3
            vector[_stable_hash(term, 3) % dimensions] += tf * 0.1
            if len(term) > 4:
                vector[_stable_hash(term[:-1], 4) % dimensions] += tf * 0.2

        magnitude = math.sqrt(sum(v * v for v in vector))
        if magnitude > 0:
            vector = [v / magnitude for v in vector]
        normalized_magnitude = math.sqrt(sum(v * v for v in vector))

        diversity = len(counts) / total
        confidence = 0.5 + diversity * 0.3
        if 20 <= len(text) <= 1000:
            confidence += 0.2
        if normalized_magnitude > 0.1:
            confidence += 0.2

        result = EmbeddingResult(
            vector=vector,
            confidence=min(0.95, confidence),
            dimensions=dimensions,
            model=model,
            processing_time_ms=(time.perf_counter() - start) * 1000,
        )
        self._cache_put("embed", key, result)
        return result

    # =========================================================================
    # Categorize
    # =========================================================================

    def categorize(self, text: str) -> CategorizationResult:
        """Keyword-bucket category, tags, dominant emotion, and naive sentiment."""
        validate_text(text)
        if not text.strip():
            return CategorizationResult(category=DEFAULT_CATEGORY, confidence=0.0)

        key = self._cache_key("categorize", text, {})
        cached = self._cache_get("categorize", key)
        if cached is not None:
            return cached

        try:
            result = self._categorize(text)
        except Exception as e:
            logger.error("local categorization failed, using defaults: %s", e)
            result = CategorizationResult(category=DEFAULT_CATEGORY, confidence=0.1)

        self._cache_put("categorize", key, result)
        return result

    def _categorize(self, text: str) -> CategorizationResult:
        normalized = text.lower()

        scores = {
            name: len(pattern.findall(normalized))
            for name, pattern in _CATEGORY_PATTERNS.items()
        }
        category, best = max(scores.items(), key=lambda item: item[1])
        if best == 0:
            category = DEFAULT_CATEGORY
        confidence = min(0.9, max(0.1, best / 3))

        tags: list[str] = []
        for word in words(normalized):
            if len(word) > 3 and word not in STOPWORDS and word not in tags:
                tags.append(word)
            if len(tags) == 5:
                break

        emotion = None
        best_emotion = 0
        for name, pattern in _EMOTION_PATTERNS.items():
            emotion_score = len(set(pattern.findall(normalized)))
            if emotion_score > best_emotion:
                best_emotion = emotion_score
                emotion = name

        tokens = words(normalized)
        positive = sum(1 for w in tokens if w in POSITIVE_WORDS)
        negative = sum(1 for w in tokens if w in NEGATIVE_WORDS)
        polarity = max(-1.0, min(1.0, (positive - negative) / max(1, positive + negative)))

        return CategorizationResult(
            category=category,
            confidence=confidence,
            tags=tags,
            emotion=emotion,
            sentiment=polarity if abs(polarity) > 0.1 else None,
        )

    # =========================================================================
    # Answerability
    # =========================================================================

    def assess_answerability(self, query: str, chunks: Sequence[Chunk]) -> AnswerabilityResult:
        """
        Decide whether `chunks` hold enough evidence to answer `query`.

        overall = 0.5 * evidence + 0.3 * coverage + 0.2 * coherence;
        answerable when overall >= 0.6.
        """
        validate_text(query, name="query")
        query_terms = content_terms(query)

        if not chunks:
            return AnswerabilityResult(
                can_answer=False,
                confidence=0.9,
                reasoning="no relevant content found",
                evidence_score=0.0,
                coverage_score=0.0,
                coherence_score=0.0,
                missing_concepts=query_terms,
            )

        if not query_terms:
            return AnswerabilityResult(
                can_answer=False,
                confidence=0.0,
                reasoning="query has no meaningful terms",
                evidence_score=0.0,
                coverage_score=0.0,
                coherence_score=0.0,
            )

        options = {"chunks": [(c.id, c.score, c.content) for c in chunks]}
        key = self._cache_key("answerability", query, options)
        cached = self._cache_get("answerability", key)
        if cached is not None:
            return cached

        chunk_terms = [set(words(c.content)) for c in chunks]
        query_set = set(query_terms)

        evidence_total = 0.0
        for chunk, present in zip(chunks, chunk_terms):
            fraction = len(query_set & present) / len(query_set)
            evidence_total += fraction * min(1.0, max(0.0, chunk.score))
        evidence = min(1.0, evidence_total / len(chunks))

        found = set().union(*chunk_terms) & query_set
        coverage = len(found) / len(query_set)

        coherence = 1.0
        for first, second in CONTRADICTORY_PAIRS:
            for a, b in combinations(chunk_terms, 2):
                if (first in a and second in b) or (second in a and first in b):
                    coherence -= 0.2
                    break
        coherence = max(0.0, coherence)

        overall = evidence * 0.5 + coverage * 0.3 + coherence * 0.2
        can_answer = overall >= ANSWERABILITY_THRESHOLD
        missing = [t for t in query_terms if t not in found]

        reasons = [
            f"evidence {evidence:.2f}",
            f"coverage {coverage:.2f}",
            f"coherence {coherence:.2f}",
        ]
        verdict = "answerable" if can_answer else "insufficient context"
        result = AnswerabilityResult(
            can_answer=can_answer,
            confidence=round(overall, 4),
            reasoning=f"{verdict}: {', '.join(reasons)}",
            evidence_score=evidence,
            coverage_score=coverage,
            coherence_score=coherence,
            missing_concepts=[] if can_answer else missing,
        )
        self._cache_put("answerability", key, result)
        return result


def summarize_local(text: str, **options: Any) -> SummaryResult:
    """One-shot summary with a fresh engine."""
    return LocalInferenceEngine(cache_enabled=False).summarize(text, **options)


def embed_local(text: str, **options: Any) -> EmbeddingResult:
    """One-shot local embedding with a fresh engine."""
    return LocalInferenceEngine(cache_enabled=False).embed(text, **options)


def categorize_local(text: str) -> CategorizationResult:
    """One-shot categorization with a fresh engine."""
    return LocalInferenceEngine(cache_enabled=False).categorize(text)


def assess_answerability(query: str, chunks: Sequence[Chunk]) -> AnswerabilityResult:
    """One-shot answerability check with a fresh engine."""
    return LocalInferenceEngine(cache_enabled=False).assess_answerability(query, chunks)
