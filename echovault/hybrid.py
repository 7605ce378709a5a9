"""
Hybrid processing for EchoVault.

Caller-side orchestration: classify the input, try the local engine, and
only go through the gateway when the budget allows it and either the local
result is too weak or a pro user sent text that is too complex. Free users
always get a good local result first.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Union

from echovault.classifier import ComplexityClassifier
from echovault.embedding_cache import EmbeddingCache
from echovault.gateway import CHAT_MAX_TOKENS, Gateway, GatewayTask
from echovault.local_models import EMBEDDING_MODEL, LocalInferenceEngine
from echovault.providers import RemoteCallError
from echovault.retrieval import DocumentLike, retrieve
from echovault.schemas import (
    CategorizationResult,
    ClassificationContext,
    ComplexityScore,
    Priority,
    RetrievalOptions,
    SummaryResult,
    SummaryStyle,
    TaskType,
    Tier,
    UserTier,
)
from echovault.text import estimate_tokens


logger = logging.getLogger("echovault.hybrid")


MIN_SUMMARY_CHARS = 20


@dataclass
class HybridResult:
    """Outcome of a hybrid operation."""
    operation: str
    tier: Tier
    output: Any
    confidence: float
    cost_usd: float = 0.0
    complexity: Optional[ComplexityScore] = None
    escalated: bool = False
    fallback_reason: Optional[str] = None
    optimization_applied: list[str] = field(default_factory=list)


def validate_local_result(
    result: Union[SummaryResult, CategorizationResult],
    complexity: ComplexityScore,
) -> bool:
    """
    Whether a local result is good enough to return as is.

    Complex inputs (score > 0.7) need confidence 0.6, others 0.4. Summaries
    shorter than 20 characters are never accepted.
    """
    threshold = 0.6 if complexity.score > 0.7 else 0.4
    if result.confidence < threshold:
        return False
    if isinstance(result, SummaryResult) and len(result.text.strip()) < MIN_SUMMARY_CHARS:
        return False
    return True


def _answer_text(content: str) -> str:
    """Pull the answer out of a JSON reply, or return the raw text."""
    try:
        parsed = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        return content.strip()
    if isinstance(parsed, dict):
        for key in ("answer", "summary", "content", "text"):
            if isinstance(parsed.get(key), str):
                return parsed[key].strip()
    return content.strip()


class HybridProcessor:
    """
    Local-first processing with budget-aware escalation.

    Example:
        ```python
        processor = HybridProcessor(
            engine=LocalInferenceEngine(),
            classifier=ComplexityClassifier(),
            gateway=gateway,
            user_id="user_123",
        )
        result = processor.summarize(transcript)
        ```
    """

    def __init__(
        self,
        engine: LocalInferenceEngine,
        classifier: ComplexityClassifier,
        gateway: Optional[Gateway] = None,
        embedding_cache: Optional[EmbeddingCache] = None,
        user_id: str = "anonymous",
        user_tier: UserTier = UserTier.FREE,
        enable_fallback: bool = True,
        retrieval_options: Optional[RetrievalOptions] = None,
    ):
        self.engine = engine
        self.classifier = classifier
        self.gateway = gateway
        self.embedding_cache = embedding_cache
        self.user_id = user_id
        self.user_tier = UserTier(user_tier)
        self.enable_fallback = enable_fallback
        self.retrieval_options = retrieval_options or RetrievalOptions()

    def _context(self, context: Optional[ClassificationContext]) -> ClassificationContext:
        if context is None:
            return ClassificationContext(user_tier=self.user_tier)
        return context

    def _prefers_local(self, complexity: ComplexityScore) -> bool:
        return self.user_tier == UserTier.FREE or complexity.suggested_tier == Tier.LOCAL

    # =========================================================================
    # Remote path
    # =========================================================================

    def _remote_chat(
        self,
        operation: str,
        system: str,
        prompt: str,
        priority: Priority,
    ) -> tuple[Optional[Any], str]:
        """
        Pre-check the budget and call the gateway.

        Returns (TaskResult or None, reason).
        """
        if self.gateway is None:
            return None, "no_gateway"

        governor = self.gateway.governor
        tokens = estimate_tokens(system + prompt)
        estimated = governor.estimate_cost(self.gateway.models["cheap"], tokens, CHAT_MAX_TOKENS)
        decision = governor.should_proceed(
            operation, tokens + CHAT_MAX_TOKENS, estimated, priority, user_id=self.user_id,
        )
        if not decision.allowed:
            return None, f"budget_{decision.suggested_action.value}"

        task = GatewayTask(type=TaskType.CHAT, input=prompt, system=system, mode=operation, priority=priority)
        try:
            result = self.gateway.process(task, self.user_id)
        except RemoteCallError as e:
            logger.warning("remote %s failed, keeping local result: %s", operation, e)
            return None, f"remote_failed: {e}"
        if not result.ok:
            return None, result.error or "remote_rejected"
        return result, "ok"

    # =========================================================================
    # Operations
    # =========================================================================

    def summarize(
        self,
        text: str,
        context: Optional[ClassificationContext] = None,
        max_length: int = 150,
        style: SummaryStyle = SummaryStyle.CONCISE,
        priority: Priority = Priority.MEDIUM,
    ) -> HybridResult:
        """Summarize locally, escalating weak or complex cases to the gateway."""
        complexity = self.classifier.classify(text, self._context(context))
        local = self.engine.summarize(text, max_length=max_length, style=style)

        # Free users try the local result first even when the input looks complex.
        local_first = self._prefers_local(complexity)
        if local_first and (validate_local_result(local, complexity) or not self.enable_fallback):
            return HybridResult(
                operation="summarize",
                tier=Tier.LOCAL,
                output=local,
                confidence=local.confidence,
                complexity=complexity,
                fallback_reason=local.fallback_reason,
            )

        system = (
            f"Summarize the user's text in at most {max_length} characters. "
            'Reply with JSON {"answer": string, "confidence": number}.'
        )
        remote, reason = self._remote_chat("summarize", system, text, priority)
        if remote is None:
            return HybridResult(
                operation="summarize",
                tier=Tier.LOCAL,
                output=local,
                confidence=local.confidence,
                complexity=complexity,
                fallback_reason=reason,
            )

        summary = SummaryResult(
            text=_answer_text(remote.data["content"]),
            confidence=remote.data["confidence"],
            model=remote.model,
        )
        return HybridResult(
            operation="summarize",
            tier=Tier.REMOTE,
            output=summary,
            confidence=summary.confidence,
            cost_usd=remote.cost_usd,
            complexity=complexity,
            escalated=local_first,
        )

    def categorize(
        self,
        text: str,
        context: Optional[ClassificationContext] = None,
        priority: Priority = Priority.LOW,
    ) -> HybridResult:
        """Categorize locally; ask the gateway only when the local guess is weak."""
        complexity = self.classifier.classify(text, self._context(context))
        local = self.engine.categorize(text)
        if validate_local_result(local, complexity) or not self.enable_fallback:
            return HybridResult(
                operation="categorize",
                tier=Tier.LOCAL,
                output=local,
                confidence=local.confidence,
                complexity=complexity,
            )

        system = (
            "Classify the user's note. Reply with JSON "
            '{"category": string, "tags": [string], "confidence": number}.'
        )
        remote, reason = self._remote_chat("categorize", system, text, priority)
        if remote is None:
            return HybridResult(
                operation="categorize",
                tier=Tier.LOCAL,
                output=local,
                confidence=local.confidence,
                complexity=complexity,
                fallback_reason=reason,
            )

        try:
            parsed = json.loads(remote.data["content"])
        except (json.JSONDecodeError, TypeError):
            parsed = {}
        if not isinstance(parsed, dict):
            parsed = {}
        category = CategorizationResult(
            category=str(parsed.get("category") or local.category),
            confidence=remote.data["confidence"],
            tags=[str(t) for t in parsed.get("tags", local.tags)][:5],
            emotion=local.emotion,
            sentiment=local.sentiment,
        )
        return HybridResult(
            operation="categorize",
            tier=Tier.REMOTE,
            output=category,
            confidence=category.confidence,
            cost_usd=remote.cost_usd,
            complexity=complexity,
            escalated=True,
        )

    def embed(self, text: str) -> HybridResult:
        """Local embedding, served through the embedding cache when one is set."""
        if self.embedding_cache is None:
            result = self.engine.embed(text)
            return HybridResult(
                operation="embed",
                tier=Tier.LOCAL,
                output=result.vector,
                confidence=result.confidence,
            )

        cached = self.embedding_cache.get(text, EMBEDDING_MODEL)
        if cached is not None:
            return HybridResult(
                operation="embed",
                tier=Tier.LOCAL,
                output=cached,
                confidence=1.0,
                optimization_applied=["cache-hit"],
            )
        result = self.engine.embed(text)
        if result.confidence > 0:
            self.embedding_cache.put(text, result.vector, model=EMBEDDING_MODEL)
        return HybridResult(
            operation="embed",
            tier=Tier.LOCAL,
            output=result.vector,
            confidence=result.confidence,
        )

    def answer(
        self,
        query: str,
        corpus: Iterable[DocumentLike],
        context: Optional[ClassificationContext] = None,
        priority: Priority = Priority.HIGH,
    ) -> HybridResult:
        """
        Retrieval-augmented answer.

        The remote model is never called when retrieval finds nothing or the
        chunks cannot answer the query.
        """
        retrieval = retrieve(query, corpus, self.retrieval_options)
        applied = list(retrieval.optimization_applied)
        if not retrieval.chunks:
            return HybridResult(
                operation="answer",
                tier=Tier.LOCAL,
                output={"answer": None, "sources": []},
                confidence=0.0,
                fallback_reason="no-results",
                optimization_applied=applied,
            )

        sources = [c.source_id for c in retrieval.chunks]
        assessment = self.engine.assess_answerability(query, retrieval.chunks)
        applied.append("answerability-check")
        if not assessment.can_answer:
            return HybridResult(
                operation="answer",
                tier=Tier.LOCAL,
                output={
                    "answer": None,
                    "sources": sources,
                    "missing_concepts": assessment.missing_concepts,
                },
                confidence=assessment.confidence,
                fallback_reason="unanswerable",
                optimization_applied=applied,
            )

        complexity = self.classifier.classify(query, self._context(context))
        context_text = "\n".join(f"[{i + 1}] {c.content}" for i, c in enumerate(retrieval.chunks))
        summary = self.engine.summarize(
            " ".join(c.content for c in retrieval.chunks),
            max_length=300,
            style=SummaryStyle.DETAILED,
        )

        local_good = self._prefers_local(complexity) and validate_local_result(summary, complexity)
        if complexity.suggested_tier == Tier.REMOTE and not local_good:
            system = (
                "Answer the question using only the numbered notes. "
                'Reply with JSON {"answer": string, "confidence": number}.'
            )
            prompt = f"Question: {query}\n\nNotes:\n{context_text}"
            remote, reason = self._remote_chat("answer", system, prompt, priority)
            if remote is not None:
                return HybridResult(
                    operation="answer",
                    tier=Tier.REMOTE,
                    output={"answer": _answer_text(remote.data["content"]), "sources": sources},
                    confidence=remote.data["confidence"],
                    cost_usd=remote.cost_usd,
                    complexity=complexity,
                    optimization_applied=applied,
                )
            logger.info("answering locally: %s", reason)

        return HybridResult(
            operation="answer",
            tier=Tier.LOCAL,
            output={"answer": summary.text, "sources": sources},
            confidence=min(summary.confidence, assessment.confidence),
            complexity=complexity,
            fallback_reason=summary.fallback_reason,
            optimization_applied=applied,
        )
