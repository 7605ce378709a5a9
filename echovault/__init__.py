"""
EchoVault - answer questions from your notes without overspending on LLMs.

Local first:
    from echovault import ComplexityClassifier, LocalInferenceEngine

    score = ComplexityClassifier().classify("Rappel: réunion demain à 10h")
    print(score.suggested_tier)   # Tier.LOCAL

    engine = LocalInferenceEngine()
    print(engine.summarize(long_note).text)

Retrieval:
    from echovault import retrieve

    result = retrieve("réunion demain", notes)
    print([c.source_id for c in result.chunks])

Budgets and the gateway:
    from echovault import CostGovernor, Gateway, OpenAIProvider, SQLiteStorage

    governor = CostGovernor(SQLiteStorage("echovault.db"))
    gateway = Gateway(OpenAIProvider(), governor)
    gateway.handle({"task": {"type": "chat", "input": "Plan my week"}}, user_id="u1")
"""

from echovault.config import get_pricing, set_pricing, get_models, set_models
from echovault.schemas import (
    Chunk,
    ClassificationContext,
    ComplexityScore,
    CorpusDocument,
    CostDecision,
    Origin,
    Priority,
    RetrievalOptions,
    RetrievalResult,
    SuggestedAction,
    SummaryStyle,
    TaskType,
    TextUnit,
    Tier,
    UserTier,
)
from echovault.classifier import ComplexityClassifier, force_tier
from echovault.local_models import (
    LocalInferenceEngine,
    summarize_local,
    embed_local,
    categorize_local,
    assess_answerability,
)
from echovault.embedding_cache import (
    EmbeddingCache,
    CacheRepository,
    InMemoryCacheRepository,
    JSONFileCacheRepository,
)
from echovault.retrieval import retrieve, local_vector_search
from echovault.storage import InMemoryStorage, SQLiteStorage, CacheStoreError
from echovault.governor import CostGovernor
from echovault.escalation import EscalationPolicy
from echovault.providers import (
    LLMProvider,
    MockProvider,
    OpenAIProvider,
    AnthropicProvider,
    RemoteCallError,
)
from echovault.gateway import Gateway, GatewayTask, TaskResult, fingerprint
from echovault.hybrid import HybridProcessor, HybridResult, validate_local_result
from echovault.metrics import MetricsCollector
from echovault.validation import ValidationError


def classify(text, context=None) -> ComplexityScore:
    """Score text with a default classifier."""
    return ComplexityClassifier().classify(text, context)


__version__ = "0.3.0"
