"""
Data schemas for EchoVault.

Inputs, scores, and results exchanged between the classifier, the local
engine, the retrieval pipeline, the governor, and the gateway.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Optional


class Origin(str, Enum):
    """Where a piece of text came from."""
    QUERY = "query"
    DOCUMENT = "document"
    TRANSCRIPT = "transcript"


class Tier(str, Enum):
    """Execution path for an operation."""
    LOCAL = "local"    # zero marginal cost
    REMOTE = "remote"  # paid


class UserTier(str, Enum):
    """Subscription level of a user."""
    FREE = "free"
    PRO = "pro"


class Priority(str, Enum):
    """Caller-assigned priority for a remote operation."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SuggestedAction(str, Enum):
    """What the governor recommends doing with a request."""
    PROCEED = "proceed"
    DEFER = "defer"
    DENY = "deny"


class SummaryStyle(str, Enum):
    """Output formatting for local summaries."""
    CONCISE = "concise"
    DETAILED = "detailed"
    BULLETED = "bulleted"


class TaskType(str, Enum):
    """Operations accepted by the gateway."""
    CHAT = "chat"
    EMBED = "embed"


@dataclass(frozen=True)
class TextUnit:
    """Input string tagged with its origin."""
    text: str
    origin: Origin = Origin.QUERY


@dataclass
class ClassificationContext:
    """Optional context that nudges the complexity score."""
    has_audio: bool = False
    duration_seconds: float = 0.0
    previous_messages: int = 0
    user_tier: UserTier = UserTier.FREE


@dataclass(frozen=True)
class ComplexityFactors:
    """Normalized factor values, each in [0, 1]."""
    length: float
    domain_term_density: float
    affect_density: float
    multilingual: float
    context_weight: float


@dataclass(frozen=True)
class ComplexityScore:
    """
    Output of the complexity classifier.

    `reasoning` is for observability only.
    """
    score: float
    factors: ComplexityFactors
    suggested_tier: Tier
    reasoning: str


@dataclass
class SummaryResult:
    """Local summarization output."""
    text: str
    confidence: float
    model: str
    processing_time_ms: float = 0.0
    validation_score: Optional[float] = None
    fallback_reason: Optional[str] = None


@dataclass
class EmbeddingResult:
    """Local embedding output."""
    vector: list[float]
    confidence: float
    dimensions: int
    model: str
    processing_time_ms: float = 0.0


@dataclass
class CategorizationResult:
    """Local categorization output."""
    category: str
    confidence: float
    tags: list[str] = field(default_factory=list)
    emotion: Optional[str] = None
    sentiment: Optional[float] = None  # -1.0 to 1.0


@dataclass
class Chunk:
    """Bounded excerpt of corpus content assembled for an answer."""
    id: str
    content: str
    score: float
    source_id: str
    title: str = ""


@dataclass
class AnswerabilityResult:
    """Whether a set of chunks can answer a query."""
    can_answer: bool
    confidence: float
    reasoning: str
    evidence_score: float
    coverage_score: float
    coherence_score: float = 1.0
    missing_concepts: list[str] = field(default_factory=list)


@dataclass
class CorpusDocument:
    """A note or voice memory from the user's corpus."""
    id: str
    title: str
    content: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class SearchHit:
    """Scored match from the local vector search."""
    id: str
    title: str
    score: float
    excerpt: str


@dataclass
class RetrievalOptions:
    """Tuning knobs for the retrieval pipeline."""
    top_k: int = 4
    max_chunk_tokens: int = 180
    excerpt_chars: int = 600
    enable_deduplication: bool = True
    enable_reranking: bool = True
    dedup_threshold: float = 0.8


@dataclass
class RetrievalResult:
    """Chunks selected for a query, plus what the pipeline did."""
    chunks: list[Chunk]
    processing_time_ms: float
    total_tokens: int
    optimization_applied: list[str] = field(default_factory=list)


@dataclass
class CostDecision:
    """Typed allow/defer/deny answer from the governor."""
    allowed: bool
    suggested_action: SuggestedAction
    estimated_cost_usd: float
    remaining_usd: float
    reason: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    reservation: Optional["BudgetReservation"] = None


@dataclass
class BudgetReservation:
    """Budget held for an admitted request until it is settled or released."""
    user_id: str
    date: str
    amount_usd: float
