"""
Basic usage examples for EchoVault.

Everything here runs offline: remote calls go to MockProvider.
"""

from echovault import (
    ComplexityClassifier,
    CostGovernor,
    EmbeddingCache,
    Gateway,
    HybridProcessor,
    InMemoryStorage,
    LocalInferenceEngine,
    MockProvider,
    ValidationError,
    retrieve,
)


NOTES = [
    {"id": "n1", "title": "Rappel réunion", "content": "Réunion d'équipe demain à 10h au bureau, salle B."},
    {"id": "n2", "title": "Courses", "content": "Acheter du pain, du lait et des pommes."},
    {"id": "n3", "title": "Projet", "content": "La migration de la base est finie. Démo client jeudi."},
]


def example_classify():
    """Deciding local vs remote."""
    print("=" * 60)
    print("Example 1: Complexity")
    print("=" * 60)

    classifier = ComplexityClassifier()
    for text in ("Rappel: réunion demain à 10h", NOTES[2]["content"] * 20):
        score = classifier.classify(text)
        print(f"{score.score:.2f} -> {score.suggested_tier.value}: {score.reasoning}")
    print()


def example_local():
    """Free local inference."""
    print("=" * 60)
    print("Example 2: Local Models")
    print("=" * 60)

    engine = LocalInferenceEngine()
    note = " ".join(n["content"] for n in NOTES)

    summary = engine.summarize(note, max_length=80)
    print(f"Summary: {summary.text} ({summary.confidence:.2f})")

    category = engine.categorize(NOTES[0]["content"])
    print(f"Category: {category.category}, tags: {category.tags}")

    embedding = engine.embed(note, dimensions=32)
    print(f"Embedding: {embedding.dimensions} dims, first={embedding.vector[0]:+.3f}")
    print()


def example_retrieval():
    """Finding context in notes."""
    print("=" * 60)
    print("Example 3: Retrieval")
    print("=" * 60)

    result = retrieve("réunion demain", NOTES)
    print(f"Pipeline: {result.optimization_applied}")
    for chunk in result.chunks:
        print(f"  {chunk.source_id} {chunk.score:.3f} {chunk.content[:50]}")
    print()


def example_gateway():
    """Budgeted remote calls with caching."""
    print("=" * 60)
    print("Example 4: Gateway and Budgets")
    print("=" * 60)

    governor = CostGovernor(InMemoryStorage(), default_daily_limit_usd=0.01)
    gateway = Gateway(MockProvider(['{"answer": "Mardi", "confidence": 0.9}']), governor)

    payload = {"task": {"type": "chat", "input": "Quel jour est la démo ?"}}
    first = gateway.handle(payload, user_id="user_1")
    second = gateway.handle(payload, user_id="user_1")

    print(f"First:  cost=${first['cost_usd']:.6f} cache_hit={first['cache_hit']}")
    print(f"Second: cost=${second['cost_usd']:.6f} cache_hit={second['cache_hit']}")
    print(f"Remaining today: ${governor.remaining('user_1'):.6f}")

    try:
        gateway.handle({"task": {"type": "translate", "input": "x"}})
    except ValidationError as e:
        print(f"Validation error caught: {e}")
    print()


def example_hybrid():
    """Local first, remote only when needed."""
    print("=" * 60)
    print("Example 5: Hybrid Processing")
    print("=" * 60)

    governor = CostGovernor(InMemoryStorage())
    processor = HybridProcessor(
        engine=LocalInferenceEngine(),
        classifier=ComplexityClassifier(),
        gateway=Gateway(MockProvider(), governor),
        embedding_cache=EmbeddingCache(),
        user_id="user_1",
    )

    result = processor.answer("réunion demain", NOTES)
    print(f"Answer ({result.tier.value}): {result.output['answer']}")
    print(f"Sources: {result.output['sources']}, cost=${result.cost_usd:.6f}")

    result = processor.summarize("ok ok ok")
    print(f"Weak note summary ({result.tier.value}, escalated={result.escalated})")
    print()


if __name__ == "__main__":
    example_classify()
    example_local()
    example_retrieval()
    example_gateway()
    example_hybrid()

    print("All examples completed!")
