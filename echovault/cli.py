"""
Command-line interface for EchoVault.

Provides commands for:
- Scoring text complexity
- Local summaries, categories, and embeddings
- Searching a JSON corpus of notes
- Inspecting and setting daily budgets
"""

import argparse
import json
import sys
from pathlib import Path

from echovault.classifier import ComplexityClassifier
from echovault.config import get_db_path
from echovault.governor import CostGovernor
from echovault.local_models import LocalInferenceEngine
from echovault.retrieval import retrieve
from echovault.schemas import ClassificationContext, RetrievalOptions, SummaryStyle, UserTier
from echovault.storage import SQLiteStorage


def _read_text(args) -> str:
    if args.text == "-":
        return sys.stdin.read()
    return args.text


def cmd_classify(args):
    """Score the complexity of a text."""
    classifier = ComplexityClassifier()
    context = ClassificationContext(
        has_audio=args.audio,
        duration_seconds=args.duration,
        previous_messages=args.previous_messages,
        user_tier=UserTier(args.tier),
    )
    result = classifier.classify(_read_text(args), context)

    print("\n" + "=" * 60)
    print("ECHOVAULT COMPLEXITY")
    print("=" * 60)
    print(f"Score: {result.score:.2f}")
    print(f"Suggested Tier: {result.suggested_tier.value}")
    print(f"Why: {result.reasoning}")
    print()
    print("-" * 60)
    print("FACTORS")
    print("-" * 60)
    for name, value in result.factors.__dict__.items():
        print(f"  {name:22} {value:.2f}")
    print("=" * 60)


def cmd_summarize(args):
    """Summarize a text with the local engine."""
    engine = LocalInferenceEngine()
    result = engine.summarize(
        _read_text(args),
        max_length=args.max_length,
        style=SummaryStyle(args.style),
    )

    print("\n" + "=" * 60)
    print("ECHOVAULT SUMMARY")
    print("=" * 60)
    print(result.text)
    print()
    print(f"Confidence: {result.confidence:.2f}")
    if result.fallback_reason:
        print(f"Fallback: {result.fallback_reason}")
    print("=" * 60)


def cmd_categorize(args):
    """Categorize a text with the local engine."""
    result = LocalInferenceEngine().categorize(_read_text(args))

    print("\n" + "=" * 60)
    print("ECHOVAULT CATEGORY")
    print("=" * 60)
    print(f"Category: {result.category} ({result.confidence:.2f})")
    print(f"Tags: {', '.join(result.tags) or '-'}")
    print(f"Emotion: {result.emotion or '-'}")
    if result.sentiment is not None:
        print(f"Sentiment: {result.sentiment:+.2f}")
    print("=" * 60)


def cmd_embed(args):
    """Print a local embedding as JSON."""
    result = LocalInferenceEngine().embed(_read_text(args), dimensions=args.dimensions)
    print(json.dumps({
        "model": result.model,
        "dimensions": result.dimensions,
        "confidence": result.confidence,
        "vector": result.vector,
    }))


def cmd_search(args):
    """Retrieve context chunks from a JSON corpus."""
    corpus_path = Path(args.corpus)
    if not corpus_path.exists():
        print(f"Corpus file not found: {corpus_path}")
        sys.exit(1)

    with open(corpus_path, encoding="utf-8") as f:
        documents = json.load(f)

    result = retrieve(args.query, documents, RetrievalOptions(top_k=args.top_k))

    print("\n" + "=" * 60)
    print("ECHOVAULT SEARCH")
    print("=" * 60)
    print(f"Query: {args.query}")
    print(f"Pipeline: {', '.join(result.optimization_applied)}")
    print(f"Tokens: {result.total_tokens}")
    print()
    if not result.chunks:
        print("No matching notes.")
    for i, chunk in enumerate(result.chunks, start=1):
        print("-" * 60)
        print(f"[{i}] {chunk.source_id}  score={chunk.score:.3f}")
        print(chunk.content)
    print("=" * 60)


def cmd_budget(args):
    """Show or set a user's daily budget."""
    storage = SQLiteStorage(db_path=args.db or get_db_path())
    governor = CostGovernor(storage)
    try:
        if args.set_limit is not None:
            governor.set_daily_limit(args.user_id, args.set_limit)
        report = governor.get_user_report(args.user_id)
    finally:
        storage.close()

    print("\n" + "=" * 60)
    print("ECHOVAULT BUDGET")
    print("=" * 60)
    print(f"User: {report['user_id']}")
    print(f"Date: {report['date']}")
    print(f"Daily Limit: ${report['daily_limit_usd']:.4f}")
    print(f"Spent: ${report['spent_usd']:.6f}")
    print(f"Remaining: ${report['remaining_usd']:.6f}")
    print(f"Requests: {report['requests']} "
          f"(cache hits {report['cache_hits']}, denied {report['denied']})")
    if report["cost_by_model"]:
        print()
        print("-" * 60)
        print("COST BY MODEL")
        print("-" * 60)
        for model, cost in sorted(report["cost_by_model"].items(), key=lambda x: -x[1]):
            print(f"  {model:28} ${cost:.6f}")
    print("=" * 60)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="EchoVault: local-first knowledge assistant CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Should this go to a paid model?
  echovault classify "Rappel: réunion demain à 10h"

  # Summarize a long note from stdin
  cat note.txt | echovault summarize - --max-length 200

  # Search notes exported as JSON [{"id", "title", "content"}, ...]
  echovault search "réunion demain" --corpus notes.json

  # Raise a user's daily budget
  echovault budget user_123 --set-limit 1.0
""",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    classify_parser = subparsers.add_parser("classify", help="Score text complexity")
    classify_parser.add_argument("text", help="Text to score, or - for stdin")
    classify_parser.add_argument("--tier", default="free", choices=["free", "pro"],
                                 help="User tier")
    classify_parser.add_argument("--audio", action="store_true",
                                 help="Text is an audio transcript")
    classify_parser.add_argument("--duration", type=float, default=0.0,
                                 help="Audio duration in seconds")
    classify_parser.add_argument("--previous-messages", type=int, default=0,
                                 help="Messages earlier in the conversation")

    sum_parser = subparsers.add_parser("summarize", help="Summarize text locally")
    sum_parser.add_argument("text", help="Text to summarize, or - for stdin")
    sum_parser.add_argument("--max-length", "-m", type=int, default=150,
                            help="Maximum summary length in characters")
    sum_parser.add_argument("--style", "-s", default="concise",
                            choices=["concise", "detailed", "bulleted"])

    cat_parser = subparsers.add_parser("categorize", help="Categorize text locally")
    cat_parser.add_argument("text", help="Text to categorize, or - for stdin")

    embed_parser = subparsers.add_parser("embed", help="Embed text locally")
    embed_parser.add_argument("text", help="Text to embed, or - for stdin")
    embed_parser.add_argument("--dimensions", "-d", type=int, default=384)

    search_parser = subparsers.add_parser("search", help="Search a JSON corpus")
    search_parser.add_argument("query", help="Search query")
    search_parser.add_argument("--corpus", "-c", required=True,
                               help="Path to a JSON list of notes")
    search_parser.add_argument("--top-k", "-k", type=int, default=4)

    budget_parser = subparsers.add_parser("budget", help="Show or set a daily budget")
    budget_parser.add_argument("user_id", help="User to inspect")
    budget_parser.add_argument("--set-limit", type=float,
                               help="New daily limit in USD")
    budget_parser.add_argument("--db", help="SQLite path (default: ECHOVAULT_DB_PATH)")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    commands = {
        "classify": cmd_classify,
        "summarize": cmd_summarize,
        "categorize": cmd_categorize,
        "embed": cmd_embed,
        "search": cmd_search,
        "budget": cmd_budget,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
