"""
Retrieval pipeline for EchoVault.

Builds a ranked, deduplicated, size-bounded set of chunks for a query:

    search (TF-IDF + title/phrase bonuses) -> top K*2 -> Jaccard dedup
    -> optional re-rank -> chunk cleanup -> top K
"""

import logging
import math
import re
import time
from collections import Counter
from typing import Any, Iterable, Mapping, Optional, Union

from echovault.schemas import (
    Chunk,
    CorpusDocument,
    RetrievalOptions,
    RetrievalResult,
    SearchHit,
)
from echovault.text import estimate_tokens, jaccard, normalize_whitespace, terms, truncate
from echovault.local_models import split_sentences


logger = logging.getLogger("echovault.retrieval")


TITLE_BONUS = 0.5
PHRASE_BONUS = 1.0
NO_RESULTS = "no-results"

FILLER_PATTERN = re.compile(
    r"\b(?:euh|hein|donc|en fait|tu vois|voilà|um|uh|you know|i mean)\b[,]?\s*",
    re.IGNORECASE,
)

DocumentLike = Union[CorpusDocument, Mapping[str, Any]]


def _as_document(item: DocumentLike) -> CorpusDocument:
    if isinstance(item, CorpusDocument):
        return item
    kwargs = {
        "id": str(item["id"]),
        "title": item.get("title") or "",
        "content": item.get("content") or "",
    }
    if item.get("created_at") is not None:
        kwargs["created_at"] = item["created_at"]
    return CorpusDocument(**kwargs)


def _excerpt(content: str, query_terms: list[str], size: int) -> str:
    """Window of `size` chars around the first matched term, with a short lead-in."""
    lowered = content.lower()
    positions = [lowered.find(t) for t in query_terms if lowered.find(t) >= 0]
    if not positions:
        return content[:size]
    start = max(0, min(positions) - 50)
    return content[start:start + size]


def local_vector_search(
    query: str,
    documents: Iterable[DocumentLike],
    max_results: int = 5,
    excerpt_chars: int = 150,
) -> list[SearchHit]:
    """
    TF-IDF style scoring over query terms.

    Adds TITLE_BONUS for each term found in the title and PHRASE_BONUS when
    the whole query appears verbatim. Only positive scores are returned.
    """
    corpus = [_as_document(d) for d in documents]
    query_terms = list(dict.fromkeys(terms(query)))
    if not corpus or not query_terms:
        return []

    texts = [f"{d.title} {d.content}".lower() for d in corpus]
    n_docs = len(corpus)
    phrase = normalize_whitespace(query.lower())

    doc_freq = Counter()
    for text in texts:
        for term in query_terms:
            if term in text:
                doc_freq[term] += 1

    hits = []
    for doc, text in zip(corpus, texts):
        length = max(1, len(text.split()))
        score = 0.0
        for term in query_terms:
            count = text.count(term)
            if not count:
                continue
            tf = count / length
            idf = math.log(1 + n_docs / doc_freq[term])
            score += tf * idf
            if term in doc.title.lower():
                score += TITLE_BONUS
        if phrase and phrase in text:
            score += PHRASE_BONUS
        if score > 0:
            hits.append(SearchHit(
                id=doc.id,
                title=doc.title,
                score=score,
                excerpt=_excerpt(doc.content, query_terms, excerpt_chars),
            ))

    hits.sort(key=lambda h: h.score, reverse=True)
    return hits[:max_results]


def deduplicate(chunks: list[Chunk], threshold: float = 0.8) -> list[Chunk]:
    """Keep the first of any group of chunks with Jaccard similarity >= threshold."""
    kept: list[Chunk] = []
    for chunk in chunks:
        if all(jaccard(chunk.content, other.content) < threshold for other in kept):
            kept.append(chunk)
    return kept


def rerank(query: str, chunks: list[Chunk]) -> list[Chunk]:
    """Boost chunks by exact query-term count, term proximity, and sane length."""
    query_terms = list(dict.fromkeys(terms(query)))
    for chunk in chunks:
        content = chunk.content.lower()
        exact = sum(len(re.findall(rf"\b{re.escape(t)}\b", content)) for t in query_terms)

        positions = [content.find(t) for t in query_terms if content.find(t) >= 0]
        if len(positions) > 1:
            proximity = 1.0 / (1.0 + (max(positions) - min(positions)) / 100)
        else:
            proximity = 0.0

        length_bonus = 0.1 if 50 <= len(chunk.content) <= 1000 else 0.0
        chunk.score += exact * 0.3 + proximity * 0.2 + length_bonus

    return sorted(chunks, key=lambda c: c.score, reverse=True)


def optimize_chunk(content: str, max_chars: int) -> str:
    """Drop repeated lines and filler words, then cut on sentence boundaries."""
    if len(content) <= max_chars:
        return content

    seen = set()
    lines = []
    for line in content.splitlines():
        key = line.strip().lower()
        if key and key in seen:
            continue
        seen.add(key)
        lines.append(line)
    cleaned = normalize_whitespace(FILLER_PATTERN.sub("", "\n".join(lines)))
    if len(cleaned) <= max_chars:
        return cleaned

    result = ""
    for sentence in split_sentences(cleaned):
        candidate = f"{result} {sentence}".strip() if result else sentence
        if len(candidate) > max_chars - 10:
            break
        result = candidate
    if len(result) > 50:
        return result
    return truncate(cleaned, max_chars)


def retrieve(
    query: str,
    corpus: Iterable[DocumentLike],
    options: Optional[RetrievalOptions] = None,
) -> RetrievalResult:
    """
    Assemble the top-K context chunks for `query`.

    An empty corpus or a query with no matches yields no chunks and the
    `no-results` marker in `optimization_applied`.
    """
    options = options or RetrievalOptions()
    start = time.perf_counter()
    documents = [_as_document(d) for d in corpus]

    def _done(chunks: list[Chunk], applied: list[str]) -> RetrievalResult:
        return RetrievalResult(
            chunks=chunks,
            processing_time_ms=(time.perf_counter() - start) * 1000,
            total_tokens=sum(estimate_tokens(c.content) for c in chunks),
            optimization_applied=applied,
        )

    if not documents:
        return _done([], [NO_RESULTS])

    hits = local_vector_search(
        query,
        documents,
        max_results=options.top_k * 2,
        excerpt_chars=options.excerpt_chars,
    )
    if not hits:
        return _done([], [NO_RESULTS])

    applied = ["local-search"]
    chunks = [
        Chunk(
            id=f"{hit.id}:0",
            content=f"{hit.title}: {hit.excerpt}" if hit.title else hit.excerpt,
            score=hit.score,
            source_id=hit.id,
            title=hit.title,
        )
        for hit in hits
    ]

    if options.enable_deduplication:
        before = len(chunks)
        chunks = deduplicate(chunks, options.dedup_threshold)
        if len(chunks) < before:
            applied.append("deduplication")

    if options.enable_reranking:
        chunks = rerank(query, chunks)
        applied.append("reranking")

    max_chars = options.max_chunk_tokens * 4
    for chunk in chunks:
        optimized = optimize_chunk(chunk.content, max_chars)
        if optimized != chunk.content:
            chunk.content = optimized
            if "chunk-optimization" not in applied:
                applied.append("chunk-optimization")

    chunks = chunks[:options.top_k]
    logger.debug("retrieved %d chunks for query (%s)", len(chunks), ", ".join(applied))
    return _done(chunks, applied)
