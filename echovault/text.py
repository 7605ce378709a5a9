"""Text helpers shared by the classifier, the local engine, and retrieval."""

import re
import unicodedata


STOPWORDS = frozenset(
    # French
    "le la les un une des du de et ou mais donc car ni que qui quoi dont où "
    "ce cet cette ces mon ma mes ton ta tes son sa ses notre nos votre vos leur leurs "
    "je tu il elle on nous vous ils elles me te se lui y en ne pas plus "
    "est sont être avoir ai as avons avez ont était été fait faire "
    "dans sur sous avec sans pour par vers chez entre au aux "
    "très bien aussi comme alors tout tous toute toutes "
    # English
    "the a an and or but so if of to in on at by for with from into "
    "is are was were be been being have has had do does did "
    "this that these those it its i you he she we they them his her our your their "
    "what which who whom when where why how not no yes can will would should could "
    "about than then there here also just very all any some".split()
)

_WORD_PATTERN = re.compile(r"[^\W\d_]+")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_CONTROL_PATTERN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_QUOTE_TRANSLATION = str.maketrans({
    "‘": "'", "’": "'", "“": '"', "”": '"',
    "«": '"', "»": '"',
})


def estimate_tokens(text: str) -> int:
    """Rough estimate: ~4 chars per token."""
    return max(1, len(text) // 4)


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE_PATTERN.sub(" ", text).strip()


def normalize_text(text: str) -> str:
    """Unicode-normalize, straighten quotes, strip control chars, collapse whitespace."""
    text = unicodedata.normalize("NFKC", text)
    text = _CONTROL_PATTERN.sub("", text)
    text = text.translate(_QUOTE_TRANSLATION)
    return normalize_whitespace(text)


def words(text: str) -> list[str]:
    """Lowercased alphabetic words, in order."""
    return _WORD_PATTERN.findall(text.lower())


def terms(text: str, min_length: int = 3) -> list[str]:
    """Alphabetic words of at least `min_length` characters."""
    return [w for w in words(text) if len(w) >= min_length]


def content_terms(text: str) -> list[str]:
    """Distinct non-stopword terms longer than two characters, in order."""
    seen: dict[str, None] = {}
    for term in terms(text):
        if term not in STOPWORDS:
            seen.setdefault(term, None)
    return list(seen)


def jaccard(a: str, b: str) -> float:
    """Token-set Jaccard similarity over words longer than two characters."""
    set_a = set(terms(a))
    set_b = set(terms(b))
    if not set_a and not set_b:
        return 1.0
    union = set_a | set_b
    return len(set_a & set_b) / len(union)


def truncate(text: str, limit: int) -> str:
    """Cut to at most `limit` characters, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3].rstrip() + "..."


def compress_text(text: str, max_chars: int = 4000) -> str:
    """Collapse whitespace and keep the head (70%) and tail (30%) of long input."""
    text = normalize_whitespace(text)
    if len(text) <= max_chars:
        return text
    head = int(max_chars * 0.7)
    tail = max_chars - head
    return text[:head] + "\n...\n" + text[-tail:]
