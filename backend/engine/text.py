"""Text helpers shared by the index, ranker and consolidator."""

import math
import re
from typing import Iterable, List, Set

_NON_WORD_PATTERN = re.compile(r"[^\w\s]")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_FINGERPRINT_WORD_PATTERN = re.compile(r"\w+")


def tokenize(text: str) -> List[str]:
    """Index tokens: lowercase, punctuation stripped, length > 1."""
    cleaned = _NON_WORD_PATTERN.sub(" ", (text or "").lower())
    return [token for token in cleaned.split() if len(token) > 1]


def similarity_tokens(text: str) -> Set[str]:
    return {token for token in (text or "").lower().split() if len(token) > 2}


def jaccard_similarity(a: str, b: str) -> float:
    tokens_a = similarity_tokens(a)
    tokens_b = similarity_tokens(b)
    if not tokens_a and not tokens_b:
        return 0.0
    union = tokens_a | tokens_b
    return len(tokens_a & tokens_b) / len(union)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / 4)


def content_fingerprint(text: str) -> str:
    """Topic fingerprint: the ten longest distinct words (length > 3), sorted."""
    words = {
        word
        for word in _FINGERPRINT_WORD_PATTERN.findall((text or "").lower())
        if len(word) > 3
    }
    longest = sorted(words, key=lambda word: (-len(word), word))[:10]
    return "|".join(sorted(longest))


def snippet(text: str, limit: int = 80) -> str:
    cleaned = _WHITESPACE_PATTERN.sub(" ", (text or "").strip())
    if len(cleaned) <= limit:
        return cleaned
    return cleaned[: max(8, limit - 3)].rstrip() + "..."


def contains_phrase(text: str, phrase: str) -> bool:
    """Whole-word, case-insensitive containment."""
    if not phrase or not text:
        return False
    pattern = r"(?<!\w)" + re.escape(phrase.lower()) + r"(?!\w)"
    return re.search(pattern, text.lower()) is not None


def cosine_similarity(v1: Iterable[float], v2: Iterable[float]) -> float:
    a = list(v1 or [])
    b = list(v2 or [])
    length = min(len(a), len(b))
    if length == 0:
        return 0.0
    dot = sum(a[i] * b[i] for i in range(length))
    norm_a = math.sqrt(sum(a[i] * a[i] for i in range(length)))
    norm_b = math.sqrt(sum(b[i] * b[i] for i in range(length)))
    if norm_a <= 0 or norm_b <= 0:
        return 0.0
    return float(dot / (norm_a * norm_b))
