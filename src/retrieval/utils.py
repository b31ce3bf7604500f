"""
Text helpers for lexical matching.
"""

from __future__ import annotations

import re
from typing import FrozenSet, Iterable

TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")
TRIGRAM_WORD_RE = re.compile(r"[^\W_]+", re.UNICODE)

STOPWORDS = {
    "the", "a", "an", "and", "or", "of", "in", "on", "for", "to",
    "is", "are", "be", "as", "that", "this", "these", "those",
    "with", "by", "at", "from", "it", "its", "we", "they", "you",
}


def iter_tokens(text: str) -> Iterable[str]:
    """Extract tokens from text for BM25 indexing."""
    for match in TOKEN_RE.finditer(text.lower()):
        tok = match.group(0)
        if len(tok) <= 2:
            continue
        if tok in STOPWORDS:
            continue
        yield tok


def trigrams(text: str) -> FrozenSet[str]:
    """
    Trigram set of ``text`` as pg_trgm builds it.

    Each lower-cased word is padded with two spaces in front and one behind
    before being cut into three-character substrings.
    """
    grams = set()
    for word in TRIGRAM_WORD_RE.findall(text.lower()):
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            grams.add(padded[i : i + 3])
    return frozenset(grams)


def trigram_similarity(left: str, right: str) -> float:
    """Shared trigrams over the union of both trigram sets, in [0, 1]."""
    a = trigrams(left)
    b = trigrams(right)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)
