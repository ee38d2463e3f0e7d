"""Word-set Jaccard similarity shared by the loop guard checks."""
from __future__ import annotations

import re

_NON_ALNUM = re.compile(r"[^\w\s]|_")


def tokenize(text: str) -> frozenset[str]:
    """Lowercase, drop non-alphanumerics, keep words longer than two characters."""
    cleaned = _NON_ALNUM.sub("", (text or "").lower())
    return frozenset(word for word in cleaned.split() if len(word) > 2)


def jaccard(a: frozenset[str] | set[str], b: frozenset[str] | set[str]) -> float:
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def text_similarity(text_a: str, text_b: str) -> float:
    return jaccard(tokenize(text_a), tokenize(text_b))
