"""Levenshtein-based string and phrase similarity."""
from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Sequence

import numpy as np

_NON_WORD = re.compile(r"[^\w\s]+")
MIN_TOKEN_LENGTH = 3


@dataclass(slots=True, frozen=True)
class PhraseMatch:
    similarity: float
    matched_text: str = ""


@lru_cache(maxsize=8192)
def levenshtein_distance(left: str, right: str) -> int:
    """Edit distance between two strings, computed one row at a time with numpy."""
    if left == right:
        return 0
    if not left:
        return len(right)
    if not right:
        return len(left)
    if len(left) < len(right):
        left, right = right, left

    columns = np.fromiter((ord(ch) for ch in right), dtype=np.int64, count=len(right))
    offsets = np.arange(len(right) + 1, dtype=np.int64)
    previous = offsets.copy()
    current = np.empty_like(previous)
    for row, ch in enumerate(left, start=1):
        substitution = (columns != ord(ch)).astype(np.int64)
        current[0] = row
        current[1:] = np.minimum(previous[1:] + 1, previous[:-1] + substitution)
        # Insertions propagate left to right: D[j] = min_k<=j (D[k] + j - k).
        current = np.minimum.accumulate(current - offsets) + offsets
        previous, current = current, previous
    return int(previous[-1])


def similarity(left: str, right: str) -> float:
    """Normalized similarity in [0, 1] over case-folded strings."""
    left_norm = left.lower()
    right_norm = right.lower()
    max_len = max(len(left_norm), len(right_norm))
    if max_len == 0:
        return 1.0
    return (max_len - levenshtein_distance(left_norm, right_norm)) / max_len


def tokenize(text: str) -> list[str]:
    """Lowercase, split on non-word characters and drop tokens of two characters or fewer."""
    cleaned = _NON_WORD.sub(" ", text.lower())
    return [token for token in cleaned.split() if len(token) >= MIN_TOKEN_LENGTH]


def phrase_similarity(phrase: str, tokens: Sequence[str]) -> PhraseMatch:
    """Best fuzzy match of ``phrase`` against any window of ``tokens``.

    An exact token sequence scores 1.0; otherwise each aligned token within an
    edit distance of one counts as matched and the score is matched / N. The
    phrase with its spaces removed is also compared against concatenated
    windows of one to N tokens so that "Acme Corp" finds "acmecorp".
    """
    phrase_tokens = tokenize(phrase)
    if not phrase_tokens or not tokens:
        return PhraseMatch(0.0)

    size = len(phrase_tokens)
    best = PhraseMatch(0.0)
    for start in range(0, len(tokens) - size + 1):
        window = list(tokens[start : start + size])
        if window == phrase_tokens:
            return PhraseMatch(1.0, " ".join(window))
        matched = sum(
            1
            for expected, actual in zip(phrase_tokens, window)
            if levenshtein_distance(expected, actual) <= 1
        )
        score = matched / size
        if score > best.similarity:
            best = PhraseMatch(score, " ".join(window))

    compact = "".join(phrase_tokens)
    for width in range(1, size + 1):
        for start in range(0, len(tokens) - width + 1):
            window = tokens[start : start + width]
            score = similarity(compact, "".join(window))
            if score > best.similarity:
                best = PhraseMatch(score, " ".join(window))
    return best
